"""Card ownership data model"""

from pydantic import BaseModel, Field, model_validator
from datetime import datetime
from typing import Optional


class CardOwnership(BaseModel):
    """Binding of a scraped (vendor, account_number) to one stored credential"""

    id: Optional[int] = None
    vendor: str = Field(..., description="Vendor key")
    account_number: str = Field(..., description="Scraped account or card number")
    credential_id: int = Field(..., description="Owning vendor_credentials.id")
    linked_bank_account_id: Optional[int] = Field(None, description="Bank credential this card is paid from")
    custom_bank_account_number: Optional[str] = None
    custom_bank_account_nickname: Optional[str] = None
    created_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _linked_or_custom(self):
        has_custom = bool(self.custom_bank_account_number or self.custom_bank_account_nickname)
        if self.linked_bank_account_id is not None and has_custom:
            raise ValueError("linked_bank_account_id and custom bank account fields are mutually exclusive")
        return self


class OwnershipClaim(BaseModel):
    """Outcome of claiming an account during ingestion"""

    vendor: str
    account_number: str
    credential_id: Optional[int] = None
    created: bool = False
    conflict: bool = False
    owner_credential_id: Optional[int] = None
    owner_nickname: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return not self.conflict
