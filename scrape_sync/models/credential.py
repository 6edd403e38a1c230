"""Stored vendor credential data model"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional


class VendorCredential(BaseModel):
    """Login credential record; secret fields may hold cipher text"""

    id: int
    vendor: str
    nickname: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    id_number: Optional[str] = None
    card6_digits: Optional[str] = None
    user_code: Optional[str] = None
    bank_account_number: Optional[str] = None
    is_active: bool = True
    last_synced_at: Optional[datetime] = Field(None, description="Last successful sync (UTC)")

    def display_name(self) -> str:
        return self.nickname or self.username or self.id_number or self.vendor
