"""Run trigger and cancellation checkpoint models"""

from pydantic import BaseModel, Field
from datetime import date
from typing import Optional, Dict, Any


class ScrapeRequest(BaseModel):
    """One scrape trigger, from a stored credential or ad-hoc credentials"""

    vendor: str = Field(..., description="Vendor key (companyId)")
    start_date: date = Field(..., description="Earliest transaction date to fetch")
    credential_id: Optional[int] = Field(None, description="Stored credential to scrape with")
    credentials: Optional[Dict[str, Any]] = Field(None, description="Ad-hoc credentials when no credential_id")
    show_browser: Optional[bool] = None
    retry_count: int = Field(0, ge=0, description="User-initiated re-trigger attempt number")
    triggered_by: Optional[str] = None

    class Config:
        json_schema_extra = {
            "example": {
                "vendor": "hapoalim",
                "start_date": "2025-01-01",
                "credential_id": 3,
                "retry_count": 0
            }
        }


class Checkpoint(BaseModel):
    """Where the continuation predicate is being asked"""

    kind: str = Field(..., description="'account' or 'transaction'")
    account_index: int
    transaction_index: Optional[int] = None
    account_number: Optional[str] = None
