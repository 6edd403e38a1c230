"""Scrape audit record data model"""

from pydantic import BaseModel, Field
from datetime import date, datetime
from typing import Optional, Dict, Any
from scrape_sync.constants import ScrapeStatus


class ScrapeEvent(BaseModel):
    """One row per scrape attempt in the scrape ledger"""

    id: Optional[int] = Field(None, description="Row id")
    triggered_by: Optional[str] = Field(None, description="Identity of the invoking credential/user")
    vendor: str = Field(..., description="Vendor key")
    start_date: date = Field(..., description="Earliest date requested from the scraper")
    status: ScrapeStatus = Field(ScrapeStatus.STARTED, description="Run status")
    message: Optional[str] = Field(None, description="Human summary")
    report_json: Optional[Dict[str, Any]] = Field(None, description="Full run statistics")
    duration_seconds: Optional[int] = Field(None, description="Run duration")
    retry_count: int = Field(0, description="User-initiated re-trigger attempt number")
    created_at: Optional[datetime] = Field(None, description="Insertion timestamp (UTC)")

    class Config:
        json_schema_extra = {
            "example": {
                "id": 41,
                "triggered_by": "Family Visa",
                "vendor": "visaCal",
                "start_date": "2025-01-01",
                "status": "success",
                "message": "Success: fetched=42, saved=40",
                "report_json": {"savedTransactions": 40, "duplicateTransactions": 2},
                "duration_seconds": 73,
                "retry_count": 0
            }
        }
