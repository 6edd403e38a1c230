"""Categorization rule, mapping and resolution models"""

from pydantic import BaseModel, Field
from decimal import Decimal
from typing import Optional
from scrape_sync.constants import CategorySource


class CategorizationRule(BaseModel):
    """Case-insensitive substring rule on transaction name"""

    id: Optional[int] = None
    name_pattern: str = Field(..., description="Substring matched against the transaction name")
    target_category: str
    is_active: bool = True

    def matches(self, name: str) -> bool:
        return self.is_active and bool(self.name_pattern) and self.name_pattern.lower() in (name or "").lower()


class CategoryMapping(BaseModel):
    """Redirect of a scraper-provided category to a user-chosen one"""

    source_category: str
    target_category: str


class CategoryQuery(BaseModel):
    """Input to the category resolver"""

    name: str = ""
    scraper_category: Optional[str] = None
    is_bank: bool = False
    price: Optional[Decimal] = None


class CategoryResolution(BaseModel):
    """Final category and how it was decided"""

    category: Optional[str] = None
    source: Optional[CategorySource] = None
    rule_matched: Optional[str] = None
