"""Transaction data models: scraper output and the normalized stored record"""

from pydantic import AliasChoices, BaseModel, Field, field_validator
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional, List, Dict, Any
from scrape_sync.constants import CategorySource, TransactionType


def to_decimal(value: Any) -> Optional[Decimal]:
    """Exact decimal from scraper numbers (floats go through their repr)"""
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(repr(value)) if isinstance(value, float) else Decimal(str(value).strip())
    except InvalidOperation:
        raise ValueError(f"not a number: {value!r}")
    if not result.is_finite():
        raise ValueError(f"not a finite amount: {value!r}")
    return result


def to_date(value: Any) -> Optional[date]:
    """Calendar date from a date, datetime or ISO string ("2024-03-01T22:00:00.000Z")"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class Installments(BaseModel):
    """Installment position reported by the scraper"""

    number: Optional[int] = None
    total: Optional[int] = None


class ScrapedTransaction(BaseModel):
    """One transaction as returned by the external scraper"""

    identifier: Optional[str] = Field(None, description="Vendor-assigned transaction id")
    date: date
    processed_date: Optional[date] = Field(None, alias="processedDate")
    description: str = Field("", description="Raw merchant/description string")
    memo: Optional[str] = None
    original_amount: Optional[Decimal] = Field(None, alias="originalAmount")
    original_currency: Optional[str] = Field(None, alias="originalCurrency")
    charged_amount: Optional[Decimal] = Field(None, alias="chargedAmount")
    charged_currency: Optional[str] = Field(None, alias="chargedCurrency")
    status: Optional[str] = None
    type: Optional[str] = None
    installments: Optional[Installments] = None
    category: Optional[str] = None

    class Config:
        populate_by_name = True
        json_schema_extra = {
            "example": {
                "identifier": "2231004",
                "date": "2024-03-01T22:00:00.000Z",
                "processedDate": "2024-04-10T21:00:00.000Z",
                "description": "SUPER-PHARM TEL AVIV",
                "originalAmount": -120.5,
                "originalCurrency": "ILS",
                "chargedAmount": -120.5,
                "status": "completed",
                "type": "normal",
                "category": "Health"
            }
        }

    @field_validator("identifier", mode="before")
    @classmethod
    def _identifier_to_str(cls, v):
        return None if v is None or v == "" else str(v)

    @field_validator("description", mode="before")
    @classmethod
    def _description_to_str(cls, v):
        return "" if v is None else str(v)

    @field_validator("date", "processed_date", mode="before")
    @classmethod
    def _parse_dates(cls, v):
        return to_date(v)

    @field_validator("original_amount", "charged_amount", mode="before")
    @classmethod
    def _parse_amounts(cls, v):
        return to_decimal(v)

    @classmethod
    def from_raw(cls, raw: dict) -> "ScrapedTransaction":
        """Accept both scraper naming (description/chargedAmount) and name/price"""
        data = dict(raw)
        if "description" not in data and "name" in data:
            data["description"] = data.pop("name")
        if "chargedAmount" not in data and "price" in data:
            data["chargedAmount"] = data.pop("price")
        if "installments" not in data and ("installmentsNumber" in data or "installmentsTotal" in data):
            data["installments"] = {
                "number": data.pop("installmentsNumber", None),
                "total": data.pop("installmentsTotal", None),
            }
        return cls.model_validate(data)

    @property
    def price(self) -> Decimal:
        """Signed amount that is stored, charged amount first"""
        if self.charged_amount is not None:
            return self.charged_amount
        if self.original_amount is not None:
            return self.original_amount
        return Decimal("0")


class ScrapedAccount(BaseModel):
    """One account/card and its raw transactions (parsed one by one during ingestion)"""

    account_number: str = Field("", alias="accountNumber")
    transactions: List[Dict[str, Any]] = Field(default_factory=list,
                                               validation_alias=AliasChoices("txns", "transactions"))

    class Config:
        populate_by_name = True

    @field_validator("account_number", mode="before")
    @classmethod
    def _account_to_str(cls, v):
        return "" if v is None else str(v)

    @field_validator("transactions", mode="before")
    @classmethod
    def _transactions_list(cls, v):
        return list(v) if isinstance(v, (list, tuple)) else []


class ScrapeResult(BaseModel):
    """Result returned by the external scraper"""

    success: bool
    accounts: List[ScrapedAccount] = Field(default_factory=list)
    error_type: Optional[str] = Field(None, alias="errorType")
    error_message: Optional[str] = Field(None, alias="errorMessage")

    class Config:
        populate_by_name = True

    @field_validator("accounts", mode="before")
    @classmethod
    def _accounts_list(cls, v):
        # Some scrapers return a non-list on success
        return v if isinstance(v, list) else []


class Transaction(BaseModel):
    """Normalized transaction row, unique per (identifier, vendor)"""

    identifier: str = Field(..., description="Vendor-assigned or derived transaction id")
    vendor: str = Field(..., description="Source institution key")
    date: date
    processed_date: Optional[date] = None
    name: str = ""
    price: Decimal = Field(..., description="Signed amount, negative = expense")
    category: Optional[str] = None
    category_source: Optional[CategorySource] = None
    rule_matched: Optional[str] = None
    account_number: Optional[str] = None
    installments_number: Optional[int] = None
    installments_total: Optional[int] = None
    original_amount: Optional[Decimal] = None
    original_currency: Optional[str] = None
    charged_currency: Optional[str] = None
    memo: Optional[str] = None
    status: Optional[str] = "completed"
    type: Optional[str] = None
    transaction_type: TransactionType = TransactionType.CREDIT_CARD

    class Config:
        json_schema_extra = {
            "example": {
                "identifier": "2231004",
                "vendor": "isracard",
                "date": "2024-03-01",
                "processed_date": "2024-04-10",
                "name": "SUPER-PHARM TEL AVIV",
                "price": "-120.50",
                "category": "Health",
                "category_source": "rule",
                "account_number": "4580",
                "transaction_type": "credit_card"
            }
        }

    @field_validator("price", "original_amount", mode="before")
    @classmethod
    def _parse_amounts(cls, v):
        return to_decimal(v)

    @field_validator("date", "processed_date", mode="before")
    @classmethod
    def _parse_dates(cls, v):
        return to_date(v)
