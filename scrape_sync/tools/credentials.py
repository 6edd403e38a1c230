"""
Vendor credential shaping, validation and masking.

Each vendor family expects a different credential payload. The table below maps
a family (variant) to the payload fields it needs and the stored credential
columns each field may be filled from, in order of preference.
"""

import os
from typing import Any, Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, Field

from scrape_sync.constants import ALL_VENDORS
from scrape_sync.models import VendorCredential
from scrape_sync.utils.errors import ConfigurationError, ValidationError
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)

SECRET_FIELDS = ("username", "password", "id_number", "card6_digits", "user_code")

# Request payload keys -> stored credential columns
RAW_FIELD_ALIASES = {
    "id": "id_number",
    "card6Digits": "card6_digits",
    "userCode": "user_code",
    "num": "bank_account_number",
    "bankAccountNumber": "bank_account_number",
}

CREDENTIALS_HINT = "Please re-check the saved credentials for this account."


class CredentialVariant(BaseModel):
    """Payload shape for one vendor family"""

    name: str
    vendors: List[str] = Field(default_factory=list)
    fields: Dict[str, List[str]] = Field(..., description="payload field -> source columns, first non-empty wins")

    @property
    def required_fields(self) -> List[str]:
        return list(self.fields)


USER_CODE_VARIANT = CredentialVariant(
    name="user_code",
    vendors=["hapoalim"],
    fields={
        "userCode": ["user_code", "username", "id_number"],
        "password": ["password"],
    },
)

ID_CARD6_VARIANT = CredentialVariant(
    name="id_card6",
    vendors=["isracard", "amex"],
    fields={
        "id": ["id_number", "username"],
        "card6Digits": ["card6_digits"],
        "password": ["password"],
    },
)

USERNAME_VARIANT = CredentialVariant(
    name="username",
    fields={
        "username": ["username"],
        "password": ["password"],
    },
)

CREDENTIAL_VARIANTS = [USER_CODE_VARIANT, ID_CARD6_VARIANT]


def get_credential_variant(vendor: str) -> CredentialVariant:
    """Variant for a vendor; plain username/password unless listed otherwise"""
    for variant in CREDENTIAL_VARIANTS:
        if vendor in variant.vendors:
            return variant
    return USERNAME_VARIANT


def resolve_vendor(vendor: Optional[str]) -> str:
    """
    Return the canonical vendor key.

    Raises:
        ValidationError: If the vendor is missing or not a known institution
    """
    if not vendor:
        raise ValidationError("Vendor is required")
    if vendor in ALL_VENDORS:
        return vendor
    # Accept case-insensitive keys from hand-written requests
    for known in ALL_VENDORS:
        if known.lower() == vendor.lower():
            return known
    raise ValidationError(f"Unknown vendor: {vendor}")


class CredentialCipher:
    """Fernet decryption of stored secret columns"""

    def __init__(self, key: Union[str, bytes]):
        if isinstance(key, str):
            key = key.strip()
            key = (key + "=" * (-len(key) % 4)).encode("utf-8")
        try:
            self._fernet = Fernet(key)
        except (ValueError, TypeError) as e:
            raise ConfigurationError(f"Invalid credential encryption key: {e}")

    @classmethod
    def from_env(cls) -> Optional["CredentialCipher"]:
        """Cipher from FERNET_KEY, or None when stored secrets are plain text"""
        key = (os.getenv("FERNET_KEY") or "").strip()
        return cls(key) if key else None

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode("utf-8")

    def encrypt(self, value: str) -> str:
        return self._fernet.encrypt(value.encode("utf-8")).decode("utf-8")

    def decrypt(self, value: str) -> str:
        try:
            return self._fernet.decrypt(value.encode("utf-8")).decode("utf-8")
        except InvalidToken:
            raise ValidationError("Stored credentials could not be decrypted", hint=CREDENTIALS_HINT)


def _credential_fields(credential: Union[VendorCredential, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(credential, VendorCredential):
        return credential.model_dump()
    fields = {}
    for key, value in credential.items():
        fields[RAW_FIELD_ALIASES.get(key, key)] = value
    return fields


def prepare_credentials(
    vendor: str,
    credential: Union[VendorCredential, Dict[str, Any]],
    cipher: Optional[CredentialCipher] = None,
) -> Dict[str, str]:
    """
    Assemble the credential payload the scraper expects for a vendor.

    Stored secrets are decrypted here and nowhere else.

    Args:
        vendor: Canonical vendor key
        credential: Stored credential record or a raw request payload
        cipher: Decrypts secret columns; None when they are stored in clear

    Returns:
        Payload keyed by the scraper's field names (empty strings for missing values)
    """
    variant = get_credential_variant(vendor)
    fields = _credential_fields(credential)

    if cipher is not None:
        for name in SECRET_FIELDS:
            if fields.get(name):
                fields[name] = cipher.decrypt(str(fields[name]))

    payload = {}
    for target, sources in variant.fields.items():
        value = next((fields[s] for s in sources if fields.get(s)), "")
        payload[target] = str(value)

    if fields.get("bank_account_number"):
        payload["num"] = str(fields["bank_account_number"])

    logger.debug("Prepared credentials", vendor=vendor, variant=variant.name,
                 credentials=mask_credentials(payload))
    return payload


def validate_credentials(vendor: str, payload: Dict[str, Any]) -> None:
    """
    Fail fast when the payload lacks a required field for the vendor.

    Raises:
        ValidationError: Naming every missing field
    """
    variant = get_credential_variant(vendor)
    missing = [f for f in variant.required_fields if not payload.get(f)]
    if missing:
        raise ValidationError(
            f"Invalid credentials for {vendor}: {', '.join(missing)} required",
            hint=CREDENTIALS_HINT,
        )


def mask_value(value: Any) -> str:
    """Keep the first and last two characters"""
    text = "" if value is None else str(value)
    if len(text) <= 4:
        return "*" * len(text)
    return f"{text[:2]}{'*' * (len(text) - 4)}{text[-2:]}"


def mask_credentials(payload: Dict[str, Any]) -> Dict[str, str]:
    return {key: mask_value(value) for key, value in payload.items()}
