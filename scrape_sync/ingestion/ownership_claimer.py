"""Card ownership: the first credential that scrapes an account number owns it"""

from typing import Optional

from scrape_sync.models import CardOwnership, OwnershipClaim
from scrape_sync.utils import metrics
from scrape_sync.utils.logging import get_logger

logger = get_logger(__name__)


class OwnershipClaimer:
    """Binds scraped (vendor, account_number) pairs to credential records"""

    def __init__(self, store):
        self.store = store

    async def claim(self, vendor: str, account_number: str, credential_id: Optional[int]) -> OwnershipClaim:
        """
        Claim an account for a credential.

        Args:
            vendor: Vendor key
            account_number: Scraped account/card number
            credential_id: Credential running the scrape; None for ad-hoc
                credentials, which never claim anything

        Returns:
            OwnershipClaim; conflict=True when another credential owns the account.
            A conflict never mutates the stored row.
        """
        claim = OwnershipClaim(vendor=vendor, account_number=account_number, credential_id=credential_id)
        if credential_id is None or not account_number:
            return claim

        existing = await self.store.get_card_ownership(vendor, account_number)
        if existing is None:
            if await self.store.insert_card_ownership(vendor, account_number, credential_id):
                logger.info("Claimed account ownership", vendor=vendor,
                            account_number=account_number, credential_id=credential_id)
                claim.created = True
                claim.owner_credential_id = credential_id
                return claim
            # Lost a race with another writer; judge against the winner
            existing = await self.store.get_card_ownership(vendor, account_number)

        claim.owner_credential_id = existing.credential_id
        if existing.credential_id != credential_id:
            owner = await self.store.get_credential(existing.credential_id)
            claim.conflict = True
            claim.owner_nickname = owner.display_name() if owner else None
            metrics.ownership_conflicts.labels(vendor=vendor).inc()
            logger.warning(
                "Account already owned by another credential, skipping",
                vendor=vendor,
                account_number=account_number,
                credential_id=credential_id,
                owner_credential_id=existing.credential_id,
                owner_nickname=claim.owner_nickname,
            )
        return claim

    async def link_bank_account(
        self,
        vendor: str,
        account_number: str,
        linked_bank_account_id: Optional[int] = None,
        custom_bank_account_number: Optional[str] = None,
        custom_bank_account_nickname: Optional[str] = None,
    ) -> CardOwnership:
        """Point a card at the bank account paying it (a credential or free text, not both)"""
        existing = await self.store.get_card_ownership(vendor, account_number)
        if existing is None:
            raise LookupError(f"No ownership recorded for {vendor}/{account_number}")
        updated = CardOwnership(
            **existing.model_dump(exclude={"linked_bank_account_id", "custom_bank_account_number",
                                           "custom_bank_account_nickname"}),
            linked_bank_account_id=linked_bank_account_id,
            custom_bank_account_number=custom_bank_account_number,
            custom_bank_account_nickname=custom_bank_account_nickname,
        )
        await self.store.set_card_bank_link(updated)
        return updated
