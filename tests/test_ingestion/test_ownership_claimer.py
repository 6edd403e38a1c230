"""Unit tests for card ownership claiming"""

import asyncio

import pytest
from pydantic import ValidationError as PydanticValidationError

from scrape_sync.ingestion import OwnershipClaimer


def seed_credentials(store):
    async def scenario():
        first = await store.add_credential("max", nickname="Family Max", username="dana", password="pw1")
        second = await store.add_credential("max", nickname="Work Max", username="noa", password="pw2")
        return first, second
    return asyncio.run(scenario())


def test_first_claim_creates_ownership(store):
    first, _ = seed_credentials(store)

    async def scenario():
        claimer = OwnershipClaimer(store)
        claim = await claimer.claim("max", "4580", first)
        again = await claimer.claim("max", "4580", first)
        return claim, again, await store.count_card_ownerships("max", "4580")

    claim, again, count = asyncio.run(scenario())
    assert claim.created and not claim.conflict
    assert claim.owner_credential_id == first
    assert not again.created and again.accepted
    assert count == 1


def test_conflicting_claim_is_rejected_without_mutation(store):
    """Second credential scraping the same card is skipped, the owner stays"""
    first, second = seed_credentials(store)

    async def scenario():
        claimer = OwnershipClaimer(store)
        await claimer.claim("max", "4580", first)
        conflict = await claimer.claim("max", "4580", second)
        return conflict, await store.get_card_ownership("max", "4580")

    conflict, ownership = asyncio.run(scenario())
    assert conflict.conflict
    assert not conflict.accepted
    assert conflict.owner_credential_id == first
    assert conflict.owner_nickname == "Family Max"
    assert ownership.credential_id == first


def test_same_number_other_vendor_is_independent(store):
    first, second = seed_credentials(store)

    async def scenario():
        claimer = OwnershipClaimer(store)
        await claimer.claim("max", "4580", first)
        return await claimer.claim("visaCal", "4580", second)

    claim = asyncio.run(scenario())
    assert claim.created
    assert not claim.conflict


def test_ad_hoc_credentials_never_claim(store):
    async def scenario():
        claim = await OwnershipClaimer(store).claim("max", "4580", None)
        empty = await OwnershipClaimer(store).claim("max", "", 1)
        return claim, empty, await store.count_card_ownerships()

    claim, empty, count = asyncio.run(scenario())
    assert not claim.created and not claim.conflict
    assert not empty.created
    assert count == 0


def test_link_bank_account(store):
    """A card links to a bank credential or to free-text details, never both"""
    first, _ = seed_credentials(store)

    async def scenario():
        bank = await store.add_credential("hapoalim", nickname="Main", user_code="AB1", password="pw")
        claimer = OwnershipClaimer(store)
        await claimer.claim("max", "4580", first)
        linked = await claimer.link_bank_account("max", "4580", linked_bank_account_id=bank)
        stored = await store.get_card_ownership("max", "4580")

        with pytest.raises(PydanticValidationError):
            await claimer.link_bank_account("max", "4580", linked_bank_account_id=bank,
                                            custom_bank_account_number="12-345")
        with pytest.raises(LookupError):
            await claimer.link_bank_account("max", "9999", custom_bank_account_nickname="Savings")
        return bank, linked, stored

    bank, linked, stored = asyncio.run(scenario())
    assert linked.linked_bank_account_id == bank
    assert stored.linked_bank_account_id == bank
    assert stored.custom_bank_account_number is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
