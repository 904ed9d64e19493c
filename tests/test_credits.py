"""
Tests for credits purchases - app/domain/services/credits_service.py
"""
import pytest
from sqlalchemy import select

from app.db.models.credits_ledger import CreditsLedger
from app.db.models.profile import Profile
from app.domain.services.credits_service import CreditsService, is_credits_purchase
from tests.conftest import make_checkout_event

CREDITS_METADATA = {"kind": "credits_purchase", "userId": "user_1", "credits": "100"}


async def _profile(db_session, user_id: str) -> Profile:
    db_session.expunge_all()
    return (await db_session.execute(select(Profile).where(Profile.id == user_id))).scalar_one()


class TestCreditsService:

    @pytest.mark.unit
    def test_is_credits_purchase(self) -> None:
        assert is_credits_purchase(make_checkout_event(metadata=CREDITS_METADATA).session)
        assert not is_credits_purchase(make_checkout_event(metadata={"quantity": "1"}).session)

    @pytest.mark.integration
    async def test_grant_creates_profile(self, db_session) -> None:
        granted = await CreditsService(db_session).grant(make_checkout_event(metadata=CREDITS_METADATA).session)

        assert granted == 100
        profile = await _profile(db_session, "user_1")
        assert profile.credits == 100
        assert profile.email == "buyer@example.com"

    @pytest.mark.integration
    async def test_grant_adds_to_existing_balance(self, db_session) -> None:
        db_session.add(Profile(id="user_1", email="buyer@example.com", credits=25))
        await db_session.commit()

        await CreditsService(db_session).grant(make_checkout_event(metadata=CREDITS_METADATA).session)

        assert (await _profile(db_session, "user_1")).credits == 125

    @pytest.mark.integration
    async def test_same_payment_intent_granted_once(self, db_session) -> None:
        service = CreditsService(db_session)
        event = make_checkout_event(metadata=CREDITS_METADATA)

        first = await service.grant(event.session)
        second = await service.grant(event.session)

        assert (first, second) == (100, 0)
        assert (await _profile(db_session, "user_1")).credits == 100
        ledger = (await db_session.execute(select(CreditsLedger))).scalars().all()
        assert len(ledger) == 1

    @pytest.mark.integration
    @pytest.mark.parametrize("metadata", [
        {"kind": "credits_purchase", "credits": "100"},
        {"kind": "credits_purchase", "userId": "user_1", "credits": "0"},
        {"kind": "credits_purchase", "userId": "user_1"},
    ])
    async def test_incomplete_purchase_skipped(self, db_session, metadata: dict) -> None:
        granted = await CreditsService(db_session).grant(make_checkout_event(metadata=metadata).session)

        assert granted == 0
        assert (await db_session.execute(select(CreditsLedger))).scalars().all() == []
