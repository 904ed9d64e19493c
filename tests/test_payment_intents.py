"""
Tests for payment intent and charge events, and their routing through the dispatcher
"""
import pytest
from sqlalchemy import select

from app.db.models.marketplace_transaction import MarketplaceTransaction
from app.domain.events import EventEnvelope, parse_event
from app.domain.services.event_dispatcher import DispatchStatus, EventDispatcher
from app.domain.services.marketplace_service import MarketplaceService
from app.domain.services.payment_intent_service import PaymentIntentService
from tests.conftest import make_checkout_event, make_event

CART_METADATA = {
    "isCartCheckout": "true",
    "item0_type": "marketplace",
    "item0_listingId": "lst_1",
    "item0_sellerId": "seller_a",
    "item0_priceCents": "1500",
}


async def _settle(db_session) -> None:
    await MarketplaceService(db_session).settle_cart(make_checkout_event(metadata=CART_METADATA).session)
    db_session.expunge_all()


async def _payment_statuses(db_session) -> list[str]:
    db_session.expunge_all()
    result = await db_session.execute(select(MarketplaceTransaction.payment_status))
    return list(result.scalars().all())


def _envelope(event_type: str, obj: dict) -> EventEnvelope:
    return EventEnvelope.model_validate(make_event(event_type, obj))


class TestParseEvent:

    @pytest.mark.unit
    def test_payment_failed_reads_last_error(self) -> None:
        event = parse_event(_envelope("payment_intent.payment_failed", {
            "id": "pi_1",
            "last_payment_error": {"code": "card_declined", "message": "Your card was declined."},
        }))

        assert event.payment_intent_id == "pi_1"
        assert event.failure_code == "card_declined"

    @pytest.mark.unit
    def test_charge_with_expanded_payment_intent(self) -> None:
        event = parse_event(_envelope("charge.succeeded", {"id": "ch_1", "payment_intent": {"id": "pi_9"}}))

        assert event.charge_id == "ch_1"
        assert event.payment_intent_id == "pi_9"

    @pytest.mark.unit
    def test_checkout_line_items_list_shape(self) -> None:
        event = parse_event(_envelope("checkout.session.completed", {
            "id": "cs_1",
            "metadata": None,
            "line_items": {"object": "list", "data": [{"description": "Card", "quantity": 2}]},
        }))

        assert event.session.metadata == {}
        assert event.session.line_items[0].quantity == 2


class TestPaymentIntentService:

    @pytest.mark.integration
    async def test_succeeded_marks_transactions(self, db_session, fake_payment_api) -> None:
        await _settle(db_session)
        event = parse_event(_envelope("payment_intent.succeeded", {"id": "pi_cs_test_a1", "amount": 1500}))

        updated = await PaymentIntentService(db_session, fake_payment_api).handle_succeeded(event)

        assert updated == 1
        assert await _payment_statuses(db_session) == ["succeeded"]

    @pytest.mark.integration
    async def test_failed_is_logged_only(self, db_session, fake_payment_api, caplog) -> None:
        event = parse_event(_envelope("payment_intent.payment_failed", {"id": "pi_1"}))

        with caplog.at_level("WARNING", logger="app.domain.services.payment_intent_service"):
            await PaymentIntentService(db_session, fake_payment_api).handle_failed(event)

        record = caplog.records[-1]
        assert record.getMessage() == "Payment failed"
        assert record.error_category == "WEBHOOK_PROCESSING"

    @pytest.mark.integration
    async def test_charge_succeeded_falls_back_to_payment_intent(self, db_session, fake_payment_api) -> None:
        await _settle(db_session)
        fake_payment_api.payment_intents["pi_cs_test_a1"] = {"id": "pi_cs_test_a1", "amount": 1500, "metadata": {}}
        event = parse_event(_envelope("charge.succeeded", {"id": "ch_1", "payment_intent": "pi_cs_test_a1"}))

        updated = await PaymentIntentService(db_session, fake_payment_api).handle_charge_succeeded(event)

        assert updated == 1
        assert fake_payment_api.calls["retrieve_payment_intent"] == 1
        assert await _payment_statuses(db_session) == ["succeeded"]

    @pytest.mark.integration
    async def test_charge_without_payment_intent(self, db_session, fake_payment_api) -> None:
        event = parse_event(_envelope("charge.succeeded", {"id": "ch_1"}))

        assert await PaymentIntentService(db_session, fake_payment_api).handle_charge_succeeded(event) == 0
        assert fake_payment_api.calls["retrieve_payment_intent"] == 0


class TestEventDispatcher:

    @pytest.mark.integration
    async def test_routes_payment_intent_succeeded(self, db_session, fake_payment_api) -> None:
        await _settle(db_session)
        envelope = _envelope("payment_intent.succeeded", {"id": "pi_cs_test_a1"})

        result = await EventDispatcher(db_session, fake_payment_api).dispatch(envelope)

        assert result.status == DispatchStatus.PROCESSED
        assert await _payment_statuses(db_session) == ["succeeded"]

    @pytest.mark.integration
    async def test_malformed_event_object_is_an_error(self, db_session, fake_payment_api) -> None:
        envelope = _envelope("payment_intent.succeeded", {"amount": 100})

        result = await EventDispatcher(db_session, fake_payment_api).dispatch(envelope)

        assert result.status == DispatchStatus.ERROR
        body = result.to_response("wh_test")
        assert body["received"] is True
        assert body["status"] == "error"
        assert body["correlationId"] == "wh_test"

    @pytest.mark.integration
    async def test_transient_handler_failure_is_retried(self, db_session, fake_payment_api, retry_sleep) -> None:
        fake_payment_api.payment_intents["pi_1"] = {"id": "pi_1", "metadata": {}}
        fake_payment_api.fail_next("retrieve_payment_intent", ConnectionResetError("reset"))
        envelope = _envelope("charge.succeeded", {"id": "ch_1", "payment_intent": "pi_1"})

        result = await EventDispatcher(db_session, fake_payment_api).dispatch(envelope)

        assert result.status == DispatchStatus.PROCESSED
        assert fake_payment_api.calls["retrieve_payment_intent"] == 2

    @pytest.mark.integration
    async def test_permanent_handler_failure_reports_error(self, db_session, fake_payment_api) -> None:
        envelope = _envelope("charge.succeeded", {"id": "ch_1", "payment_intent": "pi_missing"})

        result = await EventDispatcher(db_session, fake_payment_api).dispatch(envelope)

        assert result.status == DispatchStatus.ERROR
        assert "pi_missing" in result.error
