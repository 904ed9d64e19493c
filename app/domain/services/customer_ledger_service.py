"""
Customer ledger.

Folds each checkout into the payment API customer record: scalar totals
plus two bounded JSON histories kept in metadata (values are capped at
500 characters by the provider).

- ``purchase_history``: newest first, at most PURCHASE_HISTORY_MAX_ENTRIES
  compact entries ``{s, a, q, d, t}``.
- ``consent_history``: newest first, dropped oldest first until the
  serialized list fits CONSENT_HISTORY_MAX_CHARS, never below one entry.

Writes are compare-and-swap on ``ledger_version`` so two checkouts by the
same customer cannot lose each other's totals.
A session the record already reflects, as the last purchase or in the
purchase history, is not folded in again: a write can land even when its
response is lost, and the retry must not count the sale twice.
"""
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import ErrorCategory, VersionConflictError
from app.core.logging import get_logger, log_async_operation, presence
from app.core.retry import CUSTOMER_DATA_RETRY_POLICY, attempt_non_critical, execute_with_retry
from app.db.models.customer_purchase import CustomerPurchase
from app.domain.events import CheckoutSession
from app.domain.metadata import parse_int
from app.domain.services.consent_service import (
    ConsentData,
    ConsentValidationResult,
    log_consent_stored,
)
from app.domain.services.payment_api import CUSTOMER_VERSION_KEY, PaymentApiClient

logger = get_logger(__name__)

COMPACT_PURCHASE_KEYS = ("s", "a", "q", "d", "t")
PURCHASE_PRODUCT_TYPE = "card"


def dumps_compact(value: Any) -> str:
    """Serialize without whitespace; the character budget is measured on this"""
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False)


def load_history(raw: str | None, field_name: str = "history") -> list[dict[str, Any]]:
    """Parse a metadata history field; anything unreadable starts over empty"""
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(
            f"Malformed customer {field_name}, resetting",
            extra_data={"field": field_name, "length": len(raw)},
            category=ErrorCategory.CUSTOMER_DATA,
        )
        return []
    if not isinstance(value, list):
        logger.warning(
            f"Customer {field_name} is not a list, resetting",
            extra_data={"field": field_name},
            category=ErrorCategory.CUSTOMER_DATA,
        )
        return []
    return [entry for entry in value if isinstance(entry, dict)]


def to_compact_purchase(entry: dict[str, Any]) -> dict[str, Any]:
    """Convert a legacy verbose purchase entry to the compact schema"""
    if all(entry.get(key) for key in COMPACT_PURCHASE_KEYS):
        return entry

    product_type = entry.get("product_type")
    return {
        "s": str(entry.get("session_id") or entry.get("s") or "")[:20],
        "a": entry.get("amount") or entry.get("a") or 0,
        "q": entry.get("quantity") or entry.get("q") or 1,
        "d": str(entry.get("date") or entry.get("d") or "")[:10],
        "t": "card" if product_type == "limited_edition_card" else (entry.get("t") or "card"),
    }


def build_purchase_entry(
    session_id: str,
    amount: int,
    quantity: int,
    when: datetime,
) -> dict[str, Any]:
    return {
        "s": session_id[:20],
        "a": amount,
        "q": quantity,
        "d": when.date().isoformat(),
        "t": PURCHASE_PRODUCT_TYPE,
    }


def build_consent_entry(consent: ConsentData | None, session_id: str, when: datetime) -> dict[str, Any]:
    timestamp = consent.timestamp if consent else when
    return {
        "p": consent.promotions if consent else False,
        "t": int(timestamp.timestamp() * 1000),
        "s": (consent.source if consent else "checkout")[:10],
        "sid": session_id[:20],
    }


def merge_purchase_history(
    existing: list[dict[str, Any]],
    new_entry: dict[str, Any],
    max_entries: int,
) -> list[dict[str, Any]]:
    history = [new_entry] + [to_compact_purchase(entry) for entry in existing]
    return history[:max(max_entries, 1)]


def truncate_consent_history(
    entries: list[dict[str, Any]],
    max_chars: int,
) -> list[dict[str, Any]]:
    """Keep the newest entries that fit ``max_chars``; the newest always stays"""
    kept = list(entries)
    while len(kept) > 1 and len(dumps_compact(kept)) > max_chars:
        kept.pop()
    return kept


def merge_consent_history(
    existing: list[dict[str, Any]],
    new_entry: dict[str, Any],
    max_chars: int,
) -> list[dict[str, Any]]:
    return truncate_consent_history([new_entry] + existing, max_chars)


def session_already_recorded(existing: dict[str, Any], session_id: str) -> bool:
    """True when the customer metadata already counts this checkout"""
    if existing.get("last_purchase_session") == session_id:
        return True
    compact_id = session_id[:20]
    return any(
        to_compact_purchase(entry).get("s") == compact_id
        for entry in load_history(existing.get("purchase_history"), "purchase_history")
    )


def _consent_metadata(consent: ConsentData | None, session_id: str, now_iso: str) -> dict[str, str]:
    return {
        "marketing_consent": "true" if consent and consent.promotions else "false",
        "marketing_consent_timestamp": consent.timestamp.isoformat() if consent else now_iso,
        "marketing_consent_source": consent.source if consent else "checkout_session",
        "marketing_consent_method": consent.method if consent else "stripe_checkout",
        "marketing_consent_session": session_id,
        "consent_last_updated": now_iso,
    }


def build_new_customer_metadata(
    session_id: str,
    amount: int,
    quantity: int,
    consent: ConsentData | None,
    now: datetime,
) -> dict[str, str]:
    now_iso = now.isoformat()
    return {
        **_consent_metadata(consent, session_id, now_iso),
        "consent_history": dumps_compact([build_consent_entry(consent, session_id, now)]),
        "first_purchase_date": now_iso,
        "last_purchase_date": now_iso,
        "last_purchase_session": session_id,
        "last_purchase_amount": str(amount),
        "total_purchases": "1",
        "total_spent": str(amount),
        "total_quantity": str(quantity),
        "purchase_history": dumps_compact([build_purchase_entry(session_id, amount, quantity, now)]),
        "customer_source": "webhook_checkout_completed",
        CUSTOMER_VERSION_KEY: "1",
        "created_at": now_iso,
        "updated_at": now_iso,
    }


def build_updated_customer_metadata(
    existing: dict[str, Any],
    session_id: str,
    amount: int,
    quantity: int,
    consent: ConsentData | None,
    now: datetime,
    max_purchases: int,
    max_consent_chars: int,
) -> dict[str, str]:
    """Merge one checkout into an existing record; totals are incremented"""
    now_iso = now.isoformat()
    purchases = merge_purchase_history(
        load_history(existing.get("purchase_history"), "purchase_history"),
        build_purchase_entry(session_id, amount, quantity, now),
        max_purchases,
    )
    consents = merge_consent_history(
        load_history(existing.get("consent_history"), "consent_history"),
        build_consent_entry(consent, session_id, now),
        max_consent_chars,
    )
    return {
        **{key: str(value) for key, value in existing.items()},
        **_consent_metadata(consent, session_id, now_iso),
        "consent_history": dumps_compact(consents),
        "last_purchase_date": now_iso,
        "last_purchase_session": session_id,
        "last_purchase_amount": str(amount),
        "total_purchases": str(parse_int(existing.get("total_purchases"), 0) + 1),
        "total_spent": str(parse_int(existing.get("total_spent"), 0) + amount),
        "total_quantity": str(parse_int(existing.get("total_quantity"), 0) + quantity),
        "purchase_history": dumps_compact(purchases),
        CUSTOMER_VERSION_KEY: str(parse_int(existing.get(CUSTOMER_VERSION_KEY), 0) + 1),
        "updated_at": now_iso,
    }


@dataclass(frozen=True)
class CustomerLedgerResult:
    customer_id: str
    is_new: bool
    quantity: int
    amount: int
    skipped: bool = False


class CustomerLedgerService:
    """Creates or merges the customer record for a completed checkout"""

    def __init__(self, db: AsyncSession, payment_api: PaymentApiClient):
        self.db = db
        self.payment_api = payment_api

    @log_async_operation("customer_data_storage")
    async def store(
        self,
        session: CheckoutSession,
        consent_result: ConsentValidationResult | None = None,
    ) -> CustomerLedgerResult | None:
        """Returns None when the session has no email to key the record on"""
        email = session.email
        if not email:
            logger.warning(
                "No customer email found in session, skipping customer data storage",
                extra_data={"session_id": session.id},
                category=ErrorCategory.CUSTOMER_DATA,
            )
            return None

        consent = consent_result.consent if consent_result else None
        amount = session.amount_total or 0
        quantity = parse_int(session.metadata.get("quantity"), 1)

        logger.info(
            "Processing customer data",
            extra_data={
                "session_id": session.id,
                "customer_email": presence(email),
                "marketing_consent": bool(consent and consent.promotions),
            },
        )

        result = await execute_with_retry(
            lambda: self._upsert(session, email, amount, quantity, consent),
            "customer_data_storage",
            CUSTOMER_DATA_RETRY_POLICY,
            {"session_id": session.id},
        )

        await attempt_non_critical(
            "customer_purchase_log",
            lambda: self._record_purchase(session.id, result, consent),
            ErrorCategory.DATABASE,
            {"session_id": session.id, "customer_id": result.customer_id},
        )

        if consent is not None:
            log_consent_stored(consent, result.customer_id)
        else:
            logger.warning(
                "No consent data available for processing",
                extra_data={"session_id": session.id, "customer_id": result.customer_id},
                category=ErrorCategory.CONSENT_PROCESSING,
            )

        return result

    async def _upsert(
        self,
        session: CheckoutSession,
        email: str,
        amount: int,
        quantity: int,
        consent: ConsentData | None,
    ) -> CustomerLedgerResult:
        now = datetime.now(timezone.utc)
        name = session.customer_details.name
        customer = await self.payment_api.find_customer_by_email(email)

        if customer is None:
            logger.info("Creating new customer record", extra_data={"session_id": session.id})
            created = await self.payment_api.create_customer(
                email,
                name,
                build_new_customer_metadata(session.id, amount, quantity, consent, now),
            )
            return CustomerLedgerResult(
                customer_id=created["id"], is_new=True, quantity=quantity, amount=amount
            )

        existing = dict(customer.get("metadata") or {})
        if session_already_recorded(existing, session.id):
            logger.info(
                "Customer record already reflects this session, skipping",
                extra_data={"session_id": session.id, "customer_id": customer["id"]},
            )
            return CustomerLedgerResult(
                customer_id=customer["id"],
                is_new=parse_int(existing.get("total_purchases"), 0) == 1,
                quantity=quantity,
                amount=amount,
                skipped=True,
            )

        expected_version = parse_int(existing.get(CUSTOMER_VERSION_KEY), 0)
        logger.info(
            "Updating existing customer",
            extra_data={"session_id": session.id, "customer_id": customer["id"]},
        )

        metadata = build_updated_customer_metadata(
            existing,
            session.id,
            amount,
            quantity,
            consent,
            now,
            settings.PURCHASE_HISTORY_MAX_ENTRIES,
            settings.CONSENT_HISTORY_MAX_CHARS,
        )
        swapped = await self.payment_api.compare_and_swap_customer_metadata(
            customer["id"], expected_version, metadata, name=name or customer.get("name")
        )
        if not swapped:
            raise VersionConflictError("customer", customer["id"], expected_version)

        return CustomerLedgerResult(
            customer_id=customer["id"], is_new=False, quantity=quantity, amount=amount
        )

    async def _record_purchase(
        self,
        session_id: str,
        result: CustomerLedgerResult,
        consent: ConsentData | None,
    ) -> None:
        try:
            logged = await self.db.execute(
                select(CustomerPurchase.id).where(
                    CustomerPurchase.stripe_session_id == session_id,
                    CustomerPurchase.stripe_customer_id == result.customer_id,
                )
            )
            if logged.first() is not None:
                return
            self.db.add(CustomerPurchase(
                stripe_customer_id=result.customer_id,
                stripe_session_id=session_id,
                amount_cents=result.amount,
                quantity=result.quantity,
                promotions_consent=bool(consent and consent.promotions),
                is_new_customer=result.is_new,
            ))
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
