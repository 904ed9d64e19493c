"""
Limited edition inventory.

The counter lives in the catalog product's metadata on the payment API
(``inventory`` and ``version`` as strings). Every decrement is a
compare-and-swap on ``version``; losing the race raises
VersionConflictError and the inventory retry policy tries again from a
fresh read.

The last few sessions that took stock are kept in ``recent_sessions``. A
write whose response was lost is recognised on retry even after another
session has written in between, as long as fewer than
RECENT_SESSIONS_MAX sales landed in the meantime.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings
from app.core.exceptions import ErrorCategory, VersionConflictError, WrongProductTypeError
from app.core.logging import get_logger, log_async_operation, log_critical
from app.core.retry import INVENTORY_RETRY_POLICY, execute_with_retry
from app.domain.metadata import parse_int
from app.domain.services.payment_api import PRODUCT_VERSION_KEY, PaymentApiClient

logger = get_logger(__name__)

RECENT_SESSIONS_KEY = "recent_sessions"
# Five full session ids fit the 500 character metadata value cap
RECENT_SESSIONS_MAX = 5


@dataclass(frozen=True)
class InventoryRecord:
    product_id: str
    product_type: str | None
    inventory_count: int
    version: int
    last_purchase_session: str | None
    metadata: dict[str, Any]
    recent_sessions: tuple[str, ...] = ()

    @classmethod
    def from_product(cls, product: dict[str, Any], default_inventory: int) -> "InventoryRecord":
        metadata = dict(product.get("metadata") or {})
        return cls(
            product_id=product.get("id", ""),
            product_type=metadata.get("type"),
            inventory_count=parse_int(metadata.get("inventory"), default_inventory),
            version=parse_int(metadata.get(PRODUCT_VERSION_KEY), 0),
            last_purchase_session=metadata.get("last_purchase_session"),
            metadata=metadata,
            recent_sessions=tuple(s for s in (metadata.get(RECENT_SESSIONS_KEY) or "").split(",") if s),
        )

    def has_session(self, session_id: str) -> bool:
        return session_id == self.last_purchase_session or session_id in self.recent_sessions

    def sessions_with(self, session_id: str) -> str:
        """``recent_sessions`` value after recording ``session_id``, newest first"""
        sessions = [session_id] + [s for s in self.recent_sessions if s != session_id]
        return ",".join(sessions[:RECENT_SESSIONS_MAX])


@dataclass(frozen=True)
class InventoryUpdateResult:
    previous_count: int
    new_count: int
    version: int
    skipped: bool = False


def compute_new_inventory(current_count: int, purchased_quantity: int) -> int:
    """Stock after a sale, clamped at zero"""
    if purchased_quantity < 0:
        raise ValueError("purchased quantity cannot be negative")
    return max(0, current_count - purchased_quantity)


class InventoryService:
    """Decrements the limited edition counter under optimistic concurrency"""

    def __init__(self, payment_api: PaymentApiClient, product_id: str | None = None):
        self.payment_api = payment_api
        self.product_id = product_id or settings.LIMITED_EDITION_PRODUCT_ID

    @log_async_operation("inventory_update")
    async def decrement(self, quantity: int, session_id: str) -> InventoryUpdateResult:
        logger.info(
            "Starting limited edition inventory update",
            extra_data={
                "session_id": session_id,
                "purchased_quantity": quantity,
                "product_id": self.product_id,
            },
        )
        return await execute_with_retry(
            lambda: self._attempt(quantity, session_id),
            "inventory_update",
            INVENTORY_RETRY_POLICY,
            {
                "session_id": session_id,
                "purchased_quantity": quantity,
                "product_id": self.product_id,
            },
        )

    async def _attempt(self, quantity: int, session_id: str) -> InventoryUpdateResult:
        product = await self.payment_api.retrieve_product(self.product_id)
        record = InventoryRecord.from_product(product, settings.DEFAULT_INVENTORY)

        if record.product_type != settings.LIMITED_EDITION_PRODUCT_TYPE:
            error = WrongProductTypeError(
                self.product_id,
                record.product_type,
                settings.LIMITED_EDITION_PRODUCT_TYPE,
            )
            log_critical(
                logger,
                ErrorCategory.INVENTORY_UPDATE,
                "Attempted to update inventory for wrong product type",
                error,
                {
                    "session_id": session_id,
                    "product_id": self.product_id,
                    "actual_type": record.product_type,
                    "expected_type": settings.LIMITED_EDITION_PRODUCT_TYPE,
                    "product_name": product.get("name"),
                },
            )
            raise error

        # A retried handler must not take the same sale twice
        if record.has_session(session_id):
            logger.info(
                "Inventory already reflects this session, skipping",
                extra_data={"session_id": session_id, "inventory": record.inventory_count},
            )
            return InventoryUpdateResult(
                previous_count=record.inventory_count,
                new_count=record.inventory_count,
                version=record.version,
                skipped=True,
            )

        new_count = compute_new_inventory(record.inventory_count, quantity)

        if record.inventory_count < quantity:
            logger.warning(
                "Insufficient inventory detected during update",
                extra_data={
                    "session_id": session_id,
                    "current_inventory": record.inventory_count,
                    "purchased_quantity": quantity,
                    "deficit": quantity - record.inventory_count,
                },
                category=ErrorCategory.INVENTORY_UPDATE,
            )

        new_version = record.version + 1
        metadata = {
            **record.metadata,
            "inventory": str(new_count),
            PRODUCT_VERSION_KEY: str(new_version),
            "last_purchase_session": session_id,
            RECENT_SESSIONS_KEY: record.sessions_with(session_id),
            "last_updated": datetime.now(timezone.utc).isoformat(),
        }

        swapped = await self.payment_api.compare_and_swap_product_metadata(
            self.product_id, record.version, metadata
        )
        if not swapped:
            raise VersionConflictError("product", self.product_id, record.version)

        logger.info(
            "Inventory successfully updated",
            extra_data={
                "session_id": session_id,
                "previous_inventory": record.inventory_count,
                "new_inventory": new_count,
                "new_version": new_version,
            },
        )

        if new_count <= settings.LOW_INVENTORY_THRESHOLD:
            logger.warning(
                "Low inventory alert triggered",
                extra_data={
                    "new_inventory": new_count,
                    "threshold": settings.LOW_INVENTORY_THRESHOLD,
                    "requires_attention": True,
                },
                category=ErrorCategory.INVENTORY_UPDATE,
            )

        return InventoryUpdateResult(
            previous_count=record.inventory_count,
            new_count=new_count,
            version=new_version,
        )
