"""
Payment API client.

Thin async wrapper over the ``stripe`` SDK for the product catalog,
customer and payment intent calls the settlement handlers make. Results
come back as plain dicts so services and tests never touch SDK objects.

Versioned writes are compare-and-swap on a counter kept in the object's
metadata. The provider has no conditional update, so the client re-reads
the counter right before writing: a mismatch is reported as a lost race
and the caller retries. Two writers that both pass the re-read inside the
same instant can still interleave.
"""
from typing import Any, Awaitable, Callable, TypeVar

import stripe

from app.core.config import settings
from app.core.exceptions import ExternalApiError, RateLimitedError
from app.core.logging import get_logger
from app.domain.metadata import parse_int

logger = get_logger(__name__)

T = TypeVar("T")

PRODUCT_VERSION_KEY = "version"
CUSTOMER_VERSION_KEY = "ledger_version"


def _to_dict(obj: Any) -> dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, stripe.StripeObject):
        return obj.to_dict()
    return dict(obj)


class PaymentApiClient:
    """Catalog, customer and payment intent access for webhook handlers"""

    def __init__(self, api_key: str):
        self._api_key = api_key

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        """Run an SDK call; a generic API error becomes ExternalApiError.

        Connection errors pass through untouched so the retry executor
        recognises them by class; a rate limit becomes RateLimitedError.
        """
        try:
            return await fn()
        except stripe.APIConnectionError:
            raise
        except stripe.RateLimitError as e:
            raise RateLimitedError("stripe") from e
        except stripe.APIError as e:
            raise ExternalApiError(
                "stripe",
                f"stripe_api_error during {operation}: {e.user_message or e}",
                details={"operation": operation, "http_status": e.http_status},
            ) from e

    # ==================== Products ====================

    async def retrieve_product(self, product_id: str) -> dict[str, Any]:
        product = await self._call(
            "retrieve_product",
            lambda: stripe.Product.retrieve_async(product_id, api_key=self._api_key),
        )
        return _to_dict(product)

    async def compare_and_swap_product_metadata(
        self,
        product_id: str,
        expected_version: int,
        metadata: dict[str, str],
    ) -> bool:
        current = await self.retrieve_product(product_id)
        current_version = parse_int((current.get("metadata") or {}).get(PRODUCT_VERSION_KEY), 0)
        if current_version != expected_version:
            return False

        await self._call(
            "modify_product",
            lambda: stripe.Product.modify_async(
                product_id, metadata=metadata, api_key=self._api_key
            ),
        )
        return True

    # ==================== Customers ====================

    async def find_customer_by_email(self, email: str) -> dict[str, Any] | None:
        customers = await self._call(
            "list_customers",
            lambda: stripe.Customer.list_async(email=email, limit=1, api_key=self._api_key),
        )
        data = _to_dict(customers).get("data") or []
        return data[0] if data else None

    async def create_customer(
        self,
        email: str,
        name: str | None,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {"email": email, "metadata": metadata}
        if name:
            params["name"] = name
        customer = await self._call(
            "create_customer",
            lambda: stripe.Customer.create_async(api_key=self._api_key, **params),
        )
        return _to_dict(customer)

    async def compare_and_swap_customer_metadata(
        self,
        customer_id: str,
        expected_version: int,
        metadata: dict[str, str],
        name: str | None = None,
    ) -> bool:
        current = await self._call(
            "retrieve_customer",
            lambda: stripe.Customer.retrieve_async(customer_id, api_key=self._api_key),
        )
        current_metadata = _to_dict(current).get("metadata") or {}
        if parse_int(current_metadata.get(CUSTOMER_VERSION_KEY), 0) != expected_version:
            return False

        params: dict[str, Any] = {"metadata": metadata}
        if name:
            params["name"] = name
        await self._call(
            "modify_customer",
            lambda: stripe.Customer.modify_async(customer_id, api_key=self._api_key, **params),
        )
        return True

    # ==================== Payment intents ====================

    async def retrieve_payment_intent(self, payment_intent_id: str) -> dict[str, Any]:
        intent = await self._call(
            "retrieve_payment_intent",
            lambda: stripe.PaymentIntent.retrieve_async(payment_intent_id, api_key=self._api_key),
        )
        return _to_dict(intent)


_client: PaymentApiClient | None = None


def get_payment_api() -> PaymentApiClient:
    """FastAPI dependency returning the process-wide client"""
    global _client
    if _client is None:
        _client = PaymentApiClient(settings.STRIPE_SECRET_KEY)
    return _client
