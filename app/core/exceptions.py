"""
Custom Exception Hierarchy

Provides structured exceptions and the error taxonomy shared by every
log record and API response in the settlement pipeline.
"""
from typing import Any
from enum import Enum


class ErrorCategory(str, Enum):
    """Error categories attached to logged errors for monitoring and alerting"""

    SIGNATURE_VERIFICATION = "SIGNATURE_VERIFICATION"
    EVENT_PARSING = "EVENT_PARSING"
    INVENTORY_UPDATE = "INVENTORY_UPDATE"
    CUSTOMER_DATA = "CUSTOMER_DATA"
    WEBHOOK_PROCESSING = "WEBHOOK_PROCESSING"
    RATE_LIMITING = "RATE_LIMITING"
    EXTERNAL_API = "EXTERNAL_API"
    CONSENT_PROCESSING = "CONSENT_PROCESSING"
    DATABASE = "DATABASE"


class ErrorCode(str, Enum):
    """Standard error codes for API responses"""

    # Webhook intake
    MISSING_SIGNATURE = "MISSING_SIGNATURE"
    SIGNATURE_VERIFICATION_FAILED = "SIGNATURE_VERIFICATION_FAILED"
    BODY_PARSE_FAILED = "BODY_PARSE_FAILED"
    EVENT_PARSE_FAILED = "EVENT_PARSE_FAILED"
    WEBHOOK_SECRET_MISSING = "WEBHOOK_SECRET_MISSING"
    METHOD_NOT_ALLOWED = "METHOD_NOT_ALLOWED"

    # General
    RATE_LIMITED = "RATE_LIMITED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None,
        category: ErrorCategory = ErrorCategory.WEBHOOK_PROCESSING,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}
        self.category = category

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class WebhookRejectedError(AppException):
    """Raised before any side effect when a delivery cannot be accepted.

    These are the only outcomes that do not acknowledge with 200, so the
    provider may legitimately redeliver.
    """

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        status_code: int = 400,
        category: ErrorCategory = ErrorCategory.SIGNATURE_VERIFICATION,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=status_code,
            details=details,
            category=category,
        )

    def to_response(self, correlation_id: str, processing_time_ms: int) -> dict[str, Any]:
        """Webhook-shaped body: same envelope as acknowledged deliveries"""
        return {
            "received": False,
            "error": self.message,
            "code": self.error_code.value,
            "correlationId": correlation_id,
            "processingTime": processing_time_ms,
            "status": "error",
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details,
            category=ErrorCategory.EVENT_PARSING,
        )
        if field:
            self.details["field"] = field


class TransientError(AppException):
    """Base for failures that the retry executor may retry.

    ``retry_code`` is matched against a policy's retryable identifiers.
    """

    retry_code: str = "NETWORK_ERROR"

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.EXTERNAL_API,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            status_code=503,
            details=details,
            category=category,
        )


class VersionConflictError(TransientError):
    """Raised when a compare-and-swap lost the race on a versioned resource"""

    retry_code = "version_conflict"

    def __init__(self, resource: str, resource_id: str, expected_version: int):
        super().__init__(
            message=f"version_conflict on {resource} {resource_id} (expected version {expected_version})",
            category=ErrorCategory.INVENTORY_UPDATE if resource == "product" else ErrorCategory.CUSTOMER_DATA,
            details={
                "resource": resource,
                "resource_id": resource_id,
                "expected_version": expected_version,
            },
        )


class RateLimitedError(TransientError):
    """Raised when an upstream asked us to slow down"""

    retry_code = "RATE_LIMITED"

    def __init__(self, service_name: str, retry_after: float | None = None):
        super().__init__(
            message=f"RATE_LIMITED by {service_name}",
            category=ErrorCategory.RATE_LIMITING,
            details={"service": service_name, "retry_after": retry_after},
        )
        self.error_code = ErrorCode.RATE_LIMITED
        self.status_code = 429


class ExternalApiError(AppException):
    """Raised when the payment API returned an error we could not classify"""

    retry_code = "stripe_api_error"

    def __init__(
        self,
        service_name: str,
        message: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            status_code=502,
            details=details,
            category=ErrorCategory.EXTERNAL_API,
        )
        self.details["service"] = service_name


class InventoryUpdateError(AppException):
    """Base exception for inventory failures that must not be retried"""

    def __init__(
        self,
        message: str,
        product_id: str,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.INTERNAL_ERROR,
            status_code=500,
            details=details,
            category=ErrorCategory.INVENTORY_UPDATE,
        )
        self.details["product_id"] = product_id


class WrongProductTypeError(InventoryUpdateError):
    """Raised when the configured inventory product is not the expected catalog entry"""

    def __init__(self, product_id: str, actual_type: str | None, expected_type: str):
        super().__init__(
            message=f"Invalid product type for inventory update: {actual_type}",
            product_id=product_id,
            details={"actual_type": actual_type, "expected_type": expected_type},
        )

