"""
Consent extraction and validation for completed checkouts.

Pure functions over the checkout session plus the audit log lines written
for every consent decision. Addresses and user agents never reach a log
record; they are reduced to a redaction marker.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from app.core.exceptions import ErrorCategory
from app.core.logging import get_logger, redact
from app.domain.events import CheckoutSession

logger = get_logger(__name__)

CONSENT_SOURCE_CHECKOUT = "checkout_session"
CONSENT_METHOD_CHECKOUT = "stripe_checkout"


@dataclass(frozen=True)
class ConsentData:
    promotions: bool
    terms_of_service: bool | None
    timestamp: datetime
    source: str
    method: str
    session_id: str
    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class ConsentValidationResult:
    consent: ConsentData
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def extract_consent(
    session: CheckoutSession,
    ip_address: str | None = None,
    user_agent: str | None = None,
    now: datetime | None = None,
) -> ConsentValidationResult:
    """
    Derive consent flags from the session and check them against what the
    checkout asked for.

    Missing consent block and requested-but-absent promotions are warnings.
    Required terms that were not accepted are an error. A ConsentData is
    always returned so callers can log what was seen.
    """
    consent_block = session.consent or {}
    collection = session.consent_collection or {}

    promotions = consent_block.get("promotions") == "opt_in"
    terms_accepted = consent_block.get("terms_of_service") == "accepted"

    consent = ConsentData(
        promotions=promotions,
        terms_of_service=terms_accepted if "terms_of_service" in consent_block else None,
        timestamp=now or datetime.now(timezone.utc),
        source=CONSENT_SOURCE_CHECKOUT,
        method=CONSENT_METHOD_CHECKOUT,
        session_id=session.id,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    errors: list[str] = []
    warnings: list[str] = []

    if not session.consent:
        warnings.append("No consent data found in checkout session")

    if collection.get("promotions") == "auto" and not consent_block.get("promotions"):
        warnings.append("Promotions consent was requested but not provided")

    if collection.get("terms_of_service") == "required" and not terms_accepted:
        errors.append("Terms of service consent was required but not accepted")

    return ConsentValidationResult(consent=consent, errors=errors, warnings=warnings)


def log_validation_outcome(result: ConsentValidationResult) -> None:
    if not result.is_valid:
        logger.error(
            "Consent validation failed",
            extra_data={
                "session_id": result.consent.session_id,
                "errors": result.errors,
                "warnings": result.warnings,
            },
            category=ErrorCategory.CONSENT_PROCESSING,
        )
    elif result.warnings:
        logger.warning(
            "Consent validation warnings",
            extra_data={
                "session_id": result.consent.session_id,
                "warnings": result.warnings,
            },
            category=ErrorCategory.CONSENT_PROCESSING,
        )


def _compliance_data(consent: ConsentData) -> dict[str, Any]:
    return {
        "ip_address": redact(consent.ip_address),
        "user_agent": redact(consent.user_agent),
        "session_id": consent.session_id,
    }


def log_consent_decision(
    consent: ConsentData,
    customer_id: str | None = None,
    context: dict[str, Any] | None = None,
) -> None:
    """Audit record for the consent collected at checkout"""
    logger.info(
        "Consent collected",
        extra_data={
            "event": "consent_collected",
            "session_id": consent.session_id,
            "customer_id": customer_id or "unknown",
            "consent": {
                "promotions": consent.promotions,
                "terms_of_service": consent.terms_of_service,
            },
            "metadata": {
                "source": consent.source,
                "method": consent.method,
                **_compliance_data(consent),
                **(context or {}),
            },
            "audit_trail": True,
        },
    )


def integrity_check(consent: ConsentData) -> dict[str, bool]:
    checks = {
        "has_timestamp": consent.timestamp is not None,
        "has_source": bool(consent.source),
        "has_method": bool(consent.method),
        "has_session_link": bool(consent.session_id),
    }
    checks["is_complete"] = all(checks.values())
    return checks


def log_consent_stored(consent: ConsentData, customer_id: str) -> None:
    """Audit lines after the consent was folded into the customer record"""
    logger.info(
        "Consent data processed and stored",
        extra_data={
            "customer_id": customer_id,
            "consent_decisions": {
                "promotions": consent.promotions,
                "terms_of_service": consent.terms_of_service,
                "timestamp": consent.timestamp.isoformat(),
                "source": consent.source,
                "method": consent.method,
            },
            "compliance_data": _compliance_data(consent),
        },
    )

    decision = "opt_in" if consent.promotions else "opt_out"
    logger.info(
        "Marketing consent granted" if consent.promotions else "Marketing consent declined",
        extra_data={
            "customer_id": customer_id,
            "session_id": consent.session_id,
            "consent_type": "marketing_promotions",
            "decision": decision,
            "legal_basis": "explicit_consent" if consent.promotions else "no_consent",
        },
    )

    checks = integrity_check(consent)
    if not checks["is_complete"]:
        logger.warning(
            "Consent data integrity check failed",
            extra_data={"customer_id": customer_id, "integrity_check": checks},
            category=ErrorCategory.CONSENT_PROCESSING,
        )
