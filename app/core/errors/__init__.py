"""
Error code system.

QuotaGateError is the base exception for all structured errors. Each
subclass is one error kind with a default registry code; the error
middleware looks the code up in registry.yaml and produces the public
JSON response (API code, HTTP status, safe message).

Usage:
    from app.core.errors import CredentialInvalid
    raise CredentialInvalid("tokeninfo returned 400")
"""

from __future__ import annotations

import re
from typing import Any, Dict, Optional

CODE_PATTERN = re.compile(r"^QG-[A-Z]{2,6}-\d{3}$")


class QuotaGateError(Exception):
    """Structured application error tied to the error registry.

    Args:
        detail: Internal-only detail message (exposed only in debug mode).
        code: Registry error code overriding the kind's default, e.g. "QG-PRX-003".
        context: Arbitrary key-value context for structured logging.
    """

    default_code = "QG-SYS-001"

    def __init__(
        self,
        detail: str | None = None,
        *,
        code: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)

    @property
    def details(self) -> Optional[Dict[str, Any]]:
        """Public, client-safe details attached to the response body."""
        return None


# ---------------------------------------------------------------------------
# Request / generic
# ---------------------------------------------------------------------------

class ValidationError(QuotaGateError):
    default_code = "QG-API-001"


class UserNotFound(QuotaGateError):
    default_code = "QG-API-002"


class RateLimited(QuotaGateError):
    default_code = "QG-API-003"

    def __init__(self, detail: str | None = None, *, retry_after_s: int = 60, **kwargs) -> None:
        super().__init__(detail, **kwargs)
        self.retry_after_s = retry_after_s


class OriginNotAllowed(QuotaGateError):
    default_code = "QG-API-004"


class Forbidden(QuotaGateError):
    default_code = "QG-API-005"


class InternalError(QuotaGateError):
    default_code = "QG-SYS-001"


# ---------------------------------------------------------------------------
# Identity binding
# ---------------------------------------------------------------------------

class CredentialInvalid(QuotaGateError):
    """External credential rejected, expired, or unverifiable (provider down included)."""

    default_code = "QG-AUTH-001"


class IdentitySpoofSuspected(QuotaGateError):
    """Verified subject does not match the subject the client claimed."""

    default_code = "QG-AUTH-002"


class IdentityConflict(QuotaGateError):
    """Email already bound to a different provider subject."""

    default_code = "QG-AUTH-003"


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class SessionExpired(QuotaGateError):
    default_code = "QG-SESS-001"


class SessionInvalid(QuotaGateError):
    default_code = "QG-SESS-002"


class AccountInactive(QuotaGateError):
    default_code = "QG-SESS-003"


class AuthenticationRequired(QuotaGateError):
    default_code = "QG-SESS-004"


# ---------------------------------------------------------------------------
# Usage metering
# ---------------------------------------------------------------------------

class UsageLimitExceeded(QuotaGateError):
    """Monthly quota reached. Carries current counters and the upgrade path."""

    default_code = "QG-USE-001"

    def __init__(self, questions_used: int, questions_limit: int, upgrade_path: str, **kwargs) -> None:
        super().__init__(
            f"used {questions_used} of {questions_limit}",
            **kwargs,
        )
        self.questions_used = questions_used
        self.questions_limit = questions_limit
        self.upgrade_path = upgrade_path

    @property
    def details(self) -> Dict[str, Any]:
        return {
            "questionsUsed": self.questions_used,
            "questionsLimit": self.questions_limit,
            "upgradeUrl": self.upgrade_path,
        }


class UsageTrackingFailed(QuotaGateError):
    default_code = "QG-USE-002"


# ---------------------------------------------------------------------------
# Billing
# ---------------------------------------------------------------------------

class WebhookSignatureInvalid(QuotaGateError):
    default_code = "QG-BILL-001"


class OwnerResolutionFailed(QuotaGateError):
    """The billing event's customer could not be mapped to a local user.

    ``transient`` marks provider timeouts/outages; those are retried by the
    provider, permanent failures are acknowledged and logged.
    """

    default_code = "QG-BILL-002"

    def __init__(self, detail: str | None = None, *, transient: bool = False, **kwargs) -> None:
        super().__init__(detail, **kwargs)
        self.transient = transient


class PaymentFailed(QuotaGateError):
    default_code = "QG-BILL-003"


class SubscriptionNotFound(QuotaGateError):
    default_code = "QG-BILL-004"


class WebhookProcessingFailed(QuotaGateError):
    default_code = "QG-BILL-005"


class BillingProviderUnavailable(QuotaGateError):
    """Provider timed out or could not be reached."""

    default_code = "QG-BILL-006"


class BillingProviderError(QuotaGateError):
    """Provider answered with an error."""

    default_code = "QG-BILL-007"


# ---------------------------------------------------------------------------
# Metered upstream
# ---------------------------------------------------------------------------

class UpstreamUnavailable(QuotaGateError):
    default_code = "QG-PRX-001"


class UpstreamNotConfigured(QuotaGateError):
    default_code = "QG-PRX-002"
