"""Admission-layer error taxonomy.

Every denial carries an HTTP status, a machine-readable ``reason`` and any
extra fields a caller needs to retry correctly.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class AdmissionError(Exception):
    """Raised when a job request cannot be admitted or completed."""

    status_code = 400
    reason = "admission_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if reason is not None:
            self.reason = reason
        self.extra: Dict[str, Any] = dict(extra or {})
        self.headers: Dict[str, str] = dict(headers or {})

    def to_body(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.message, "reason": self.reason}
        body.update(self.extra)
        return body


class AuthError(AdmissionError):
    status_code = 401
    reason = "invalid_credentials"


class PaymentRequired(AdmissionError):
    """No credential and no payment: the response is a price quote."""

    status_code = 402
    reason = "payment_required"


class PaymentRejected(AdmissionError):
    status_code = 402
    reason = "payment_rejected"


class PaymentUnavailable(AdmissionError):
    status_code = 503
    reason = "payment_unavailable"


class QuotaExceeded(AdmissionError):
    status_code = 429
    reason = "quota_exceeded"


class RateLimited(AdmissionError):
    status_code = 429
    reason = "rate_limited"

    def __init__(self, message: str, *, retry_after: int, **kwargs: Any) -> None:
        extra = dict(kwargs.pop("extra", None) or {})
        extra.setdefault("retry_after", retry_after)
        headers = dict(kwargs.pop("headers", None) or {})
        headers.setdefault("Retry-After", str(retry_after))
        super().__init__(message, extra=extra, headers=headers, **kwargs)
        self.retry_after = retry_after


class Busy(AdmissionError):
    status_code = 503
    reason = "server_busy"

    def __init__(self, message: str = "Server busy. Try again in a few seconds.", *, retry_after: int = 5) -> None:
        super().__init__(
            message,
            extra={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


class InvalidRequest(AdmissionError):
    status_code = 400
    reason = "invalid_request"


class RenderFailure(AdmissionError):
    status_code = 502
    reason = "render_failed"


class SettlementDiscrepancy(AdmissionError):
    """A paid job rendered but settlement failed. Logged, never returned."""

    status_code = 500
    reason = "settlement_discrepancy"


__all__ = [
    "AdmissionError",
    "AuthError",
    "Busy",
    "InvalidRequest",
    "PaymentRejected",
    "PaymentRequired",
    "PaymentUnavailable",
    "QuotaExceeded",
    "RateLimited",
    "RenderFailure",
    "SettlementDiscrepancy",
]
