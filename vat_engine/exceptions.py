"""
Exception hierarchy for the VAT settlement engine.

Every error raised by the engine derives from VatEngineError, so callers
can catch the whole family with one clause. Subclasses follow the error
taxonomy used throughout the engine:

- ValidationError: bad input, never retried
- BusinessRuleError: input is well-formed but violates a filing rule
- TransientError: infrastructure hiccup, retried per backoff policy
- AuthorityRejection: permanent rejection by the tax authority
- CredentialError: certificate/credential problem, needs renewal
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional


class VatEngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def __str__(self) -> str:
        if self.code:
            return f"[{self.code}] {self.message}"
        return self.message

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to a plain dict for reports and API responses."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ValidationError(VatEngineError):
    """
    Input failed validation.

    Attributes:
        field: Name of the failing field, when there is a single one
        errors: All validation messages collected
    """

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        errors: Optional[list[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"field": field, "errors": list(errors or [])},
        )
        self.field = field
        self.errors = list(errors or [])


class UnknownRateCode(ValidationError):
    """No rate is effective for the code on the requested date."""

    def __init__(self, rate_code: str, as_of: Any) -> None:
        super().__init__(
            f"No rate effective for code {rate_code!r} on {as_of}",
            field="rate_code",
            code="UNKNOWN_RATE_CODE",
        )
        self.rate_code = rate_code
        self.as_of = as_of


class InvalidPeriodError(ValidationError):
    """Malformed or out-of-range tax period."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="period", code="INVALID_PERIOD")


class PeriodNotReady(ValidationError):
    """
    A period cannot be aggregated yet.

    Raised when any transaction in the set lacks a classification or a
    resolved rate. Aggregation is all-or-nothing.
    """

    def __init__(self, period: str, reasons: list[str]) -> None:
        super().__init__(
            f"Period {period} is not ready for settlement "
            f"({len(reasons)} blocking issue(s))",
            field="transactions",
            errors=reasons,
            code="PERIOD_NOT_READY",
        )
        self.period = period
        self.reasons = list(reasons)


class CorrectionError(ValidationError):
    """A correction cannot be computed against the given original."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message, field=field, code="CORRECTION_ERROR")


class SignatureError(ValidationError):
    """Document signature missing, mismatched or not verifiable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="signature", code="SIGNATURE_ERROR")


class WebhookVerificationError(ValidationError):
    """Webhook payload failed signature verification or is malformed."""

    def __init__(self, message: str) -> None:
        super().__init__(message, field="webhook", code="WEBHOOK_REJECTED")


# ---------------------------------------------------------------------------
# Business rules
# ---------------------------------------------------------------------------


class BusinessRuleError(VatEngineError):
    """Input is well-formed but breaks a filing rule."""

    def __init__(self, message: str, rule: str) -> None:
        super().__init__(message, code="BUSINESS_RULE", details={"rule": rule})
        self.rule = rule


class FilingFrequencyMismatch(BusinessRuleError):
    """Declaration frequency does not match the client's configuration."""

    def __init__(self, message: str) -> None:
        super().__init__(message, rule="filing_frequency")


class AcceleratedRefundIneligible(BusinessRuleError):
    """The client does not qualify for the 25-day refund."""

    def __init__(self, message: str, reasons: Optional[list[str]] = None) -> None:
        super().__init__(message, rule="accelerated_refund")
        self.details["reasons"] = list(reasons or [])
        self.reasons = list(reasons or [])


class CarryForwardError(BusinessRuleError):
    """Carry-forward application would overdraw or reuse a closed balance."""

    def __init__(self, message: str) -> None:
        super().__init__(message, rule="carry_forward")


# ---------------------------------------------------------------------------
# Authority / infrastructure
# ---------------------------------------------------------------------------


class TransientError(VatEngineError):
    """
    Temporary infrastructure failure, eligible for retry.

    Attributes:
        retry_after: Seconds the remote side asked us to wait, if known
    """

    def __init__(
        self,
        message: str,
        code: str = "TRANSIENT",
        retry_after: Optional[int] = None,
    ) -> None:
        super().__init__(message, code=code, details={"retry_after": retry_after})
        self.retry_after = retry_after


class GatewayTimeoutError(TransientError):
    """Authority call exceeded the per-attempt timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="TIMEOUT")


class GatewayUnavailableError(TransientError):
    """Connection refused, maintenance window or 5xx from the authority."""

    def __init__(self, message: str, retry_after: Optional[int] = None) -> None:
        super().__init__(message, code="UNAVAILABLE", retry_after=retry_after)


class AuthorityRejection(VatEngineError):
    """The authority rejected the document. Permanent; never auto-retried."""

    def __init__(self, authority_code: str, authority_message: str) -> None:
        super().__init__(
            f"Document rejected by authority: {authority_message}",
            code="REJECTED",
            details={
                "authority_code": authority_code,
                "authority_message": authority_message,
            },
        )
        self.authority_code = authority_code
        self.authority_message = authority_message


class CredentialError(VatEngineError):
    """Certificate or credential expired/invalid. Needs renewal, not retry."""

    def __init__(
        self, message: str, expired_at: Optional[datetime] = None
    ) -> None:
        super().__init__(
            message,
            code="CREDENTIALS",
            details={"expired_at": expired_at.isoformat() if expired_at else None},
        )
        self.expired_at = expired_at


class GatewayError(VatEngineError):
    """
    Permanent protocol failure talking to the authority.

    Attributes:
        status_code: HTTP status or authority status code
        response_data: Raw response payload, if any
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_data: Any = None,
    ) -> None:
        super().__init__(message, code="GATEWAY_ERROR")
        self.status_code = status_code
        self.response_data = response_data


class ProofRetrievalError(VatEngineError):
    """
    Proof-of-receipt could not be fetched or parsed.

    Recoverable: retry the retrieval only, never the submission.
    retryable marks failures caused by a transient gateway error.
    """

    def __init__(
        self,
        message: str,
        reference_number: Optional[str] = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(
            message,
            code="PROOF_RETRIEVAL",
            details={"reference_number": reference_number, "retryable": retryable},
        )
        self.reference_number = reference_number
        self.retryable = retryable


# ---------------------------------------------------------------------------
# Orchestration / infrastructure wiring
# ---------------------------------------------------------------------------


class InvalidTransition(VatEngineError):
    """Requested submission state change is not allowed."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move submission from {current} to {target}",
            code="INVALID_TRANSITION",
            details={"current": current, "target": target},
        )
        self.current = current
        self.target = target


class DuplicateSubmission(VatEngineError):
    """A settled submission already exists under this id."""

    def __init__(self, submission_id: str, status: str) -> None:
        super().__init__(
            f"Submission {submission_id} already exists and is {status}",
            code="DUPLICATE_SUBMISSION",
            details={"submission_id": submission_id, "status": status},
        )
        self.submission_id = submission_id
        self.status = status


class RetryLimitExceeded(VatEngineError):
    """Retry cap reached; an explicit forced retry is required."""

    def __init__(self, attempts: int, limit: int) -> None:
        super().__init__(
            f"Retry limit reached ({attempts}/{limit}); use a forced retry",
            code="RETRY_LIMIT",
            details={"attempts": attempts, "limit": limit},
        )
        self.attempts = attempts
        self.limit = limit


class StorageIntegrityError(VatEngineError):
    """Storage returned a content hash that does not match the bytes sent."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            "Stored content hash does not match document digest",
            code="STORAGE_INTEGRITY",
            details={"expected": expected, "actual": actual},
        )


class ConfigError(VatEngineError):
    """Configuration is missing or invalid."""

    def __init__(self, message: str, issues: Optional[list[str]] = None) -> None:
        super().__init__(message, code="CONFIG", details={"issues": list(issues or [])})
        self.issues = list(issues or [])


__all__ = [
    "VatEngineError",
    "ValidationError",
    "UnknownRateCode",
    "InvalidPeriodError",
    "PeriodNotReady",
    "CorrectionError",
    "SignatureError",
    "WebhookVerificationError",
    "BusinessRuleError",
    "FilingFrequencyMismatch",
    "AcceleratedRefundIneligible",
    "CarryForwardError",
    "TransientError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "AuthorityRejection",
    "CredentialError",
    "GatewayError",
    "ProofRetrievalError",
    "InvalidTransition",
    "DuplicateSubmission",
    "RetryLimitExceeded",
    "StorageIntegrityError",
    "ConfigError",
]
