"""Billing errors and operation results

Infrastructure code raises the exceptions below. The orchestrator and the
webhook pipeline catch them and return result objects carrying an ErrorKind,
so callers map outcomes to HTTP responses in one place.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.models.enums import EventOutcome


class ErrorKind(str, Enum):
    INVALID_SIGNATURE = "invalid_signature"
    MALFORMED_PAYLOAD = "malformed_payload"
    UNKNOWN_EVENT_TYPE = "unknown_event_type"
    STALE_EVENT = "stale_event"
    DUPLICATE_EVENT = "duplicate_event"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"
    LOCK_TIMEOUT = "lock_timeout"
    PERSISTENCE_FAILURE = "persistence_failure"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    PROVIDER_CALL_FAILURE = "provider_call_failure"
    INVALID_TRANSITION = "invalid_transition"
    NOT_FOUND = "not_found"


# Infrastructure failures the caller may retry
RETRYABLE_ERRORS = frozenset({
    ErrorKind.LOCK_TIMEOUT,
    ErrorKind.PERSISTENCE_FAILURE,
    ErrorKind.DEADLINE_EXCEEDED,
})

# Bad input from the sender, never retried
REJECTED_ERRORS = frozenset({
    ErrorKind.INVALID_SIGNATURE,
    ErrorKind.MALFORMED_PAYLOAD,
})


class BillingError(Exception):
    """Base class for billing infrastructure failures"""
    kind = ErrorKind.PERSISTENCE_FAILURE


class InvalidSignatureError(BillingError):
    kind = ErrorKind.INVALID_SIGNATURE


class MalformedPayloadError(BillingError):
    kind = ErrorKind.MALFORMED_PAYLOAD


class LockTimeoutError(BillingError):
    kind = ErrorKind.LOCK_TIMEOUT


class PersistenceError(BillingError):
    kind = ErrorKind.PERSISTENCE_FAILURE


class ProviderCallError(BillingError):
    """Outbound provider call failed (network, timeout, 4xx/5xx, SDK error)"""
    kind = ErrorKind.PROVIDER_CALL_FAILURE

    def __init__(self, message: str, provider: Optional[str] = None, action: Optional[str] = None,
                 status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.action = action
        self.status_code = status_code


@dataclass(frozen=True)
class ApplyResult:
    """Outcome of applying an event or command to one subscription"""
    subscription_id: Optional[int]
    new_status: Optional[str]
    applied: bool
    outcome: Optional[EventOutcome] = None
    error: Optional[ErrorKind] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error not in RETRYABLE_ERRORS and self.error not in REJECTED_ERRORS

    @classmethod
    def failure(cls, error: ErrorKind, reason: str, subscription_id: Optional[int] = None,
                status: Optional[str] = None) -> "ApplyResult":
        return cls(
            subscription_id=subscription_id,
            new_status=status,
            applied=False,
            outcome=None,
            error=error,
            reason=reason,
        )


@dataclass(frozen=True)
class WebhookResult:
    """Outcome of one webhook delivery, mapped to an HTTP status by the API layer"""
    provider: str
    applied: bool
    error: Optional[ErrorKind] = None
    event_id: Optional[str] = None
    subscription_id: Optional[int] = None
    status: Optional[str] = None
    reason: Optional[str] = None

    @property
    def http_status(self) -> int:
        if self.error in REJECTED_ERRORS:
            return 400
        if self.error in RETRYABLE_ERRORS:
            return 500
        return 200


@dataclass(frozen=True)
class SubscribeResult:
    subscription_id: Optional[int]
    status: Optional[str]
    redirect_url: Optional[str] = None
    superseded_ids: tuple = ()
    error: Optional[ErrorKind] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None
