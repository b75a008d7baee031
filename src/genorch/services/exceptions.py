"""Service error hierarchy for job orchestration.

This module defines the exception hierarchy for service-level errors:
- ServiceError: Base for all service errors
- PolicyError: Rejected before any side effect (validation, quota, access, moderation)
- TransientError: Retryable errors (network, timeouts, 5xx, remote rate limits)
- PermanentError: Non-retryable remote or bookkeeping errors
"""

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base exception for all service errors."""

    pass


class PolicyError(ServiceError):
    """Request rejected by a business rule. Raised before any debit or remote call."""

    pass


class TransientError(ServiceError):
    """Transient error that may succeed on retry.

    Examples:
    - Network timeouts
    - Service unavailable (5xx)
    - Remote rate limit exceeded (429)
    """

    pass


class PermanentError(ServiceError):
    """Permanent error that will not succeed on retry.

    Examples:
    - Authentication failures (401, 403)
    - Invalid request parameters (400)
    """

    pass


# Policy errors (surfaced directly to the caller)
class GenerationDisabledError(PolicyError):
    """Generation is switched off globally."""

    pass


class RateLimitedError(PolicyError):
    """The caller exceeded their generation quota."""

    def __init__(self, message: str, retry_at: Optional[datetime] = None):
        super().__init__(message)
        self.retry_at = retry_at


class InvalidInputError(PolicyError):
    """Malformed or out-of-range request parameters."""

    pass


class InvalidResourceSetError(InvalidInputError):
    """Wrong resource count, missing checkpoint or uncovered resource."""

    pass


class AccessDeniedError(PolicyError):
    """A private resource was requested without an entitlement."""

    pass


class ModerationRejectedError(PolicyError):
    """The prompt was flagged by external moderation."""

    def __init__(self, categories: list[str]):
        super().__init__(f"Your prompt was flagged for: {', '.join(categories) or 'unknown'}")
        self.categories = categories


class InsufficientFundsError(PolicyError):
    """The ledger rejected a debit for lack of balance."""

    pass


class NotFoundError(ServiceError):
    """Remote or local entity does not exist."""

    pass


# Remote errors
class RemoteSubmissionFailedError(PermanentError):
    """Remote service rejected the call (non-2xx other than 429/5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RemoteTransientError(TransientError):
    """Timeout, transport error or 5xx from a remote service."""

    pass


class RemoteRateLimitedError(TransientError):
    """Remote service answered 429 (distinct from the internal quota)."""

    pass


class LedgerError(PermanentError):
    """Ledger rejected an operation."""

    pass
