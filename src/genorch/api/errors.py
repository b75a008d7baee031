"""Translation of service errors into HTTP responses."""

from fastapi import HTTPException, status

from genorch.core.timezone import isoformat
from genorch.services.exceptions import (
    AccessDeniedError,
    GenerationDisabledError,
    InsufficientFundsError,
    InvalidInputError,
    ModerationRejectedError,
    NotFoundError,
    PermanentError,
    RateLimitedError,
    RemoteRateLimitedError,
    ServiceError,
    TransientError,
)

# Most specific classes first
_STATUS_CODES: list[tuple[type[ServiceError], int]] = [
    (GenerationDisabledError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (RateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (RemoteRateLimitedError, status.HTTP_429_TOO_MANY_REQUESTS),
    (InsufficientFundsError, status.HTTP_402_PAYMENT_REQUIRED),
    (AccessDeniedError, status.HTTP_403_FORBIDDEN),
    (ModerationRejectedError, status.HTTP_400_BAD_REQUEST),
    (InvalidInputError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (TransientError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (PermanentError, status.HTTP_502_BAD_GATEWAY),
]


def to_http_exception(error: ServiceError) -> HTTPException:
    """Map a service error to an HTTPException carrying its user-facing message."""
    status_code = next(
        (code for cls, code in _STATUS_CODES if isinstance(error, cls)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    headers = None
    if isinstance(error, RateLimitedError) and error.retry_at is not None:
        headers = {"X-Retry-At": isoformat(error.retry_at)}
    return HTTPException(status_code=status_code, detail=str(error), headers=headers)
