"""Translate engine outcomes into HTTP errors."""

from fastapi import HTTPException

from services.errors import (
    CreditEngineError,
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidConfigurationError,
    PaymentEventFailedError,
    PersistenceConflictError,
    RateLimitedError,
    UsageNotFoundError,
    UserNotFoundError,
)


def to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, InsufficientCreditsError):
        return HTTPException(status_code=402, detail={"message": str(exc), **exc.to_dict()})
    if isinstance(exc, RateLimitedError):
        headers = {}
        if exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = exc.reset_at.isoformat()
        return HTTPException(status_code=429, detail={"message": str(exc), **exc.to_dict()}, headers=headers or None)
    if isinstance(exc, (InvalidAmountError, InvalidConfigurationError, ValueError)):
        return HTTPException(status_code=422, detail=str(exc))
    if isinstance(exc, (UsageNotFoundError, UserNotFoundError)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, PersistenceConflictError):
        return HTTPException(status_code=503, detail="The request could not be completed. Please retry.")
    if isinstance(exc, PaymentEventFailedError):
        return HTTPException(status_code=500, detail="Event processing failed")
    if isinstance(exc, CreditEngineError):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail="Internal error")
