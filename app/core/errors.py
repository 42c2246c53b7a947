from __future__ import annotations

from fastapi import HTTPException, status


class TicketingError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST


# -------------------------
# Caller errors
# -------------------------
class ValidationError(TicketingError):
    pass


class InvalidAmount(ValidationError):
    pass


class InvalidTransition(ValidationError):
    pass


class PaymentDeadlinePassed(ValidationError):
    pass


class CouponRejected(ValidationError):
    def __init__(self, reason: str):
        super().__init__(f"Coupon rejected: {reason}")
        self.reason = reason


class NotFound(TicketingError):
    status_code = status.HTTP_404_NOT_FOUND


class Forbidden(TicketingError):
    status_code = status.HTTP_403_FORBIDDEN


# -------------------------
# Resource errors
# -------------------------
class InsufficientResource(TicketingError):
    status_code = status.HTTP_409_CONFLICT
    resource = "resource"


class InsufficientSeats(InsufficientResource):
    resource = "seats"


class InsufficientPoints(InsufficientResource):
    resource = "points"


class CouponUsageExhausted(InsufficientResource):
    resource = "coupon_uses"


# -------------------------
# Concurrency / storage
# -------------------------
class TransitionConflict(TicketingError):
    """Status guard tripped: another trigger already moved the transaction."""

    status_code = status.HTTP_409_CONFLICT


class StorageFailure(TicketingError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


def to_http_exception(e: TicketingError) -> HTTPException:
    detail: str | dict = str(e) or e.__class__.__name__
    if isinstance(e, InsufficientResource):
        detail = {"message": str(e), "resource": e.resource}
    elif isinstance(e, CouponRejected):
        detail = {"message": str(e), "reason": e.reason}
    return HTTPException(status_code=e.status_code, detail=detail)
