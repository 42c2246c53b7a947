# app/models/__init__.py
# Import all models here so SQLAlchemy registers them into Base.metadata.

from app.models.user import User  # noqa: F401
from app.models.event import Event  # noqa: F401

from app.models.coupon import Coupon  # noqa: F401

from app.models.transaction import Transaction  # noqa: F401
from app.models.transaction_event import TransactionEvent  # noqa: F401

from app.models.point import PointRecord  # noqa: F401
