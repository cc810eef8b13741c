# src/ag_gateway/models/__init__.py
"""SQLAlchemy models for the trust gateway."""

from .entitlement import Entitlement
from .purchase import PurchaseTransaction
from .session_record import SessionRecord

__all__ = [
    "Entitlement",
    "PurchaseTransaction",
    "SessionRecord",
]
