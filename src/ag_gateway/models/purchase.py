# src/ag_gateway/models/purchase.py
"""Append-only ledger of processed purchase transactions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ag_gateway.db.session import Base
from ag_gateway.db.time import utcnow

PURCHASE_STATUS_PENDING = "pending"
PURCHASE_STATUS_SUCCESS = "success"
PURCHASE_STATUS_FAILED = "failed"
PURCHASE_STATUSES = (PURCHASE_STATUS_PENDING, PURCHASE_STATUS_SUCCESS, PURCHASE_STATUS_FAILED)


class PurchaseTransaction(Base):
    """Write-once row; the unique transaction id is the idempotency key."""

    __tablename__ = "purchase_transaction"

    # SQLite only autoincrements INTEGER primary keys.
    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"),
        primary_key=True,
        autoincrement=True,
    )
    transaction_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    device_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    subject_id: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    product_id: Mapped[str] = mapped_column(String(255), nullable=False)
    purchase_token: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=PURCHASE_STATUS_PENDING)
    verified_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
    )

    def as_dict(self) -> dict[str, object]:
        """Return a JSON-friendly view for admin listings."""
        return {
            "transaction_id": self.transaction_id,
            "device_id": self.device_id,
            "google_uid": self.subject_id,
            "product_id": self.product_id,
            "status": self.status,
            "verified_at": self.verified_at.isoformat() if self.verified_at else None,
        }
