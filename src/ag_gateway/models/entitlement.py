# src/ag_gateway/models/entitlement.py
"""Entitlement tiers granted to verified accounts or devices."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ag_gateway.db.session import Base
from ag_gateway.db.time import utcnow

HOLDER_ACCOUNT = "account"
HOLDER_DEVICE = "device"


class Entitlement(Base):
    """Current tier for one holder; only written after a successful ledger commit."""

    __tablename__ = "entitlement"
    __table_args__ = (UniqueConstraint("holder_kind", "holder_id", name="uq_entitlement_holder"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    holder_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    holder_id: Mapped[str] = mapped_column(Text, nullable=False)
    tier: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    source_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
