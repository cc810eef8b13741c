# src/ag_gateway/models/session_record.py
"""Server-side registry of issued session tokens."""

from sqlalchemy import BigInteger, Boolean, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ag_gateway.db.session import Base


class SessionRecord(Base):
    """Record corroborating that a session token was issued and is still live."""

    __tablename__ = "session_record"

    # SHA-256 of the token; the raw bearer credential is never stored.
    token_digest: Mapped[str] = mapped_column(String(64), primary_key=True)
    jti: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    subject_id: Mapped[str] = mapped_column(Text, nullable=False, index=True)
    device_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    issued_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expires_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
