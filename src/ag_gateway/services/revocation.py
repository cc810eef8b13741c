"""Durable registry of issued session tokens.

Signature checks alone cannot withdraw a token once issued. Every session
token is therefore recorded at handshake time and looked up again on each
request; a storage failure during the lookup counts as "not registered".
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ag_gateway.core.security import token_digest
from ag_gateway.models import SessionRecord

logger = logging.getLogger(__name__)


class RevocationStore:
    """Session registry backed by the ``session_record`` table."""

    def __init__(self, db: Session, *, clock: Callable[[], float] = time.time) -> None:
        self._db = db
        self._clock = clock

    def register(
        self,
        subject_id: str,
        token: str,
        device_id: str | None,
        expires_at: int,
        *,
        jti: str | None = None,
    ) -> None:
        """Persist a freshly issued session token."""
        digest = token_digest(token)
        record = SessionRecord(
            token_digest=digest,
            jti=jti or digest[:32],
            subject_id=subject_id,
            device_id=device_id,
            issued_at=int(self._clock()),
            expires_at=int(expires_at),
            revoked=False,
        )
        self._db.add(record)
        try:
            self._db.commit()
        except SQLAlchemyError:
            self._db.rollback()
            raise

    def is_registered(self, token: str) -> bool:
        """Return True only for a known, unexpired, unrevoked token."""
        try:
            record = self._db.get(SessionRecord, token_digest(token))
        except SQLAlchemyError:
            logger.exception("Session registry lookup failed; rejecting token")
            self._db.rollback()
            return False
        if record is None or record.revoked:
            return False
        return record.expires_at >= int(self._clock())

    def revoke(self, token: str) -> bool:
        """Revoke a single token. Returns True if a record was updated."""
        result = self._db.execute(
            update(SessionRecord)
            .where(SessionRecord.token_digest == token_digest(token))
            .values(revoked=True)
        )
        self._db.commit()
        return bool(result.rowcount)

    def revoke_subject(self, subject_id: str) -> int:
        """Revoke every live session for ``subject_id``."""
        result = self._db.execute(
            update(SessionRecord)
            .where(SessionRecord.subject_id == subject_id, SessionRecord.revoked.is_(False))
            .values(revoked=True)
        )
        self._db.commit()
        return int(result.rowcount or 0)

    def prune_expired(self, now: int | None = None) -> int:
        """Delete records whose tokens can no longer verify."""
        cutoff = int(self._clock()) if now is None else now
        result = self._db.execute(delete(SessionRecord).where(SessionRecord.expires_at < cutoff))
        self._db.commit()
        return int(result.rowcount or 0)

    def active_count(self) -> int:
        """Return the number of live session records."""
        count = self._db.scalar(
            select(func.count())
            .select_from(SessionRecord)
            .where(
                SessionRecord.expires_at >= int(self._clock()),
                SessionRecord.revoked.is_(False),
            )
        )
        return int(count or 0)
