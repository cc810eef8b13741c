"""Insert-first purchase ledger.

The unique constraint on ``transaction_id`` is the only arbiter of
"already processed". There is no read before the insert; two
concurrent commits of the same transaction race on the constraint and exactly
one of them wins.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ag_gateway.db.time import utcnow
from ag_gateway.models import PurchaseTransaction
from ag_gateway.models.purchase import PURCHASE_STATUS_SUCCESS, PURCHASE_STATUSES

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseRecord:
    """Fields of a verified purchase about to be written."""

    transaction_id: str
    device_id: str | None
    subject_id: str | None
    product_id: str
    purchase_token: str
    status: str = PURCHASE_STATUS_SUCCESS


@dataclass(frozen=True)
class Committed:
    row: PurchaseTransaction


@dataclass(frozen=True)
class AlreadyProcessed:
    row: PurchaseTransaction | None


@dataclass(frozen=True)
class Failed:
    reason: str


CommitResult = Committed | AlreadyProcessed | Failed


class PurchaseLedger:
    """Write-once store of processed transactions."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def commit(self, record: PurchaseRecord) -> CommitResult:
        """Insert ``record``; a duplicate transaction id is reported, never raised."""
        if record.status not in PURCHASE_STATUSES:
            return Failed(f"unknown status {record.status!r}")

        row = PurchaseTransaction(
            transaction_id=record.transaction_id,
            device_id=record.device_id,
            subject_id=record.subject_id,
            product_id=record.product_id,
            purchase_token=record.purchase_token,
            status=record.status,
            verified_at=utcnow(),
        )
        self._db.add(row)
        try:
            self._db.commit()
        except IntegrityError:
            self._db.rollback()
            existing = self.get(record.transaction_id)
            if existing is None:
                logger.exception(
                    "Ledger constraint violated for transaction %s", record.transaction_id
                )
                return Failed("IntegrityError")
            logger.info("Transaction %s already processed", record.transaction_id)
            return AlreadyProcessed(existing)
        except SQLAlchemyError as exc:
            self._db.rollback()
            logger.exception("Ledger write failed for transaction %s", record.transaction_id)
            return Failed(type(exc).__name__)
        self._db.refresh(row)
        return Committed(row)

    def get(self, transaction_id: str) -> PurchaseTransaction | None:
        return self._db.scalar(
            select(PurchaseTransaction).where(PurchaseTransaction.transaction_id == transaction_id)
        )

    def find_by_purchase_token(self, purchase_token: str) -> list[PurchaseTransaction]:
        """Return every ledger row recorded for a billing purchase token."""
        return list(
            self._db.scalars(
                select(PurchaseTransaction)
                .where(PurchaseTransaction.purchase_token == purchase_token)
                .order_by(PurchaseTransaction.id)
            )
        )

    def recent(self, limit: int = 50, status: str | None = None) -> list[PurchaseTransaction]:
        """Return the newest rows first, optionally filtered by status."""
        stmt = select(PurchaseTransaction)
        if status is not None:
            stmt = stmt.where(PurchaseTransaction.status == status)
        stmt = stmt.order_by(PurchaseTransaction.id.desc()).limit(max(1, min(limit, 500)))
        return list(self._db.scalars(stmt))

    def status_counts(self) -> dict[str, int]:
        counts = {status: 0 for status in PURCHASE_STATUSES}
        rows = self._db.execute(
            select(PurchaseTransaction.status, func.count()).group_by(PurchaseTransaction.status)
        )
        for status, count in rows:
            counts[status] = int(count)
        return counts
