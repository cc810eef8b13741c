"""Tier grants for accounts and devices."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ag_gateway.core.errors import GrantError
from ag_gateway.models import Entitlement
from ag_gateway.models.entitlement import HOLDER_ACCOUNT, HOLDER_DEVICE

logger = logging.getLogger(__name__)

TIER_FREE = "free"
TIER_RANKS: dict[str, int] = {"free": 0, "pro": 1, "premium": 2, "lifetime": 3}


@dataclass(frozen=True)
class Holder:
    """Who an entitlement belongs to."""

    kind: str
    id: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


def account_holder(subject_id: str) -> Holder:
    return Holder(HOLDER_ACCOUNT, subject_id)


def device_holder(device_id: str) -> Holder:
    return Holder(HOLDER_DEVICE, device_id)


def holder_for(
    subject_id: str | None,
    device_id: str | None,
    *,
    is_authenticated: bool,
) -> Holder | None:
    """Pick the verified account when there is one, otherwise the device."""
    if is_authenticated and subject_id:
        return account_holder(subject_id)
    if device_id:
        return device_holder(device_id)
    return None


def tier_rank(tier: str) -> int:
    return TIER_RANKS.get(tier, 0)


class EntitlementService:
    """Read and mutate the ``entitlement`` table."""

    def __init__(self, db: Session) -> None:
        self._db = db

    def _find(self, holder: Holder) -> Entitlement | None:
        return self._db.scalar(
            select(Entitlement).where(
                Entitlement.holder_kind == holder.kind,
                Entitlement.holder_id == holder.id,
            )
        )

    def tier_for(self, holder: Holder | None) -> str:
        """Return the holder's current tier, ``free`` when nothing was granted."""
        if holder is None:
            return TIER_FREE
        row = self._find(holder)
        return row.tier if row is not None else TIER_FREE

    def grant(self, holder: Holder, tier: str, transaction_id: str | None) -> Entitlement:
        """Raise ``holder`` to ``tier``. A lower tier never replaces a higher one.

        Raises:
            GrantError: If the entitlement row could not be written.
        """
        if tier not in TIER_RANKS:
            raise GrantError(f"Unknown tier {tier!r}")

        # One retry covers a concurrent first grant for the same holder.
        for attempt in range(2):
            row = self._find(holder)
            try:
                if row is None:
                    row = Entitlement(
                        holder_kind=holder.kind,
                        holder_id=holder.id,
                        tier=tier,
                        source_transaction_id=transaction_id,
                    )
                    self._db.add(row)
                elif tier_rank(tier) >= tier_rank(row.tier):
                    row.tier = tier
                    row.source_transaction_id = transaction_id
                self._db.commit()
            except IntegrityError:
                self._db.rollback()
                if attempt == 0:
                    continue
                logger.exception("Entitlement grant for %s kept conflicting", holder)
                raise GrantError("Entitlement could not be applied") from None
            except SQLAlchemyError as exc:
                self._db.rollback()
                logger.exception("Entitlement grant for %s failed", holder)
                raise GrantError("Entitlement could not be applied") from exc
            self._db.refresh(row)
            logger.info("Granted %s to %s (transaction %s)", row.tier, holder, transaction_id)
            return row
        raise GrantError("Entitlement could not be applied")  # pragma: no cover

    def revoke_for_transaction(self, transaction_id: str) -> int:
        """Drop every entitlement that was granted from ``transaction_id`` back to free."""
        rows = list(
            self._db.scalars(
                select(Entitlement).where(Entitlement.source_transaction_id == transaction_id)
            )
        )
        for row in rows:
            row.tier = TIER_FREE
        self._db.commit()
        if rows:
            logger.info("Revoked %d entitlement(s) granted by %s", len(rows), transaction_id)
        return len(rows)

    def tier_counts(self) -> dict[str, int]:
        rows = self._db.execute(select(Entitlement.tier, func.count()).group_by(Entitlement.tier))
        return {tier: int(count) for tier, count in rows}
