"""Delete expired session records from the revocation store."""
from __future__ import annotations

import argparse
import logging
import sys
import time

from sqlalchemy.exc import SQLAlchemyError

from ag_gateway.db.session import SessionLocal
from ag_gateway.services.revocation import RevocationStore

logger = logging.getLogger("ag_gateway.prune_sessions")


def prune(grace_seconds: int = 0) -> int:
    """Remove records that expired more than ``grace_seconds`` ago."""
    cutoff = int(time.time()) - max(0, grace_seconds)
    with SessionLocal() as db:
        return RevocationStore(db).prune_expired(now=cutoff)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Prune expired session records")
    parser.add_argument(
        "--grace-seconds",
        type=int,
        default=0,
        help="Keep records for this long after they expire (useful for audits).",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="[prune_sessions] %(message)s")

    try:
        removed = prune(args.grace_seconds)
    except SQLAlchemyError as exc:
        logger.error("ERROR: %s", exc)
        return 1
    logger.info("removed %d expired session record(s)", removed)
    return 0


if __name__ == "__main__":
    sys.exit(main())
