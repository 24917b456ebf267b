"""Utility CLI deleting chat sessions that have been inactive for too long.

The relay never expires sessions on its own; run this from cron (or by hand)
to enforce a retention policy.
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timedelta, timezone

from dotenv import load_dotenv
from sqlalchemy.engine import make_url

from app.chat.repository import ChatMessageRepository, SqlAlchemyChatMessageRepository
from app.core.config import get_relay_settings
from app.models.session import create_schema, get_sessionmaker

logger = logging.getLogger("tools.purge_chat_sessions")

DEFAULT_RETENTION_DAYS = 30


def _safe_url(db_url: str) -> str:
    """Return ``db_url`` with any password redacted for logging."""

    return make_url(db_url).render_as_string(hide_password=True)


def compute_cutoff(retention_days: int, *, now: datetime | None = None) -> datetime:
    if retention_days < 0:
        raise ValueError("retention_days must be zero or positive")
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=retention_days)


def purge(repository: ChatMessageRepository, cutoff: datetime, *, dry_run: bool = False) -> int:
    """Delete sessions last active before ``cutoff``; return how many matched."""

    if dry_run:
        stale = 0
        for session_id in repository.list_session_ids():
            messages = repository.list_session_messages(session_id)
            if messages and max(m.timestamp for m in messages) < cutoff:
                stale += 1
        logger.info("Dry run: %d session(s) inactive since %s", stale, cutoff.isoformat())
        return stale

    deleted = repository.purge_sessions_before(cutoff)
    logger.info("Deleted %d session(s) inactive since %s", deleted, cutoff.isoformat())
    return deleted


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--days",
        type=int,
        default=DEFAULT_RETENTION_DAYS,
        help="Delete sessions without activity for this many days (default: %(default)s)",
    )
    parser.add_argument(
        "--database-url",
        default=None,
        help="Override DATABASE_URL for this run",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report how many sessions would be deleted",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    """Script entrypoint."""

    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    args = build_parser().parse_args(argv)

    db_url = args.database_url or get_relay_settings().database_url
    logger.info("Purging chat sessions on %s", _safe_url(db_url))
    factory = get_sessionmaker(db_url)
    create_schema(factory)
    repository = SqlAlchemyChatMessageRepository(factory)
    purge(repository, compute_cutoff(args.days), dry_run=args.dry_run)
    return 0


if __name__ == "__main__":  # pragma: no cover - CLI execution
    raise SystemExit(main())
