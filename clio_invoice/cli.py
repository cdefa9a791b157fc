"""
Command-line interface for the Clio sync service.

Runs the reconciliation jobs by hand (``sync-users``, ``sync-bills``,
``full-sync``) or keeps the poller running in the foreground (``poll``).
Credentials come from the first active user with a stored Clio token.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import time
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from .polling import PollScheduler
from .settings import ensure_default_settings, get_session_factory
from .sync import get_any_active_clio_client, sync_awaiting_approval_bills, sync_users

logger = logging.getLogger(__name__)


def _print(payload: dict) -> None:
    print(json.dumps(payload, indent=2, default=str))


def run_sync_users(factory: sessionmaker) -> int:
    session = factory()
    try:
        clio = get_any_active_clio_client(session)
        if clio is None:
            raise SystemExit("No authenticated user available for sync")
        result = sync_users(session, clio)
    finally:
        session.close()
    _print(result.to_dict())
    return 0 if result.success else 1


def run_sync_bills(factory: sessionmaker) -> int:
    session = factory()
    try:
        result = sync_awaiting_approval_bills(session)
    finally:
        session.close()
    _print(result.to_dict())
    return 0 if result.success else 1


def run_poll(factory: sessionmaker, sleep_seconds: float = 1.0) -> int:
    poller = PollScheduler(factory)
    first = poller.start()
    if first is not None:
        _print(first.to_dict())
    try:
        while True:
            time.sleep(sleep_seconds)
    except KeyboardInterrupt:
        logger.info("Interrupted; stopping poller")
    finally:
        poller.stop()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Sync Clio bills awaiting approval into the local database")
    parser.add_argument("command", choices=["sync-users", "sync-bills", "full-sync", "poll"])
    parser.add_argument("--database-url", default=os.environ.get("DATABASE_URL"), help="SQLAlchemy database URL")
    parser.add_argument("--log-level", default=os.environ.get("LOG_LEVEL", "INFO"))
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if not args.database_url:
        raise SystemExit("DATABASE_URL must be provided via --database-url or environment variable")

    factory = get_session_factory(args.database_url)
    session = factory()
    try:
        ensure_default_settings(session)
    finally:
        session.close()

    if args.command == "sync-users":
        return run_sync_users(factory)
    if args.command == "sync-bills":
        return run_sync_bills(factory)
    if args.command == "full-sync":
        result = PollScheduler(factory).perform_full_sync()
        _print(result)
        return 0 if result["success"] else 1
    return run_poll(factory)


if __name__ == "__main__":
    raise SystemExit(main())
