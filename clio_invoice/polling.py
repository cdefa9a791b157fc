"""
Background polling of Clio for bills awaiting approval.

:class:`PollScheduler` owns a single APScheduler interval job that re-runs
:func:`clio_invoice.sync.sync_awaiting_approval_bills`.  Starting runs one
pass immediately and then every ``polling_interval_minutes`` (read from the
settings table at start time).  Manual refreshes run a pass on the calling
thread and leave the timer alone.
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session, sessionmaker

from .clio_client import ClioClient
from .settings import get_polling_interval, should_auto_notify
from .sync import get_any_active_clio_client, sync_awaiting_approval_bills, sync_users
from .utils import send_slack_message, utcnow

logger = logging.getLogger(__name__)

POLL_JOB_ID = "clio_poll"

ClientFactory = Callable[[Session], Optional[ClioClient]]


@dataclass
class PollResult:
    success: bool = False
    bills_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    new_bills: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def notify_new_bills(count: int, webhook_url: Optional[str] = None) -> bool:
    """Post a Slack message about newly arrived bills; False when no webhook is configured."""
    url = webhook_url or os.getenv("SLACK_WEBHOOK_URL")
    if not url:
        logger.info("SLACK_WEBHOOK_URL not set; skipping new-bill notification")
        return False
    noun = "bill" if count == 1 else "bills"
    send_slack_message(url, f"{count} new {noun} awaiting approval in Clio.")
    return True


class PollScheduler:
    """Runs the awaiting-approval sync on a timer.

    State is ``stopped`` or ``running``; ``start`` while running and ``stop``
    while stopped are no-ops.  Each pass uses its own database session from
    ``session_factory``.  ``client_factory`` picks the Clio credentials for a
    pass and defaults to any active user's.
    """

    def __init__(self, session_factory: sessionmaker, client_factory: Optional[ClientFactory] = None) -> None:
        self.session_factory = session_factory
        self.client_factory = client_factory or get_any_active_clio_client
        self.interval_minutes: Optional[int] = None
        self.last_poll_time: Optional[datetime] = None
        self.errors: List[str] = []
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def execute_poll(self) -> PollResult:
        """Run one reconciliation pass and record its outcome for :meth:`status`."""
        result = PollResult()
        logger.info("Starting poll cycle...")
        session = self.session_factory()
        try:
            sync_result = sync_awaiting_approval_bills(session, client_factory=self.client_factory)
            result.bills_processed = sync_result.records_processed
            result.records_created = sync_result.records_created
            result.records_updated = sync_result.records_updated
            result.new_bills = sync_result.bills_created
            result.errors = list(sync_result.errors)

            if result.new_bills > 0 and should_auto_notify(session):
                try:
                    notify_new_bills(result.new_bills)
                except Exception as exc:
                    logger.exception("New-bill notification failed")
                    result.errors.append(f"Notification failed: {exc}")
        except Exception as exc:
            logger.exception("Poll failed")
            result.errors.append(f"Poll failed: {exc}")
        finally:
            session.close()

        result.success = not result.errors
        self.last_poll_time = utcnow()
        self.errors = result.errors
        logger.info(
            "Poll complete. Processed: %d, New: %d, Errors: %d",
            result.bills_processed,
            result.new_bills,
            len(result.errors),
        )
        return result

    def start(self) -> Optional[PollResult]:
        """Run a pass now and schedule the rest; returns None if already running."""
        with self._lock:
            if self._scheduler is not None:
                logger.info("Polling service is already running")
                return None
            session = self.session_factory()
            try:
                self.interval_minutes = get_polling_interval(session)
            finally:
                session.close()
            logger.info("Starting polling service with %d minute interval", self.interval_minutes)

            first = self.execute_poll()

            scheduler = BackgroundScheduler()
            scheduler.add_job(
                self.execute_poll,
                "interval",
                minutes=self.interval_minutes,
                id=POLL_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            return first

    def stop(self) -> None:
        """Cancel the timer; a pass already running is left to finish."""
        with self._lock:
            if self._scheduler is not None:
                self._scheduler.shutdown(wait=False)
                self._scheduler = None
                logger.info("Polling service stopped")

    def restart(self) -> Optional[PollResult]:
        """Stop and start again, picking up a changed polling interval."""
        self.stop()
        return self.start()

    def manual_refresh(self) -> PollResult:
        logger.info("Manual refresh triggered")
        return self.execute_poll()

    def status(self) -> Dict[str, Any]:
        return {
            "is_active": self.is_running,
            "interval_minutes": self.interval_minutes,
            "last_poll_time": self.last_poll_time,
            "errors": list(self.errors),
        }

    def perform_full_sync(self) -> Dict[str, Any]:
        """Sync users, then bills, with one set of credentials."""
        result: Dict[str, Any] = {
            "success": False,
            "users": {"processed": 0, "created": 0, "updated": 0},
            "bills": {"processed": 0, "created": 0, "updated": 0},
            "errors": [],
        }
        logger.info("Starting full sync...")
        session = self.session_factory()
        try:
            clio = self.client_factory(session)
            if clio is None:
                raise RuntimeError("No authenticated user available for sync")

            logger.info("Syncing users...")
            users = sync_users(session, clio)
            result["users"] = {
                "processed": users.records_processed,
                "created": users.records_created,
                "updated": users.records_updated,
            }
            result["errors"].extend(users.errors)

            logger.info("Syncing bills...")
            bills = sync_awaiting_approval_bills(session, clio=clio)
            result["bills"] = {
                "processed": bills.records_processed,
                "created": bills.records_created,
                "updated": bills.records_updated,
            }
            result["errors"].extend(bills.errors)
        except Exception as exc:
            logger.exception("Full sync failed")
            result["errors"].append(f"Full sync failed: {exc}")
        finally:
            session.close()

        result["success"] = not result["errors"]
        return result
