"""
Pytest configuration for the Clio sync service tests.

This conftest ensures the repository root is added to ``sys.path`` so that
``clio_invoice`` can be imported without installing the package.  It also
provides shared fixtures (in-memory SQLite sessions) and ``FakeClio``, an
in-memory stand-in for :class:`clio_invoice.clio_client.ClioClient` that the
sync, polling and API tests import directly.
"""

import os
import sys
from typing import Any, Dict, Iterable, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Compute the repository root relative to this file (tests directory is one level deep)
ROOT_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))

# Prepend the root directory to sys.path if it's not already present
if ROOT_DIR not in sys.path:
    sys.path.insert(0, ROOT_DIR)

from clio_invoice.clio_client import RemoteServerError  # noqa: E402
from clio_invoice.models import Base  # noqa: E402


def bill_payload(bill_id: int, matter_id: Optional[int] = None, client_id: Optional[int] = None, **overrides) -> dict:
    payload = {
        "id": bill_id,
        "etag": f"bill-{bill_id}-v1",
        "number": f"INV-{bill_id:04d}",
        "state": "awaiting_approval",
        "total": "1500.10",
        "services_sub_total": "1200.10",
        "expenses_sub_total": "300.00",
        "discount": {"rate": 0},
        "issued_at": "2026-09-01",
        "due_at": "2026-10-01",
        "end_at": "2026-08-31",
        "matter": {"id": matter_id} if matter_id else None,
        "client": {"id": client_id} if client_id else None,
    }
    payload.update(overrides)
    return payload


def line_item(item_id: int, activity_id: Optional[int] = None, user_id: Optional[int] = None, **overrides) -> dict:
    payload = {
        "id": item_id,
        "etag": f"li-{item_id}",
        "type": "TimeEntry",
        "date": "2026-08-15",
        "description": f"Work item {item_id}",
        "quantity": "1.5",
        "price": "250.00",
        "total": "375.00",
        "activity": {"id": activity_id} if activity_id else None,
        "user": {"id": user_id} if user_id else None,
    }
    payload.update(overrides)
    return payload


class FakeClio:
    """In-memory Clio used in place of ``ClioClient`` by the sync tests."""

    def __init__(
        self,
        bills: Iterable[dict] = (),
        matters: Iterable[dict] = (),
        contacts: Iterable[dict] = (),
        line_items: Optional[Dict[int, List[dict]]] = None,
        users: Iterable[dict] = (),
        failing_bills: Iterable[int] = (),
    ) -> None:
        self.bills = {b["id"]: b for b in bills}
        self.matters = {m["id"]: m for m in matters}
        self.contacts = {c["id"]: c for c in contacts}
        self.line_items = line_items or {}
        self.users = list(users)
        self.failing_bills = set(failing_bills)
        self.writes: List[tuple] = []

    def get_all_bills_awaiting_approval(self) -> List[dict]:
        return [dict(b) for b in self.bills.values() if b.get("state") == "awaiting_approval"]

    def get_bill(self, bill_id: int) -> Dict[str, Any]:
        if bill_id in self.failing_bills:
            raise RemoteServerError(f"Clio server error 500: bill {bill_id} unavailable", 500)
        return {"data": dict(self.bills[bill_id])}

    def get_matter(self, matter_id: int) -> Dict[str, Any]:
        return {"data": dict(self.matters[matter_id])}

    def get_contact(self, contact_id: int) -> Dict[str, Any]:
        return {"data": dict(self.contacts[contact_id])}

    def get_all_bill_line_items(self, bill_id: int) -> List[dict]:
        return [dict(li) for li in self.line_items.get(bill_id, [])]

    def get_all_users(self, enabled: Optional[bool] = None) -> List[dict]:
        return [dict(u) for u in self.users]

    def get_activity(self, activity_id: int) -> Dict[str, Any]:
        return {"data": {"id": activity_id, "etag": f"activity-{activity_id}-v2"}}

    def update_activity(self, activity_id: int, data: dict, etag: str) -> Dict[str, Any]:
        self.writes.append(("update_activity", activity_id, data, etag))
        return {"data": {"id": activity_id}}

    def hold_activity(self, activity_id: int, etag: str) -> Dict[str, Any]:
        self.writes.append(("hold_activity", activity_id, etag))
        return {"data": {"id": activity_id}}

    def delete_activity(self, activity_id: int, etag: str) -> None:
        self.writes.append(("delete_activity", activity_id, etag))

    def update_bill_state(self, bill_id: int, state: str, etag: str) -> Dict[str, Any]:
        self.writes.append(("update_bill_state", bill_id, state, etag))
        return {"data": {"id": bill_id, "state": state}}

    def delete_bill(self, bill_id: int, etag: str) -> None:
        self.writes.append(("delete_bill", bill_id, etag))


@pytest.fixture
def engine():
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    session = Session(engine)
    yield session
    session.close()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture(autouse=True)
def clio_env(monkeypatch):
    """Keep the client's environment-driven settings deterministic."""
    for name in (
        "CLIO_API_BASE",
        "CLIO_TOKEN_URL",
        "CLIO_MAX_RETRIES",
        "CLIO_RETRY_DELAY",
        "CLIO_REQUESTS_PER_SECOND",
        "SLACK_WEBHOOK_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CLIO_CLIENT_ID", "client-id")
    monkeypatch.setenv("CLIO_CLIENT_SECRET", "client-secret")
