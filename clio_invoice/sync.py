"""
Reconciliation between Clio and the local database.

Reads flow remote to local: each ``sync_*`` function fetches a Clio record,
upserts the matching local row by ``clio_id`` and pulls in whatever parent
records its foreign keys need (client before matter, matter and client
before bill, bill before its activities).  Failures are caught per entity
and reported in the returned :class:`SyncResult` so one bad record never
aborts a pass.

Writes flow the other way: the ``*_in_clio`` functions re-read the current
etag, send the change to Clio and only then update the local row.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.orm import Session

from .clio_client import AuthError, ClioClient, NotFoundError, TokenUpdater
from .constants import (
    ACTIVITY_ACTIVE,
    ACTIVITY_DELETED,
    ACTIVITY_EXPENSE,
    ACTIVITY_HELD,
    ACTIVITY_TIME_ENTRY,
    CLIO_BILL_AWAITING_PAYMENT,
    CLIO_BILL_DELETED,
    ROLE_TIMEKEEPER,
    SYNC_BILLS,
    SYNC_COMPLETED,
    SYNC_FAILED,
    SYNC_USERS,
    WORKFLOW_APPROVED,
    WORKFLOW_PENDING,
    WORKFLOW_VOIDED,
)
from .models import Activity, AuditLog, Bill, Client, Matter, SyncLog, User
from .utils import as_date, to_decimal, utcnow

logger = logging.getLogger(__name__)

ZERO = Decimal("0")

ACTIVITY_UPDATE_FIELDS = {"date", "quantity", "rate", "note", "non_billable"}


@dataclass
class SyncResult:
    success: bool = False
    records_processed: int = 0
    records_created: int = 0
    records_updated: int = 0
    errors: List[str] = field(default_factory=list)

    def merge(self, other: "SyncResult") -> None:
        self.records_processed += other.records_processed
        self.records_created += other.records_created
        self.records_updated += other.records_updated
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BillSyncResult(SyncResult):
    bill_id: Optional[int] = None
    clio_id: Optional[str] = None
    created: bool = False


@dataclass
class BillPassResult(SyncResult):
    bills_created: int = 0


# --- client resolution ---


class UserTokenUpdater(TokenUpdater):
    """Persists refreshed tokens onto the user whose credentials the client uses.

    Tokens are committed as soon as they arrive, except while a bill is being
    written (see :func:`_hold_token_writes`): committing then would also
    commit the half-written bill, so the tokens wait in ``pending`` until the
    bill has been committed or rolled back.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.deferred = False
        self.pending: Optional[Tuple[str, str, datetime]] = None

    def update_tokens(self, access_token: str, refresh_token: str, expires_at: datetime) -> None:
        self.pending = (access_token, refresh_token, expires_at)
        if not self.deferred:
            self.persist()

    def persist(self) -> None:
        if self.pending is None:
            return
        access_token, refresh_token, expires_at = self.pending
        self.pending = None
        user = self.session.get(User, self.user_id)
        if user is None:
            logger.warning("Cannot store refreshed tokens: user %s no longer exists", self.user_id)
            return
        user.access_token = access_token
        user.refresh_token = refresh_token
        user.token_expires_at = expires_at
        self.session.commit()


@contextmanager
def _hold_token_writes(clio: ClioClient) -> Iterator[None]:
    updater = getattr(clio, "token_updater", None)
    if not isinstance(updater, UserTokenUpdater):
        yield
        return
    updater.deferred = True
    try:
        yield
    finally:
        updater.deferred = False
        updater.persist()


def _client_for(session: Session, user: User) -> ClioClient:
    return ClioClient(
        user.access_token,
        user.refresh_token,
        UserTokenUpdater(session, user.id),
        token_expires_at=user.token_expires_at,
    )


def get_clio_client_for_user(session: Session, user_id: int) -> Optional[ClioClient]:
    user = session.get(User, user_id)
    if user is None or not user.access_token:
        return None
    return _client_for(session, user)


def get_any_active_clio_client(session: Session) -> Optional[ClioClient]:
    """Client for background work: any active user holding an access token."""
    user = (
        session.query(User)
        .filter(User.access_token.isnot(None), User.is_active.is_(True))
        .order_by(User.id)
        .first()
    )
    if user is None:
        return None
    return _client_for(session, user)


# --- sync log ---


def _open_sync_log(session: Session, sync_type: str) -> SyncLog:
    log = SyncLog(sync_type=sync_type, record_count=0)
    session.add(log)
    session.commit()
    return log


def _close_sync_log(session: Session, log: SyncLog, result: SyncResult) -> None:
    if log.completed_at is not None:
        raise RuntimeError(f"Sync log {log.id} is already closed")
    log.status = SYNC_COMPLETED if not result.errors else SYNC_FAILED
    log.record_count = result.records_processed
    log.error_message = "\n".join(result.errors) or None
    log.completed_at = utcnow()
    session.commit()


# --- upsert helpers ---


def _upsert(
    session: Session,
    model: type,
    clio_id: Any,
    fields: Dict[str, Any],
    create_defaults: Optional[Dict[str, Any]] = None,
) -> Tuple[Any, bool]:
    """Insert or update the row keyed by ``clio_id``; return ``(row, created)``.

    ``create_defaults`` only apply to new rows, so fields such as approval
    flags are never overwritten by a later sync.
    """
    key = str(clio_id)
    instance = session.query(model).filter_by(clio_id=key).first()
    if instance is not None:
        for name, value in fields.items():
            setattr(instance, name, value)
        return instance, False
    instance = model(clio_id=key, **dict(create_defaults or {}), **fields)
    session.add(instance)
    return instance, True


def _email(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("address")
    return value or None


def _local_user_id(session: Session, clio_user_id: Any) -> Optional[int]:
    if not clio_user_id:
        return None
    user = session.query(User).filter_by(clio_id=str(clio_user_id)).first()
    return user.id if user else None


# --- users ---


def sync_users(session: Session, clio: ClioClient) -> SyncResult:
    """Upsert every enabled Clio user; new users default to the timekeeper role."""
    result = SyncResult()
    log = _open_sync_log(session, SYNC_USERS)
    try:
        clio_users = clio.get_all_users(enabled=True)
    except Exception as exc:
        logger.exception("Fetching Clio users failed")
        result.errors.append(f"Sync failed: {exc}")
        _close_sync_log(session, log, result)
        return result

    for clio_user in clio_users:
        result.records_processed += 1
        try:
            fields = {
                "name": clio_user.get("name") or f"User {clio_user['id']}",
                "email": clio_user.get("email"),
                "is_active": bool(clio_user.get("enabled", True)),
            }
            _, created = _upsert(session, User, clio_user["id"], fields, {"role": ROLE_TIMEKEEPER})
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.exception("Error syncing user %s", clio_user.get("id"))
            result.errors.append(f"Error syncing user {clio_user.get('id')}: {exc}")
            continue
        if created:
            result.records_created += 1
        else:
            result.records_updated += 1

    result.success = not result.errors
    _close_sync_log(session, log, result)
    return result


# --- clients and matters ---


def sync_client(
    session: Session, clio: ClioClient, clio_contact_id: int, errors: Optional[List[str]] = None
) -> Optional[int]:
    """Upsert the client for a Clio contact and return its local id (None on failure)."""
    try:
        contact = clio.get_contact(clio_contact_id).get("data") or {}
        fields = {
            "name": contact.get("name") or f"Client {clio_contact_id}",
            "email": _email(contact.get("primary_email_address")),
        }
        client, _ = _upsert(session, Client, contact.get("id", clio_contact_id), fields)
        session.flush()
        return client.id
    except Exception as exc:
        logger.exception("Error syncing client %s", clio_contact_id)
        if errors is not None:
            errors.append(f"Error syncing client {clio_contact_id}: {exc}")
        return None


def sync_matter(
    session: Session, clio: ClioClient, clio_matter_id: int, errors: Optional[List[str]] = None
) -> Optional[int]:
    """Upsert a matter (after its client) and return its local id (None on failure)."""
    try:
        matter = clio.get_matter(clio_matter_id).get("data") or {}
        client_ref = matter.get("client") or {}
        client_id = sync_client(session, clio, client_ref["id"], errors) if client_ref.get("id") else None
        attorney_ref = matter.get("responsible_attorney") or {}
        fields = {
            "display_number": matter.get("display_number") or None,
            "description": matter.get("description") or None,
            "client_id": client_id,
            "responsible_attorney_id": _local_user_id(session, attorney_ref.get("id")),
        }
        local, _ = _upsert(session, Matter, matter.get("id", clio_matter_id), fields)
        session.flush()
        return local.id
    except Exception as exc:
        logger.exception("Error syncing matter %s", clio_matter_id)
        if errors is not None:
            errors.append(f"Error syncing matter {clio_matter_id}: {exc}")
        return None


# --- bills ---


def _bill_fields(payload: Dict[str, Any], matter_id: Optional[int], client_id: Optional[int]) -> Dict[str, Any]:
    discount = payload.get("discount") or {}
    return {
        "bill_number": payload.get("number") or f"BILL-{payload['id']}",
        "matter_id": matter_id,
        "client_id": client_id,
        "total_services": to_decimal(payload.get("services_sub_total") or payload.get("sub_total")) or ZERO,
        "total_expenses": to_decimal(payload.get("expenses_sub_total")) or ZERO,
        "total_amount": to_decimal(payload.get("total")) or ZERO,
        "discount": to_decimal(discount.get("rate") if isinstance(discount, dict) else discount) or ZERO,
        "issue_date": as_date(payload.get("issued_at")),
        "due_date": as_date(payload.get("due_at")),
        "billing_through_date": as_date(payload.get("end_at")),
        "clio_status": payload.get("state"),
        "synced_at": utcnow(),
    }


def sync_bill(session: Session, clio: ClioClient, clio_bill_id: int) -> BillSyncResult:
    """Reconcile one Clio bill with its matter, client and line items.

    A matter or client that cannot be resolved leaves the foreign key null
    and is reported in ``errors``; the bill is still written.  Anything that
    fails while writing the bill itself rolls the bill back.
    """
    result = BillSyncResult(clio_id=str(clio_bill_id))
    with _hold_token_writes(clio):
        try:
            clio_bill = clio.get_bill(clio_bill_id).get("data") or {}
            if not clio_bill.get("id"):
                raise NotFoundError(f"Bill {clio_bill_id} not returned by Clio")

            matter_ref = clio_bill.get("matter") or {}
            client_ref = clio_bill.get("client") or {}
            matter_id = sync_matter(session, clio, matter_ref["id"], result.errors) if matter_ref.get("id") else None
            client_id = sync_client(session, clio, client_ref["id"], result.errors) if client_ref.get("id") else None

            bill, created = _upsert(
                session,
                Bill,
                clio_bill["id"],
                _bill_fields(clio_bill, matter_id, client_id),
                {"workflow_status": WORKFLOW_PENDING},
            )
            session.flush()
            result.bill_id = bill.id
            result.created = created
            result.records_processed += 1
            if created:
                result.records_created += 1
            else:
                result.records_updated += 1

            result.merge(sync_bill_line_items(session, clio, clio_bill_id, bill.id))
            session.commit()
        except Exception as exc:
            session.rollback()
            logger.exception("Error syncing bill %s", clio_bill_id)
            result.errors.append(f"Error syncing bill {clio_bill_id}: {exc}")
            result.bill_id = None
            result.created = False
            result.records_processed = 0
            result.records_created = 0
            result.records_updated = 0
    result.success = not result.errors
    return result


def _activity_fields(session: Session, item: Dict[str, Any], local_bill_id: int) -> Dict[str, Any]:
    activity_ref = item.get("activity") or {}
    user_ref = item.get("user") or activity_ref.get("user") or {}
    return {
        "bill_id": local_bill_id,
        "type": ACTIVITY_TIME_ENTRY if item.get("type") == "TimeEntry" else ACTIVITY_EXPENSE,
        "date": as_date(item.get("date") or activity_ref.get("date")) or utcnow().date(),
        "timekeeper_id": _local_user_id(session, user_ref.get("id")),
        "description": item.get("description") or None,
        "quantity": to_decimal(item.get("quantity")),
        "rate": to_decimal(item.get("price")),
        "total": to_decimal(item.get("total")),
        "is_billable": not activity_ref.get("non_billable", False),
        "synced_at": utcnow(),
    }


def sync_bill_line_items(session: Session, clio: ClioClient, clio_bill_id: int, local_bill_id: int) -> SyncResult:
    """Upsert one activity per line item of a bill.

    The nested activity id is the dedup key when Clio provides one, otherwise
    the line-item id.  New activities start ACTIVE and unapproved; updates
    leave ``approved_by_timekeeper`` and ``status`` alone.
    """
    result = SyncResult()
    line_items = clio.get_all_bill_line_items(clio_bill_id)

    for item in line_items:
        result.records_processed += 1
        try:
            activity_ref = item.get("activity") or {}
            clio_activity_id = activity_ref.get("id") or item["id"]
            fields = _activity_fields(session, item, local_bill_id)
            _, created = _upsert(
                session,
                Activity,
                clio_activity_id,
                fields,
                {"status": ACTIVITY_ACTIVE, "approved_by_timekeeper": False},
            )
            session.flush()
        except Exception as exc:
            logger.exception("Error syncing line item %s", item.get("id"))
            result.errors.append(f"Error syncing line item {item.get('id')}: {exc}")
            continue
        if created:
            result.records_created += 1
        else:
            result.records_updated += 1

    result.success = not result.errors
    return result


def sync_awaiting_approval_bills(
    session: Session,
    clio: Optional[ClioClient] = None,
    user_id: Optional[int] = None,
    client_factory: Optional[Callable[[Session], Optional[ClioClient]]] = None,
) -> BillPassResult:
    """Reconcile every Clio bill in the ``awaiting_approval`` state.

    Without an explicit ``clio`` the client is built from ``user_id``'s
    credentials, else by ``client_factory`` (default: any active user).
    Having no client fails the whole pass; a failing bill only adds to
    ``errors``.
    """
    result = BillPassResult()
    log = _open_sync_log(session, SYNC_BILLS)
    try:
        if clio is None:
            if user_id is not None:
                clio = get_clio_client_for_user(session, user_id)
            else:
                clio = (client_factory or get_any_active_clio_client)(session)
        if clio is None:
            raise AuthError("No valid Clio client available")
        clio_bills = clio.get_all_bills_awaiting_approval()
    except Exception as exc:
        logger.error("Bill sync failed: %s", exc)
        result.errors.append(f"Sync failed: {exc}")
        _close_sync_log(session, log, result)
        return result

    logger.info("Found %d bills awaiting approval", len(clio_bills))
    try:
        for clio_bill in clio_bills:
            clio_bill_id = clio_bill.get("id")
            if not clio_bill_id:
                logger.warning("Skipping bill without an id: %r", clio_bill)
                result.errors.append(f"Skipped bill without an id: {clio_bill.get('number') or clio_bill!r}")
                continue
            bill_result = sync_bill(session, clio, clio_bill_id)
            result.merge(bill_result)
            if bill_result.created:
                result.bills_created += 1
    except Exception as exc:
        session.rollback()
        logger.exception("Bill sync aborted")
        result.errors.append(f"Sync failed: {exc}")
    finally:
        result.success = not result.errors
        _close_sync_log(session, log, result)
    return result


# --- write-back to Clio ---


def _jsonable(values: Dict[str, Any]) -> Dict[str, Any]:
    return {k: str(v) if isinstance(v, Decimal) else v for k, v in values.items()}


def _audit(
    session: Session, entity: str, entity_id: int, event_type: str, user_id: Optional[int], details: Dict[str, Any]
) -> None:
    session.add(
        AuditLog(
            entity=entity,
            entity_id=entity_id,
            event_type=event_type,
            user_id=user_id,
            details=_jsonable(details),
        )
    )


def _require_client(session: Session, user_id: Optional[int], clio: Optional[ClioClient]) -> ClioClient:
    if clio is not None:
        return clio
    resolved = get_clio_client_for_user(session, user_id) if user_id is not None else None
    if resolved is None:
        raise AuthError("No valid Clio client")
    return resolved


def _get_activity(session: Session, activity_id: int) -> Activity:
    activity = session.get(Activity, activity_id)
    if activity is None:
        raise NotFoundError(f"Activity {activity_id} not found")
    return activity


def _get_bill(session: Session, bill_id: int) -> Bill:
    bill = session.get(Bill, bill_id)
    if bill is None:
        raise NotFoundError(f"Bill {bill_id} not found")
    return bill


def _current_etag(payload: Dict[str, Any]) -> str:
    return (payload.get("data") or {}).get("etag") or ""


def push_activity_to_clio(
    session: Session,
    user_id: Optional[int],
    activity_id: int,
    updates: Dict[str, Any],
    clio: Optional[ClioClient] = None,
) -> Activity:
    """Send an activity edit to Clio, then mirror it locally.

    ``updates`` may contain ``date``, ``quantity``, ``rate``, ``note`` and
    ``non_billable`` (Clio's field names).
    """
    unknown = set(updates) - ACTIVITY_UPDATE_FIELDS
    if unknown:
        raise ValueError(f"Unsupported activity fields: {', '.join(sorted(unknown))}")
    activity = _get_activity(session, activity_id)
    clio = _require_client(session, user_id, clio)

    clio_id = int(activity.clio_id)
    etag = _current_etag(clio.get_activity(clio_id))
    clio.update_activity(clio_id, updates, etag)

    if "date" in updates:
        activity.date = as_date(updates["date"])
    if "quantity" in updates:
        activity.quantity = to_decimal(updates["quantity"])
    if "rate" in updates:
        activity.rate = to_decimal(updates["rate"])
    if "note" in updates:
        activity.description = updates["note"]
    if "non_billable" in updates:
        activity.is_billable = not updates["non_billable"]
    activity.synced_at = utcnow()
    _audit(session, "activity", activity.id, "activity_updated", user_id, dict(updates))
    session.commit()
    return activity


def hold_activity_in_clio(
    session: Session, user_id: Optional[int], activity_id: int, clio: Optional[ClioClient] = None
) -> Activity:
    """Take an activity off its bill in Clio and mark it HELD locally."""
    activity = _get_activity(session, activity_id)
    clio = _require_client(session, user_id, clio)

    clio_id = int(activity.clio_id)
    etag = _current_etag(clio.get_activity(clio_id))
    clio.hold_activity(clio_id, etag)

    previous_bill_id = activity.bill_id
    activity.status = ACTIVITY_HELD
    activity.bill_id = None
    activity.synced_at = utcnow()
    _audit(session, "activity", activity.id, "activity_held", user_id, {"bill_id": previous_bill_id})
    session.commit()
    return activity


def delete_activity_in_clio(
    session: Session, user_id: Optional[int], activity_id: int, clio: Optional[ClioClient] = None
) -> Activity:
    """Delete an activity in Clio; the local row is kept with status DELETED."""
    activity = _get_activity(session, activity_id)
    clio = _require_client(session, user_id, clio)

    clio_id = int(activity.clio_id)
    etag = _current_etag(clio.get_activity(clio_id))
    clio.delete_activity(clio_id, etag)

    activity.status = ACTIVITY_DELETED
    activity.synced_at = utcnow()
    _audit(session, "activity", activity.id, "activity_deleted", user_id, {})
    session.commit()
    return activity


def approve_bill_in_clio(
    session: Session, user_id: Optional[int], bill_id: int, clio: Optional[ClioClient] = None
) -> Bill:
    """Move a bill to ``awaiting_payment`` in Clio and mark it APPROVED."""
    bill = _get_bill(session, bill_id)
    clio = _require_client(session, user_id, clio)

    clio_id = int(bill.clio_id)
    etag = _current_etag(clio.get_bill(clio_id))
    clio.update_bill_state(clio_id, CLIO_BILL_AWAITING_PAYMENT, etag)

    now = utcnow()
    bill.clio_status = CLIO_BILL_AWAITING_PAYMENT
    bill.workflow_status = WORKFLOW_APPROVED
    bill.approved_at = now
    bill.synced_at = now
    _audit(session, "bill", bill.id, "bill_approved", user_id, {"clio_status": CLIO_BILL_AWAITING_PAYMENT})
    session.commit()
    return bill


def void_bill_in_clio(
    session: Session, user_id: Optional[int], bill_id: int, clio: Optional[ClioClient] = None
) -> Bill:
    """Void a bill in Clio; the local row is kept and marked VOIDED."""
    bill = _get_bill(session, bill_id)
    clio = _require_client(session, user_id, clio)

    clio_id = int(bill.clio_id)
    etag = _current_etag(clio.get_bill(clio_id))
    clio.delete_bill(clio_id, etag)

    bill.clio_status = CLIO_BILL_DELETED
    bill.workflow_status = WORKFLOW_VOIDED
    bill.synced_at = utcnow()
    _audit(session, "bill", bill.id, "bill_voided", user_id, {"clio_status": CLIO_BILL_DELETED})
    session.commit()
    return bill
