"""
Database models for the Clio sync service.

These SQLAlchemy models hold the local projection of Clio records (users,
clients, matters, bills and their activities) together with the sync run
log, persisted settings and an audit trail of write-backs.  Every synced
entity carries a unique ``clio_id``; that column is the upsert key used by
:mod:`clio_invoice.sync`.  Migrations are intentionally omitted; the schema
is created with SQLAlchemy's metadata create functions.
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base, relationship

from .constants import (
    ACTIVITY_ACTIVE,
    ACTIVITY_TIME_ENTRY,
    ROLE_TIMEKEEPER,
    SYNC_RUNNING,
    WORKFLOW_PENDING,
)
from .utils import utcnow

Base = declarative_base()

Money = Numeric(12, 2)
Quantity = Numeric(12, 4)


class User(Base):
    """A Clio user (attorney or timekeeper) and, once they log in, their OAuth tokens."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True)
    clio_id = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    role = Column(String, nullable=False, default=ROLE_TIMEKEEPER)
    is_active = Column(Boolean, nullable=False, default=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<User id={self.id} clio_id={self.clio_id} name={self.name}>"


class Client(Base):
    __tablename__ = "clients"

    id = Column(Integer, primary_key=True)
    clio_id = Column(String, unique=True, index=True, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    matters = relationship("Matter", back_populates="client")

    def __repr__(self) -> str:
        return f"<Client id={self.id} clio_id={self.clio_id} name={self.name}>"


class Matter(Base):
    __tablename__ = "matters"

    id = Column(Integer, primary_key=True)
    clio_id = Column(String, unique=True, index=True, nullable=False)
    display_number = Column(String, nullable=True)
    description = Column(String, nullable=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    responsible_attorney_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    client = relationship("Client", back_populates="matters")
    responsible_attorney = relationship("User")

    def __repr__(self) -> str:
        return f"<Matter id={self.id} clio_id={self.clio_id} number={self.display_number}>"


class Bill(Base):
    """A Clio bill moving through the local approval workflow.

    ``clio_status`` mirrors Clio's bill state; ``workflow_status`` is the
    local review state (PENDING, APPROVED or VOIDED).  Voided bills keep their row.
    """

    __tablename__ = "bills"

    id = Column(Integer, primary_key=True)
    clio_id = Column(String, unique=True, index=True, nullable=False)
    bill_number = Column(String, nullable=False)
    matter_id = Column(Integer, ForeignKey("matters.id"), nullable=True)
    client_id = Column(Integer, ForeignKey("clients.id"), nullable=True)
    total_services = Column(Money, nullable=False, default=0)
    total_expenses = Column(Money, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)
    discount = Column(Money, nullable=False, default=0)
    issue_date = Column(Date, nullable=True)
    due_date = Column(Date, nullable=True)
    billing_through_date = Column(Date, nullable=True)
    clio_status = Column(String, nullable=True)
    workflow_status = Column(String, nullable=False, default=WORKFLOW_PENDING)
    approved_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    matter = relationship("Matter")
    client = relationship("Client")
    activities = relationship("Activity", back_populates="bill")

    def __repr__(self) -> str:
        return f"<Bill id={self.id} clio_id={self.clio_id} number={self.bill_number} status={self.workflow_status}>"


class Activity(Base):
    """A time entry or expense on a bill (a Clio line item)."""

    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    clio_id = Column(String, unique=True, index=True, nullable=False)
    bill_id = Column(Integer, ForeignKey("bills.id"), nullable=True)
    type = Column(String, nullable=False, default=ACTIVITY_TIME_ENTRY)
    date = Column(Date, nullable=True)
    timekeeper_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    description = Column(Text, nullable=True)
    quantity = Column(Quantity, nullable=True)
    rate = Column(Money, nullable=True)
    total = Column(Money, nullable=True)
    is_billable = Column(Boolean, nullable=False, default=True)
    status = Column(String, nullable=False, default=ACTIVITY_ACTIVE)
    approved_by_timekeeper = Column(Boolean, nullable=False, default=False)
    approved_at = Column(DateTime, nullable=True)
    synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    bill = relationship("Bill", back_populates="activities")
    timekeeper = relationship("User")

    def __repr__(self) -> str:
        return f"<Activity id={self.id} clio_id={self.clio_id} bill_id={self.bill_id} total={self.total}>"


class SyncLog(Base):
    """One reconciliation pass: opened RUNNING, closed once as COMPLETED or FAILED."""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True)
    sync_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default=SYNC_RUNNING)
    record_count = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<SyncLog id={self.id} type={self.sync_type} status={self.status} records={self.record_count}>"


class Setting(Base):
    __tablename__ = "settings"

    id = Column(Integer, primary_key=True)
    key = Column(String, unique=True, nullable=False)
    value = Column(String, nullable=False)
    description = Column(String, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    def __repr__(self) -> str:
        return f"<Setting {self.key}={self.value}>"


class AuditLog(Base):
    """Audit log of changes pushed back to Clio (approvals, voids, activity edits)."""

    __tablename__ = "audit_log"

    id = Column(Integer, primary_key=True)
    entity = Column(String, nullable=False)  # "bill" or "activity"
    entity_id = Column(Integer, nullable=False)
    event_type = Column(String, nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<AuditLog id={self.id} {self.entity}={self.entity_id} event={self.event_type}>"
