"""
FastAPI application exposing the sync and approval operations.

Routes wrap :mod:`clio_invoice.polling` (manual refresh, status, full sync)
and the write-back operations in :mod:`clio_invoice.sync` (approve/void a
bill, edit/hold/delete an activity).  The acting user is identified by the
``X-User-Id`` header; their stored Clio credentials are used for writes.

To run locally, install ``fastapi`` and ``uvicorn`` and set ``DATABASE_URL``::

    uvicorn clio_invoice.api:create_app --factory
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Dict, Iterator, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session, sessionmaker

from .clio_client import (
    AuthError,
    ClioError,
    ConflictError,
    NotFoundError,
    RateLimitExceeded,
)
from .models import Activity, Bill
from .polling import PollScheduler
from .settings import get_session_factory
from .sync import (
    approve_bill_in_clio,
    delete_activity_in_clio,
    hold_activity_in_clio,
    push_activity_to_clio,
    void_bill_in_clio,
)

logger = logging.getLogger(__name__)


class ActivityUpdate(BaseModel):
    date: Optional[str] = None
    quantity: Optional[Decimal] = None
    rate: Optional[Decimal] = None
    note: Optional[str] = None
    non_billable: Optional[bool] = None


def _error_status(exc: ClioError) -> int:
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, AuthError):
        return 401
    if isinstance(exc, RateLimitExceeded):
        return 429
    return 502


def _bill_payload(bill: Bill) -> Dict[str, Any]:
    return {
        "id": bill.id,
        "clio_id": bill.clio_id,
        "bill_number": bill.bill_number,
        "clio_status": bill.clio_status,
        "workflow_status": bill.workflow_status,
        "total_amount": str(bill.total_amount),
        "approved_at": bill.approved_at,
    }


def _activity_payload(activity: Activity) -> Dict[str, Any]:
    return {
        "id": activity.id,
        "clio_id": activity.clio_id,
        "bill_id": activity.bill_id,
        "status": activity.status,
        "date": activity.date,
        "description": activity.description,
        "quantity": None if activity.quantity is None else str(activity.quantity),
        "rate": None if activity.rate is None else str(activity.rate),
        "is_billable": activity.is_billable,
    }


def create_app(
    session_factory: Optional[sessionmaker] = None, poller: Optional[PollScheduler] = None
) -> FastAPI:
    """Build the app; without arguments the database comes from ``DATABASE_URL``."""
    factory = session_factory or get_session_factory()
    scheduler = poller or PollScheduler(factory)

    app = FastAPI(title="Clio invoice approvals")
    # Allow CORS during development; in production restrict origins appropriately
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.poller = scheduler

    def get_session() -> Iterator[Session]:
        session = factory()
        try:
            yield session
        finally:
            session.close()

    def current_user(x_user_id: Optional[int] = Header(default=None)) -> int:
        if x_user_id is None:
            raise HTTPException(status_code=401, detail="X-User-Id header required")
        return x_user_id

    @app.exception_handler(ClioError)
    async def clio_error_handler(request: Request, exc: ClioError):
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=_error_status(exc))

    @app.post("/sync/poll")
    def trigger_poll() -> Dict[str, Any]:
        return scheduler.manual_refresh().to_dict()

    @app.get("/sync/status")
    def poll_status() -> Dict[str, Any]:
        return scheduler.status()

    @app.post("/sync/full")
    def full_sync() -> Dict[str, Any]:
        return scheduler.perform_full_sync()

    @app.post("/bills/{bill_id}/approve")
    def approve_bill(
        bill_id: int, session: Session = Depends(get_session), user_id: int = Depends(current_user)
    ) -> Dict[str, Any]:
        bill = approve_bill_in_clio(session, user_id, bill_id)
        return {"success": True, "data": _bill_payload(bill)}

    @app.post("/bills/{bill_id}/void")
    def void_bill(
        bill_id: int, session: Session = Depends(get_session), user_id: int = Depends(current_user)
    ) -> Dict[str, Any]:
        bill = void_bill_in_clio(session, user_id, bill_id)
        return {"success": True, "data": _bill_payload(bill)}

    @app.patch("/activities/{activity_id}")
    def update_activity(
        activity_id: int,
        body: ActivityUpdate,
        session: Session = Depends(get_session),
        user_id: int = Depends(current_user),
    ) -> Dict[str, Any]:
        updates = body.model_dump(exclude_none=True)
        if not updates:
            raise HTTPException(status_code=400, detail="No changes supplied")
        activity = push_activity_to_clio(session, user_id, activity_id, updates)
        return {"success": True, "data": _activity_payload(activity)}

    @app.post("/activities/{activity_id}/hold")
    def hold_activity(
        activity_id: int, session: Session = Depends(get_session), user_id: int = Depends(current_user)
    ) -> Dict[str, Any]:
        activity = hold_activity_in_clio(session, user_id, activity_id)
        return {"success": True, "data": _activity_payload(activity)}

    @app.delete("/activities/{activity_id}")
    def delete_activity(
        activity_id: int, session: Session = Depends(get_session), user_id: int = Depends(current_user)
    ) -> Dict[str, Any]:
        activity = delete_activity_in_clio(session, user_id, activity_id)
        return {"success": True, "data": _activity_payload(activity)}

    return app
