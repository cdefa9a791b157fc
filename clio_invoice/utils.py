"""
Shared utility functions for the Clio sync service.

This module centralises small conversions used on both sides of the sync
(timestamps, decimals, dates from Clio payloads) and the Slack webhook
helper used for new-bill notifications.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import requests


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns store."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_decimal(value: Any) -> Optional[Decimal]:
    """Convert a Clio amount (string, int or float) to ``Decimal``.

    Floats are routed through ``str`` so ``0.1`` becomes ``Decimal("0.1")``
    rather than its binary expansion.  ``None`` and empty strings map to
    ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Not a decimal amount: {value!r}") from None


def as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def send_slack_message(webhook_url: str, text: str, attachments: Optional[list] = None) -> None:
    """Send a message to Slack via an incoming webhook.

    Slack webhooks expect a JSON payload.  If attachments are provided, they
    should be a list of dicts following Slack's attachment format.
    """
    payload: Dict[str, Any] = {"text": text}
    if attachments:
        payload["attachments"] = attachments
    response = requests.post(webhook_url, json=payload, timeout=10)
    response.raise_for_status()
