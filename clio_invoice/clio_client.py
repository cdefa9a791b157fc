"""
Clio REST API client for the invoice-approval service.

``ClioClient`` wraps the Clio v4 API with the behaviour every caller relies
on: bearer-token authentication with proactive and reactive refresh, a fixed
per-instance request rate, bounded retries for transient failures and
cursor pagination.  Callers only ever see the final outcome of a request,
either the decoded JSON body or one of the :class:`ClioError` subclasses
defined below.
"""

# clio_invoice/clio_client.py
from __future__ import annotations

import logging
import os
import time
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from .constants import (
    ACTIVITY_DESCRIPTION_FIELDS,
    ACTIVITY_FIELDS,
    BILL_FIELDS,
    CLIO_API_BASE,
    CLIO_AUTH_URL,
    CLIO_BILL_AWAITING_APPROVAL,
    CLIO_SCOPES,
    CLIO_TOKEN_URL,
    CONTACT_FIELDS,
    DEFAULT_TOKEN_LIFETIME_SECONDS,
    LINE_ITEM_FIELDS,
    MATTER_FIELDS,
    MAX_RETRIES,
    RATE_LIMIT_REQUESTS_PER_SECOND,
    RETRY_DELAY_SECONDS,
    TOKEN_REFRESH_MARGIN_SECONDS,
    USER_FIELDS,
)
from .utils import utcnow

logger = logging.getLogger(__name__)


class ClioError(Exception):
    """Base class for every failure surfaced by :class:`ClioClient`."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthError(ClioError):
    """Missing, invalid or expired credentials that a refresh could not fix."""


class RateLimitExceeded(ClioError):
    """HTTP 429 persisted past the retry budget."""


class RemoteServerError(ClioError):
    """HTTP 5xx persisted past the retry budget."""


class NetworkError(ClioError):
    """Transport-level failure persisted past the retry budget."""


class ClioAPIError(ClioError):
    """Non-retryable 4xx response; ``body`` holds the response text."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        super().__init__(message, status_code)
        self.body = body


class NotFoundError(ClioAPIError):
    """The referenced remote or local record does not exist."""


class ConflictError(ClioAPIError):
    """Clio rejected a write because the supplied etag is stale."""


class TokenUpdater:
    """Receives freshly issued tokens so they can be persisted.

    :class:`ClioClient` calls :meth:`update_tokens` exactly once per refresh.
    """

    def update_tokens(self, access_token: str, refresh_token: str, expires_at: datetime) -> None:
        raise NotImplementedError


def _oauth_settings() -> Dict[str, str]:
    return {
        "client_id": os.getenv("CLIO_CLIENT_ID", ""),
        "client_secret": os.getenv("CLIO_CLIENT_SECRET", ""),
        "redirect_uri": os.getenv("CLIO_REDIRECT_URL", "http://localhost:8000/auth/clio/callback"),
        "token_url": os.getenv("CLIO_TOKEN_URL", CLIO_TOKEN_URL),
    }


def _response_text(resp: Any) -> str:
    return getattr(resp, "text", "") or ""


def _decode(resp: Any) -> Dict[str, Any]:
    if resp.status_code == 204:
        return {}
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {"data": body}


def _error_for_status(status: int, body: str) -> ClioAPIError:
    message = f"Clio API error: {status} - {body}"
    if status == 404:
        return NotFoundError(message, status, body)
    if status in (409, 412):
        return ConflictError(message, status, body)
    return ClioAPIError(message, status, body)


def _wire(value: Any) -> Any:
    """Convert a write payload into JSON-serialisable values."""
    if isinstance(value, dict):
        return {k: _wire(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_wire(v) for v in value]
    if isinstance(value, Decimal):
        # JSON has a single number type; Decimal only leaves the process here.
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _post_token_request(payload: Dict[str, str], token_url: str, timeout: float) -> Dict[str, Any]:
    try:
        resp = requests.request(
            "POST",
            token_url,
            data=payload,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=timeout,
        )
    except (requests.ConnectionError, requests.Timeout) as exc:
        raise NetworkError(f"Token request failed: {exc}") from exc
    if resp.status_code >= 400:
        raise AuthError(f"Token request failed: {_response_text(resp)}", resp.status_code)
    tokens = _decode(resp)
    if not tokens.get("access_token"):
        raise AuthError("Token response did not include an access token", resp.status_code)
    return tokens


class ClioClient:
    """Authenticated, rate-limited client for the Clio v4 REST API.

    Configuration precedence is explicit argument, then environment
    variable (``CLIO_API_BASE``, ``CLIO_MAX_RETRIES``, ``CLIO_RETRY_DELAY``,
    ``CLIO_REQUESTS_PER_SECOND``), then the defaults in :mod:`constants`.
    ``requests_per_second=0`` disables the rate limit.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        refresh_token: Optional[str] = None,
        token_updater: Optional[TokenUpdater] = None,
        *,
        token_expires_at: Optional[datetime] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        requests_per_second: Optional[float] = None,
    ) -> None:
        self.access_token = access_token or None
        self.refresh_token = refresh_token or None
        self.token_expires_at = token_expires_at
        self.token_updater = token_updater
        self.base_url = (base_url or os.getenv("CLIO_API_BASE", CLIO_API_BASE)).rstrip("/")
        self.timeout = timeout
        self.max_retries = (
            max_retries if max_retries is not None else int(os.getenv("CLIO_MAX_RETRIES", str(MAX_RETRIES)))
        )
        self.retry_delay = (
            retry_delay
            if retry_delay is not None
            else float(os.getenv("CLIO_RETRY_DELAY", str(RETRY_DELAY_SECONDS)))
        )
        rps = (
            requests_per_second
            if requests_per_second is not None
            else float(os.getenv("CLIO_REQUESTS_PER_SECOND", str(RATE_LIMIT_REQUESTS_PER_SECOND)))
        )
        self.min_request_interval = 1.0 / rps if rps > 0 else 0.0
        self._last_request_at: Optional[float] = None

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    @staticmethod
    def authorization_url(state: Optional[str] = None) -> str:
        """Return the Clio consent URL for the authorization-code grant."""
        oauth = _oauth_settings()
        params = {
            "response_type": "code",
            "client_id": oauth["client_id"],
            "redirect_uri": oauth["redirect_uri"],
            "scope": CLIO_SCOPES,
        }
        if state:
            params["state"] = state
        return f"{os.getenv('CLIO_AUTH_URL', CLIO_AUTH_URL)}?{urlencode(params)}"

    @staticmethod
    def exchange_code_for_token(code: str, timeout: float = 30.0) -> Dict[str, Any]:
        """Exchange an authorization code for ``access_token``/``refresh_token``/``expires_in``."""
        oauth = _oauth_settings()
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": oauth["client_id"],
            "client_secret": oauth["client_secret"],
            "redirect_uri": oauth["redirect_uri"],
        }
        return _post_token_request(payload, oauth["token_url"], timeout)

    def refresh_access_token(self) -> Dict[str, Any]:
        """Swap the refresh token for a new token pair and notify the updater."""
        if not self.refresh_token:
            raise AuthError("No refresh token available")
        oauth = _oauth_settings()
        payload = {
            "grant_type": "refresh_token",
            "refresh_token": self.refresh_token,
            "client_id": oauth["client_id"],
            "client_secret": oauth["client_secret"],
        }
        tokens = _post_token_request(payload, oauth["token_url"], self.timeout)
        self.access_token = tokens["access_token"]
        self.refresh_token = tokens.get("refresh_token") or self.refresh_token
        lifetime = int(tokens.get("expires_in") or 0) or DEFAULT_TOKEN_LIFETIME_SECONDS
        self.token_expires_at = utcnow() + timedelta(seconds=lifetime)
        logger.info("Refreshed Clio access token; new expiry %s", self.token_expires_at.isoformat())
        if self.token_updater is not None:
            self.token_updater.update_tokens(self.access_token, self.refresh_token, self.token_expires_at)
        return tokens

    def is_token_expired(self) -> bool:
        """True when the cached expiry falls inside the refresh margin."""
        if self.token_expires_at is None:
            return False
        remaining = self.token_expires_at - utcnow()
        return remaining < timedelta(seconds=TOKEN_REFRESH_MARGIN_SECONDS)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    def _apply_rate_limit(self) -> None:
        if self._last_request_at is not None and self.min_request_interval:
            elapsed = time.monotonic() - self._last_request_at
            if elapsed < self.min_request_interval:
                time.sleep(self.min_request_interval - elapsed)
        self._last_request_at = time.monotonic()

    def _backoff(self, attempt: int) -> float:
        return self.retry_delay * (2 ** attempt)

    def _retry_after(self, resp: Any, attempt: int) -> float:
        hint = (getattr(resp, "headers", None) or {}).get("Retry-After")
        if hint is not None:
            try:
                return max(float(hint), 0.0)
            except ValueError:
                pass
        return self._backoff(attempt)

    def _request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise AuthError("No access token available")
        if self.refresh_token and self.is_token_expired():
            self.refresh_access_token()

        if endpoint.startswith("http"):
            url = endpoint
        else:
            url = f"{self.base_url}/{endpoint.lstrip('/')}"
        method = method.upper()

        attempt = 0
        while True:
            self._apply_rate_limit()
            request_headers = {
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            }
            if headers:
                request_headers.update(headers)
            try:
                resp = requests.request(
                    method, url, headers=request_headers, params=params, json=json, timeout=self.timeout
                )
            except (requests.ConnectionError, requests.Timeout) as exc:
                if attempt >= self.max_retries:
                    raise NetworkError(f"Network error after {attempt + 1} attempts: {exc}") from exc
                delay = self._backoff(attempt)
                logger.warning("Network error on %s %s (%s); retrying in %.2fs", method, url, exc, delay)
                time.sleep(delay)
                attempt += 1
                continue

            status = resp.status_code
            if status == 429:
                if attempt >= self.max_retries:
                    raise RateLimitExceeded("Rate limit exceeded after maximum retries", status)
                delay = self._retry_after(resp, attempt)
                logger.warning("Rate limited by Clio API. Waiting %.2fs before retry.", delay)
                time.sleep(delay)
                attempt += 1
                continue
            if status == 401:
                if attempt >= self.max_retries:
                    raise AuthError("Authentication failed after token refresh", status)
                logger.warning("Clio rejected the access token. Refreshing...")
                self.refresh_access_token()
                attempt += 1
                continue
            if status >= 500:
                if attempt >= self.max_retries:
                    raise RemoteServerError(f"Clio server error {status}: {_response_text(resp)}", status)
                delay = self._backoff(attempt)
                logger.warning("Server error %s from Clio. Retrying in %.2fs...", status, delay)
                time.sleep(delay)
                attempt += 1
                continue
            if status >= 400:
                raise _error_for_status(status, _response_text(resp))
            return _decode(resp)

    def fetch_all_pages(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """Walk a cursor-paginated list endpoint and return every item in order.

        Clio puts the continuation in ``meta.paging.next``; it is either an
        opaque ``page_token`` value or a complete URL for the next page.
        """
        query = dict(params or {})
        items: List[Dict[str, Any]] = []
        cursor: Optional[str] = None
        while True:
            if cursor and cursor.startswith("http"):
                page = self._request("GET", cursor)
            else:
                if cursor:
                    query["page_token"] = cursor
                page = self._request("GET", endpoint, params=query)
            items.extend(page.get("data") or [])
            cursor = ((page.get("meta") or {}).get("paging") or {}).get("next")
            if not cursor:
                return items

    # ------------------------------------------------------------------
    # Bills
    # ------------------------------------------------------------------

    def get_bills(
        self,
        *,
        state: Optional[str] = None,
        client_id: Optional[int] = None,
        matter_id: Optional[int] = None,
        updated_since: Optional[Any] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = _filters(
            fields=BILL_FIELDS,
            state=state,
            client_id=client_id,
            matter_id=matter_id,
            updated_since=updated_since,
            limit=limit,
            page_token=page_token,
        )
        return self._request("GET", "/bills.json", params=params)

    def get_bills_awaiting_approval(self) -> Dict[str, Any]:
        return self.get_bills(state=CLIO_BILL_AWAITING_APPROVAL)

    def get_all_bills_awaiting_approval(self) -> List[Dict[str, Any]]:
        params = {"state": CLIO_BILL_AWAITING_APPROVAL, "fields": BILL_FIELDS}
        return self.fetch_all_pages("/bills.json", params)

    def get_bill(self, bill_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/bills/{bill_id}.json", params={"fields": BILL_FIELDS})

    def update_bill_state(self, bill_id: int, state: str, etag: str) -> Dict[str, Any]:
        return self._request(
            "PATCH", f"/bills/{bill_id}.json", json={"data": {"state": state}}, headers={"If-Match": etag}
        )

    def delete_bill(self, bill_id: int, etag: str) -> None:
        """Void a bill; Clio treats DELETE on a bill as voiding it."""
        self._request("DELETE", f"/bills/{bill_id}.json", headers={"If-Match": etag})

    # ------------------------------------------------------------------
    # Line items
    # ------------------------------------------------------------------

    def get_bill_line_items(self, bill_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/bills/{bill_id}/line_items.json", params={"fields": LINE_ITEM_FIELDS})

    def get_all_bill_line_items(self, bill_id: int) -> List[Dict[str, Any]]:
        return self.fetch_all_pages(f"/bills/{bill_id}/line_items.json", {"fields": LINE_ITEM_FIELDS})

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    def get_activities(
        self,
        *,
        bill_id: Optional[int] = None,
        matter_id: Optional[int] = None,
        user_id: Optional[int] = None,
        type: Optional[str] = None,
        updated_since: Optional[Any] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = _filters(
            fields=ACTIVITY_FIELDS,
            bill_id=bill_id,
            matter_id=matter_id,
            user_id=user_id,
            type=type,
            updated_since=updated_since,
            limit=limit,
            page_token=page_token,
        )
        return self._request("GET", "/activities.json", params=params)

    def get_activity(self, activity_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/activities/{activity_id}.json", params={"fields": ACTIVITY_FIELDS})

    def update_activity(self, activity_id: int, data: Dict[str, Any], etag: str) -> Dict[str, Any]:
        return self._request(
            "PATCH", f"/activities/{activity_id}.json", json={"data": _wire(data)}, headers={"If-Match": etag}
        )

    def delete_activity(self, activity_id: int, etag: str) -> None:
        self._request("DELETE", f"/activities/{activity_id}.json", headers={"If-Match": etag})

    def hold_activity(self, activity_id: int, etag: str) -> Dict[str, Any]:
        """Detach an activity from its bill so it is billed later."""
        return self._request(
            "PATCH", f"/activities/{activity_id}.json", json={"data": {"bill": None}}, headers={"If-Match": etag}
        )

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def get_users(
        self, *, enabled: Optional[bool] = None, limit: Optional[int] = None, page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        params = _filters(fields=USER_FIELDS, enabled=enabled, limit=limit, page_token=page_token)
        return self._request("GET", "/users.json", params=params)

    def get_all_users(self, enabled: Optional[bool] = None) -> List[Dict[str, Any]]:
        return self.fetch_all_pages("/users.json", _filters(fields=USER_FIELDS, enabled=enabled))

    def get_current_user(self) -> Dict[str, Any]:
        return self._request("GET", "/users/who_am_i.json", params={"fields": USER_FIELDS})

    def get_user(self, user_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/users/{user_id}.json", params={"fields": USER_FIELDS})

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    def get_contacts(
        self,
        *,
        type: Optional[str] = None,
        query: Optional[str] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = _filters(fields=CONTACT_FIELDS, type=type, query=query, limit=limit, page_token=page_token)
        return self._request("GET", "/contacts.json", params=params)

    def get_contact(self, contact_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/contacts/{contact_id}.json", params={"fields": CONTACT_FIELDS})

    def get_all_contacts(self, type: Optional[str] = None) -> List[Dict[str, Any]]:
        return self.fetch_all_pages("/contacts.json", _filters(fields=CONTACT_FIELDS, type=type))

    # ------------------------------------------------------------------
    # Matters
    # ------------------------------------------------------------------

    def get_matters(
        self,
        *,
        client_id: Optional[int] = None,
        responsible_attorney_id: Optional[int] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        page_token: Optional[str] = None,
    ) -> Dict[str, Any]:
        params = _filters(
            fields=MATTER_FIELDS,
            client_id=client_id,
            responsible_attorney_id=responsible_attorney_id,
            status=status,
            limit=limit,
            page_token=page_token,
        )
        return self._request("GET", "/matters.json", params=params)

    def get_matter(self, matter_id: int) -> Dict[str, Any]:
        return self._request("GET", f"/matters/{matter_id}.json", params={"fields": MATTER_FIELDS})

    # ------------------------------------------------------------------
    # Activity descriptions (UTBMS codes)
    # ------------------------------------------------------------------

    def get_activity_descriptions(
        self, *, limit: Optional[int] = None, page_token: Optional[str] = None
    ) -> Dict[str, Any]:
        params = _filters(fields=ACTIVITY_DESCRIPTION_FIELDS, limit=limit, page_token=page_token)
        return self._request("GET", "/activity_descriptions.json", params=params)

    def get_all_activity_descriptions(self) -> List[Dict[str, Any]]:
        return self.fetch_all_pages("/activity_descriptions.json", {"fields": ACTIVITY_DESCRIPTION_FIELDS})


def _filters(**kwargs: Any) -> Dict[str, Any]:
    """Build a query dict, dropping unset filters and stringifying the rest."""
    params: Dict[str, Any] = {}
    for key, value in kwargs.items():
        if value is None:
            continue
        if isinstance(value, bool):
            params[key] = "true" if value else "false"
        elif isinstance(value, (datetime, date)):
            params[key] = value.isoformat()
        else:
            params[key] = str(value)
    return params


__all__ = [
    "AuthError",
    "ClioAPIError",
    "ClioClient",
    "ClioError",
    "ConflictError",
    "NetworkError",
    "NotFoundError",
    "RateLimitExceeded",
    "RemoteServerError",
    "TokenUpdater",
]
