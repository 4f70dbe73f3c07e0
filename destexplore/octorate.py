"""
Octorate PMS API client.

OAuth2 authorization-code flow, token refresh, and an authenticated request
helper that copes with expired tokens (401) and server-side throttling (429).
Persistence of tokens is the caller's concern, see `octorate_sync`.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import Any
from urllib.parse import urlencode

import httpx

SITE_URL = os.getenv("SITE_URL", "https://destexplore.eu")

OCTORATE_API_BASE_URL = os.getenv("OCTORATE_API_BASE_URL", "https://api.octorate.com/connect/rest/v1")
OCTORATE_BACKOFFICE_HOST = os.getenv("OCTORATE_BACKOFFICE_HOST", "admin.octorate.com")
OCTORATE_CLIENT_ID = os.getenv("OCTORATE_CLIENT_ID", "")
OCTORATE_CLIENT_SECRET = os.getenv("OCTORATE_CLIENT_SECRET", "")
OCTORATE_REDIRECT_URI = os.getenv("OCTORATE_REDIRECT_URI", f"{SITE_URL}/api/octorate/oauth/callback")
OCTORATE_TIMEOUT = float(os.getenv("OCTORATE_TIMEOUT", "20"))
OCTORATE_MAX_RETRIES = int(os.getenv("OCTORATE_MAX_RETRIES", "3"))
OCTORATE_BACKOFF_SECONDS = float(os.getenv("OCTORATE_BACKOFF_SECONDS", "1"))

# Octorate allows 100 calls per 5 minutes per accommodation.
RATE_LIMIT_CALLS = 100
RATE_LIMIT_WINDOW = timedelta(minutes=5)

# Refresh slightly before the advertised expiry.
TOKEN_EXPIRY_SKEW = timedelta(seconds=60)

logger = logging.getLogger(__name__)


class OctorateError(Exception):
    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class OctorateAuthError(OctorateError):
    """Token exchange or refresh was rejected."""


class OctorateRateLimited(OctorateError):
    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


@dataclass
class TokenSet:
    access_token: str
    refresh_token: str
    expires_at: datetime | None

    def expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return True
        now = now or datetime.now(tz=timezone.utc)
        expires_at = self.expires_at if self.expires_at.tzinfo else self.expires_at.replace(tzinfo=timezone.utc)
        return now >= expires_at - TOKEN_EXPIRY_SKEW


def parse_token_response(data: dict[str, Any], previous_refresh_token: str = "", now: datetime | None = None) -> TokenSet:
    """
    Octorate answers with `expireDate` (ISO timestamp); `expires_in` seconds is
    accepted as well. Refresh responses carry no refresh_token, so the
    previous one stays valid.
    """
    access_token = data.get("access_token")
    if not access_token:
        raise OctorateAuthError("Token response has no access_token", body=data)

    now = now or datetime.now(tz=timezone.utc)
    expires_at: datetime | None = None
    if data.get("expireDate"):
        expires_at = datetime.fromisoformat(str(data["expireDate"]).replace("Z", "+00:00"))
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
    elif data.get("expires_in") is not None:
        expires_at = now + timedelta(seconds=int(data["expires_in"]))

    return TokenSet(
        access_token=access_token,
        refresh_token=data.get("refresh_token") or previous_refresh_token,
        expires_at=expires_at,
    )


def authorization_url(state: str) -> str:
    params = urlencode(
        {
            "client_id": OCTORATE_CLIENT_ID,
            "redirect_uri": OCTORATE_REDIRECT_URI,
            "state": state,
        }
    )
    return f"https://{OCTORATE_BACKOFFICE_HOST}/octobook/identity/oauth.xhtml?{params}"


def _token_call(path: str, form: dict[str, str], transport: httpx.BaseTransport | None) -> dict[str, Any]:
    form = {**form, "client_id": OCTORATE_CLIENT_ID, "client_secret": OCTORATE_CLIENT_SECRET}
    try:
        with httpx.Client(timeout=OCTORATE_TIMEOUT, transport=transport) as client:
            r = client.post(f"{OCTORATE_API_BASE_URL.rstrip('/')}{path}", data=form)
    except httpx.HTTPError as e:
        raise OctorateAuthError(f"Octorate token endpoint unreachable: {e}") from e
    if r.status_code >= 400:
        raise OctorateAuthError(f"Octorate token call failed ({r.status_code})", status_code=r.status_code, body=r.text)
    return r.json()


def exchange_code(code: str, transport: httpx.BaseTransport | None = None) -> TokenSet:
    data = _token_call(
        "/identity/token",
        {"grant_type": "authorization_code", "code": code, "redirect_uri": OCTORATE_REDIRECT_URI},
        transport,
    )
    return parse_token_response(data)


def refresh_tokens(refresh_token: str, transport: httpx.BaseTransport | None = None) -> TokenSet:
    if not refresh_token:
        raise OctorateAuthError("No refresh token stored for this connection")
    data = _token_call("/identity/refresh", {"grant_type": "refresh_token", "refresh_token": refresh_token}, transport)
    return parse_token_response(data, previous_refresh_token=refresh_token)


class RateLimiter:
    """Fixed-window call counter per accommodation, shared by all clients in the process."""

    def __init__(self, calls: int = RATE_LIMIT_CALLS, window: timedelta = RATE_LIMIT_WINDOW):
        self.calls = calls
        self.window = window
        self._windows: dict[str, tuple[datetime, int]] = {}
        self._lock = threading.Lock()

    def check(self, key: str, now: datetime | None = None) -> None:
        now = now or datetime.now(tz=timezone.utc)
        with self._lock:
            reset_at, count = self._windows.get(key, (now, 0))
            if now >= reset_at:
                reset_at, count = now + self.window, 0
            if count >= self.calls:
                wait = (reset_at - now).total_seconds()
                raise OctorateRateLimited(f"Rate limit exceeded. Please wait {int(wait) + 1} seconds.", retry_after=wait)
            self._windows[key] = (reset_at, count + 1)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()


limiter = RateLimiter()


def _retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, (when - datetime.now(tz=timezone.utc)).total_seconds())


class OctorateClient:
    def __init__(
        self,
        accommodation_id: str,
        tokens: TokenSet,
        on_tokens: Callable[[TokenSet], None] | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rate_limiter: RateLimiter | None = None,
    ):
        self.accommodation_id = accommodation_id
        self.tokens = tokens
        self._on_tokens = on_tokens
        self._transport = transport
        self._sleep = sleep
        self._limiter = rate_limiter or limiter
        self._http = httpx.Client(base_url=OCTORATE_API_BASE_URL, timeout=OCTORATE_TIMEOUT, transport=transport)

    def __enter__(self) -> "OctorateClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._http.close()

    def _refresh(self) -> None:
        self.tokens = refresh_tokens(self.tokens.refresh_token, transport=self._transport)
        if self._on_tokens is not None:
            self._on_tokens(self.tokens)

    def request(self, method: str, path: str, params: dict[str, Any] | None = None, json: Any = None) -> Any:
        if self.tokens.expired():
            self._refresh()

        reauthenticated = False
        throttled = 0
        while True:
            self._limiter.check(self.accommodation_id)
            try:
                r = self._http.request(
                    method,
                    path,
                    params=params,
                    json=json,
                    headers={"Authorization": f"Bearer {self.tokens.access_token}", "Accept": "application/json"},
                )
            except httpx.HTTPError as e:
                raise OctorateError(f"Octorate request failed: {e}") from e

            if r.status_code == 401 and not reauthenticated:
                logger.info("Octorate returned 401 for %s %s, refreshing token", method, path)
                reauthenticated = True
                self._refresh()
                continue

            if r.status_code == 429:
                if throttled >= OCTORATE_MAX_RETRIES:
                    raise OctorateRateLimited(
                        f"Octorate throttled {method} {path} after {throttled} retries",
                        retry_after=_retry_after_seconds(r.headers.get("retry-after")),
                    )
                delay = _retry_after_seconds(r.headers.get("retry-after"))
                if delay is None:
                    delay = OCTORATE_BACKOFF_SECONDS * (2**throttled)
                throttled += 1
                logger.warning("Octorate throttled %s %s, retry %d in %.1fs", method, path, throttled, delay)
                self._sleep(delay)
                continue

            if r.status_code >= 400:
                raise OctorateError(f"Octorate API error ({r.status_code})", status_code=r.status_code, body=r.text)

            if not r.content:
                return None
            return r.json()

    def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return self.request("GET", path, params=params)

    def post(self, path: str, json: Any = None) -> Any:
        return self.request("POST", path, json=json)
