#!/usr/bin/env python3
"""BYOS JWT credentials: login, proactive refresh and token validity."""

import json
import logging
import time
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

from config import ACCESS_TOKEN_VALIDITY_MS
from models import ByosAuthConfig, TokenResponse

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 10.0


class ByosAuthError(RuntimeError):
    pass


@dataclass
class HttpResponse:
    status: int
    reason: str
    body: bytes

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def text(self) -> str:
        return self.body.decode('utf-8', errors='replace')

    def json(self) -> Any:
        return json.loads(self.text)


def send_request(url: str, method: str = "GET", headers: Optional[Dict[str, str]] = None,
                 body: Optional[bytes] = None, timeout: float = DEFAULT_TIMEOUT_S) -> HttpResponse:
    """Perform one HTTP request. Error statuses are returned, network failures raise URLError."""
    request = urllib.request.Request(url, data=body, headers=headers or {}, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return HttpResponse(response.status, response.reason or "", response.read())
    except urllib.error.HTTPError as e:
        return HttpResponse(e.code, e.reason or "", e.read() or b"")


def get_base_url(webhook_url: str) -> str:
    """https://example.com/api/screens -> https://example.com"""
    parts = urlsplit(webhook_url)
    return f"{parts.scheme}://{parts.netloc}"


def now_millis() -> int:
    return int(time.time() * 1000)


def is_token_valid(auth: ByosAuthConfig, now_ms: Optional[int] = None) -> bool:
    if not auth.obtained_at or not auth.access_token:
        return False
    now_ms = now_millis() if now_ms is None else now_ms
    return now_ms - auth.obtained_at < ACCESS_TOKEN_VALIDITY_MS


def _parse_tokens(response: HttpResponse) -> Optional[TokenResponse]:
    try:
        data = response.json()
    except ValueError:
        return None
    if not isinstance(data, dict) or not data.get("access_token") or not data.get("refresh_token"):
        return None
    return TokenResponse(access_token=data["access_token"], refresh_token=data["refresh_token"])


def login(base_url: str, login_name: str, password: str,
          timeout: float = DEFAULT_TIMEOUT_S) -> TokenResponse:
    """Exchange credentials for a token pair. Credentials are never stored."""
    logger.info(f"BYOS auth: logging in to {base_url}")
    body = json.dumps({"login": login_name, "password": password}).encode('utf-8')
    try:
        response = send_request(f"{base_url}/login", method="POST",
                                headers={"Content-Type": "application/json"},
                                body=body, timeout=timeout)
    except (urllib.error.URLError, OSError) as e:
        raise ByosAuthError(f"BYOS login failed: {e}")

    if not response.ok:
        raise ByosAuthError(f"BYOS login failed: {response.status} {response.text}")

    tokens = _parse_tokens(response)
    if tokens is None:
        raise ByosAuthError("BYOS login response missing tokens")

    logger.info("BYOS auth: login successful")
    return tokens


def refresh_tokens(base_url: str, auth: ByosAuthConfig,
                   timeout: float = DEFAULT_TIMEOUT_S) -> TokenResponse:
    logger.info("BYOS auth: refreshing token")
    body = json.dumps({"refresh_token": auth.refresh_token}).encode('utf-8')
    response = send_request(f"{base_url}/api/jwt", method="POST",
                            headers={"Content-Type": "application/json",
                                     "Authorization": auth.access_token or ""},
                            body=body, timeout=timeout)
    if not response.ok:
        logger.warning(f"BYOS auth: refresh failed ({response.status})")
        raise ByosAuthError(f"BYOS token refresh failed: {response.status}")

    tokens = _parse_tokens(response)
    if tokens is None:
        raise ByosAuthError("BYOS refresh response missing tokens")

    logger.info("BYOS auth: token refreshed successfully")
    return tokens


def get_valid_access_token(webhook_url: str, auth: ByosAuthConfig,
                           on_refresh: Optional[Callable[[TokenResponse], None]] = None,
                           now_ms: Optional[int] = None,
                           timeout: float = DEFAULT_TIMEOUT_S) -> Optional[str]:
    """
    Return a usable access token, refreshing it when older than the validity window.

    Returns None when no tokens are stored or the refresh fails; the caller
    should deliver without auth and try again on the next cycle.
    """
    if not auth.access_token or not auth.refresh_token:
        logger.warning("BYOS auth: no tokens stored, authentication required")
        return None

    if is_token_valid(auth, now_ms):
        return auth.access_token

    try:
        tokens = refresh_tokens(get_base_url(webhook_url), auth, timeout=timeout)
    except (ByosAuthError, urllib.error.URLError, OSError, ValueError) as e:
        logger.error(f"BYOS auth: refresh failed, re-authentication required: {e}")
        return None

    if on_refresh is not None:
        try:
            on_refresh(tokens)
        except Exception as e:
            logger.error(f"BYOS auth: could not store refreshed tokens: {e}")
            return None
    return tokens.access_token
