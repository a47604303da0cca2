"""
Authenticated transport
=======================

Thin async wrapper around a blocking ``requests``-style send function.

    transport = AuthenticatedTransport(config, credentials)
    response  = await transport.request("GET", "/jobs/abc123")

Every call:
    1. attaches ``Authorization: Bearer <access_token>`` when logged in
    2. sends the request (in a worker thread, the event loop never blocks)
    3. returns any non-401 response untouched
    4. on 401 runs ONE refresh cycle and replays the request ONCE
       (a request whose token was already replaced by a concurrent
       refresh skips straight to the replay)

If the refresh fails for any reason the credentials are cleared and
``SessionExpired`` is raised; the caller must send the user back to login.
There is no loop: a replayed request that gets 401 again is returned as-is.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

import requests

from govision.config import ClientConfig
from govision.credentials import CredentialStore
from govision.errors import SessionExpired, TransportError

log = logging.getLogger("govision.transport")

# send(method, url, headers=..., json=..., files=..., timeout=...) -> response
SendFn = Callable[..., Any]

REFRESH_PATH = "/auth/refresh"


def parse_json_safe(response) -> Optional[dict]:
    """Decode a JSON object body, or return None for anything else.

    Non-JSON content types, malformed bodies and JSON that is not an
    object all count as "no data" rather than an error.
    """
    content_type = response.headers.get("content-type", "") or ""
    if "application/json" not in content_type:
        return None
    try:
        data = response.json()
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def is_ok(response) -> bool:
    return 200 <= response.status_code < 300


class AuthenticatedTransport:
    """Bearer-token transport with a single refresh-and-replay on 401."""

    def __init__(
        self,
        config: ClientConfig,
        credentials: CredentialStore,
        send: SendFn | None = None,
        on_session_end: Callable[[], None] | None = None,
    ):
        self.config = config
        self.credentials = credentials
        self._send = send or requests.Session().request
        self.on_session_end = on_session_end
        self._refresh_lock = asyncio.Lock()

    def url(self, path: str) -> str:
        return f"{self.config.api_base}{path}"

    # ------------------------------------------------------------------
    #  Public API
    # ------------------------------------------------------------------

    async def request(self, method: str, path: str, *, json: Any = None, files: dict | None = None):
        """Send an authenticated request; see the module docstring for the retry rules."""
        sent_token = self._access_token()
        response = await self._call(method, path, self._auth_headers(), json=json, files=files)
        if response.status_code != 401:
            return response

        # Concurrent 401s share one refresh: the refresh token is single-use
        async with self._refresh_lock:
            current = self._access_token()
            if current is not None and current != sent_token:
                log.debug("%s %s: token already refreshed, replaying", method, path)
            else:
                log.info("%s %s returned 401, refreshing access token", method, path)
                if not await self._refresh():
                    self._end_session()
                    raise SessionExpired("Session expired, please log in again")

        return await self._call(method, path, self._auth_headers(), json=json, files=files)

    async def post_json(self, path: str, body: dict):
        """Unauthenticated JSON POST.  Returns ``(response, data_or_None)``."""
        response = await self._call("POST", path, {"Content-Type": "application/json"}, json=body)
        return response, parse_json_safe(response)

    # ------------------------------------------------------------------
    #  Internals
    # ------------------------------------------------------------------

    def _access_token(self) -> Optional[str]:
        credential = self.credentials.get()
        return credential.access_token if credential is not None else None

    def _auth_headers(self) -> dict:
        token = self._access_token()
        if token is None:
            return {}
        return {"Authorization": f"Bearer {token}"}

    async def _call(self, method, path, headers, *, json=None, files=None):
        kwargs: dict = {"headers": headers, "timeout": self.config.request_timeout}
        if json is not None:
            kwargs["json"] = json
        if files is not None:
            kwargs["files"] = files
        try:
            return await asyncio.to_thread(self._send, method, self.url(path), **kwargs)
        except requests.RequestException as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

    async def _refresh(self) -> bool:
        credential = self.credentials.get()
        if credential is None or not credential.refresh_token:
            return False
        try:
            response, data = await self.post_json(
                REFRESH_PATH, {"refresh_token": credential.refresh_token}
            )
        except TransportError as e:
            log.warning("Token refresh failed: %s", e)
            return False

        if not is_ok(response) or not data or not data.get("access_token") or not data.get("refresh_token"):
            log.warning("Token refresh rejected (HTTP %d)", response.status_code)
            return False

        self.credentials.save(data)
        return True

    def _end_session(self) -> None:
        self.credentials.clear()
        log.warning("Session ended, credentials cleared")
        if self.on_session_end is not None:
            self.on_session_end()
