#!/usr/bin/env python3
"""
letsenhance Auth Session

Holds the access/refresh token pair for the lifetime of the process.

- login(): exchange email/password for both tokens
- refresh_access_token(): replace the access token using the refresh token
- authorized_request(): send a request with the bearer access token; on 401
  refresh once and hand control back to the caller's retry loop

Concurrent 401s share a single in-flight refresh, so a burst of rejected
requests produces one refresh call instead of one per request.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

from enhance_config import DEFAULT_API_BASE
from enhance_errors import AuthError
from enhance_transport import TransportResult


LOGIN_PATH = "/auth/login"
REFRESH_PATH = "/auth/refresh"

Transport = Callable[..., Awaitable[TransportResult]]


def describe_body(body: Any) -> str:
    """Render a response body for an operator-facing message."""
    if isinstance(body, (bytes, bytearray)):
        return f"<{len(body)} bytes>"
    try:
        return json.dumps(body)
    except (TypeError, ValueError):
        return str(body)


def _retrieve_exception(task: "asyncio.Future[None]") -> None:
    # Callers cancelled while shielded never read the failure
    if not task.cancelled():
        task.exception()


class AuthSession:
    """
    Unauthenticated until login() succeeds; stays authenticated across
    refreshes. Tokens are never persisted.
    """

    def __init__(self, transport: Transport, api_base: str = DEFAULT_API_BASE):
        self.transport = transport
        self.api_base = api_base.rstrip("/")
        self.access_token: Optional[str] = None
        self.refresh_token: Optional[str] = None
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token) and bool(self.refresh_token)

    def url_for(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.api_base}{path}"

    async def login(self, email: str, password: str) -> None:
        """
        Log in and store both tokens.

        Raises:
            AuthError: transport failure, non-200 status, or a body missing
                either token. The session is left empty.
        """
        result = await self.transport(
            "POST",
            self.url_for(LOGIN_PATH),
            json_body={"email": email, "password": password},
        )

        if not result.ok:
            raise AuthError(f"Could not login: {result.error}")
        if result.status != 200:
            raise AuthError(
                f"Could not login. Status code: {result.status}. Body: {describe_body(result.body)}"
            )

        body = result.body
        if not isinstance(body, dict) or not body.get("access_token") or not body.get("refresh_token"):
            raise AuthError(f"[Login] Unexpected body: {describe_body(body)}")

        self.access_token = body["access_token"]
        self.refresh_token = body["refresh_token"]

    async def refresh_access_token(self, stale_token: Optional[str] = None) -> None:
        """
        Replace the access token, joining any refresh already in flight.

        Args:
            stale_token: The access token a request was rejected with. If the
                session already holds a different token, another caller has
                refreshed in the meantime and nothing is sent.

        Raises:
            AuthError: refresh failed
        """
        if stale_token is not None and self.access_token != stale_token:
            return

        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh())
            self._refresh_task.add_done_callback(_retrieve_exception)

        await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> None:
        print("[Auth] Refreshing access token.")
        result = await self.transport(
            "POST",
            self.url_for(REFRESH_PATH),
            headers={"Authorization": f"Bearer {self.refresh_token}"},
        )

        if not result.ok:
            raise AuthError(f"Could not refresh authorization: {result.error}")
        if result.status != 200:
            raise AuthError(
                f"Could not refresh authorization. Status code: {result.status}. "
                f"Body: {describe_body(result.body)}"
            )

        body = result.body
        if not isinstance(body, dict) or not body.get("access_token"):
            raise AuthError(f"[Refresh] Unexpected body: {describe_body(body)}")

        # The refresh token is never rotated here
        self.access_token = body["access_token"]

    async def authorized_request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> TransportResult:
        """
        Send a request with the current access token.

        A 401 triggers one refresh and is then returned as an error result
        without re-sending; the caller's retry loop re-issues the request
        with the new token. Any other non-200 status is returned as an error.

        Raises:
            AuthError: tokens are missing, or the refresh after a 401 failed
        """
        if not self.authenticated:
            raise AuthError("Missing access/refresh tokens. Login or set the tokens manually beforehand.")

        token = self.access_token
        merged = dict(headers or {})
        merged["Authorization"] = f"Bearer {token}"

        result = await self.transport(method, self.url_for(path), headers=merged, **kwargs)
        if not result.ok:
            return result

        if result.status == 401:
            await self.refresh_access_token(stale_token=token)
            return TransportResult(
                error="Unauthorized (401); access token refreshed",
                status=result.status,
                body=result.body,
            )

        if result.status != 200:
            return TransportResult(
                error=f"Unexpected response. Status code: {result.status}. Body: {describe_body(result.body)}",
                status=result.status,
                body=result.body,
            )

        return result
