#!/usr/bin/env python3
"""
letsenhance HTTP Transport

Performs exactly one HTTP request and reports the outcome in a uniform shape.
Network and decoding problems are returned in TransportResult.error instead
of being raised, so callers only ever branch on the result.

This module provides:
- TransportResult: the {error, status, body} result of one request
- FormFile: a single multipart file field
- HttpTransport: aiohttp-backed request callable used by the session
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from typing import Any, Optional

import aiohttp


CONNECTION_FAILURE = "connection"
READ_FAILURE = "read"


@dataclass
class TransportResult:
    """Outcome of a single HTTP request."""
    error: Optional[str] = None
    status: Optional[int] = None
    body: Any = None
    # Which side failed when error is set: CONNECTION_FAILURE or READ_FAILURE
    failure: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class FormFile:
    """A file sent as one multipart/form-data field."""
    field: str
    path: str
    filename: str
    content_type: str


def _decode_body(raw: bytes) -> Any:
    """Decode a JSON body, falling back to text for non-JSON payloads."""
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except ValueError:
        return text


class HttpTransport:
    """
    Request callable bound to an aiohttp ClientSession.

    Any status code is a successful transport result; deciding whether a
    status is acceptable is left to the caller.
    """

    def __init__(self, session: aiohttp.ClientSession):
        self.session = session

    async def __call__(
        self,
        method: str,
        url: str,
        *,
        json_body: Any = None,
        form_file: Optional[FormFile] = None,
        headers: Optional[dict[str, str]] = None,
        timeout_sec: Optional[float] = None,
        raw: bool = False,
    ) -> TransportResult:
        """
        Send one request.

        Args:
            method: HTTP method ("GET" or "POST")
            url: Absolute URL
            json_body: JSON-serializable request body (ignored with form_file)
            form_file: Optional multipart file field
            headers: Extra request headers
            timeout_sec: Connect and per-read timeout for this request; a
                transfer that keeps receiving data is never cut off
            raw: Return the body as bytes instead of decoding JSON

        Returns:
            TransportResult with status and body, or error and failure side
        """
        kwargs: dict[str, Any] = {"headers": headers or {}}
        if timeout_sec is not None:
            kwargs["timeout"] = aiohttp.ClientTimeout(total=None, sock_connect=timeout_sec, sock_read=timeout_sec)

        try:
            if form_file is not None:
                with open(form_file.path, "rb") as fh:
                    form = aiohttp.FormData()
                    form.add_field(
                        form_file.field,
                        fh,
                        filename=form_file.filename,
                        content_type=form_file.content_type,
                    )
                    return await self._send(method, url, raw=raw, data=form, **kwargs)

            if json_body is not None:
                kwargs["json"] = json_body
            return await self._send(method, url, raw=raw, **kwargs)

        except aiohttp.ClientConnectorError as e:
            return TransportResult(error=f"Connection Error: {e}", failure=CONNECTION_FAILURE)
        except asyncio.TimeoutError:
            return TransportResult(error="Request Timeout", failure=READ_FAILURE)
        except aiohttp.ClientError as e:
            return TransportResult(error=f"Read Error: {e}", failure=READ_FAILURE)
        except OSError as e:
            return TransportResult(error=f"File Error: {e}", failure=CONNECTION_FAILURE)

    async def _send(self, method: str, url: str, *, raw: bool, **kwargs: Any) -> TransportResult:
        async with self.session.request(method, url, **kwargs) as response:
            payload = await response.read()
            body = payload if raw else _decode_body(payload)
            return TransportResult(status=response.status, body=body)
