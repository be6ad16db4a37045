"""Shared fixtures: a scripted transport standing in for the HTTP layer."""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Callable, Union

import pytest

from enhance_config import EnhanceOptions
from enhance_session import AuthSession
from enhance_transport import TransportResult


API = "https://api.test"

Response = Union[TransportResult, Callable[[str, str, dict], TransportResult]]


def ok(body: Any = None, status: int = 200) -> TransportResult:
    return TransportResult(status=status, body=body)


def failed(error: str = "Connection Error: refused", failure: str = "connection") -> TransportResult:
    return TransportResult(error=error, failure=failure)


@dataclass
class Call:
    method: str
    url: str
    kwargs: dict = field(default_factory=dict)

    @property
    def bearer(self):
        return self.kwargs.get("headers", {}).get("Authorization")


class FakeTransport:
    """
    Routes (method, url) to queued responses.

    Responses are consumed in order; the last one repeats. A response may be
    a callable taking (method, url, kwargs).
    """

    def __init__(self):
        self.calls: list[Call] = []
        self.routes: dict[tuple[str, str], list[Response]] = {}

    def add(self, method: str, url: str, *responses: Response) -> "FakeTransport":
        self.routes.setdefault((method, url), []).extend(responses)
        return self

    async def __call__(self, method: str, url: str, **kwargs: Any) -> TransportResult:
        self.calls.append(Call(method, url, kwargs))
        await asyncio.sleep(0)
        queue = self.routes.get((method, url))
        if not queue:
            return ok({"error": "no route"}, status=404)
        response = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(response):
            response = response(method, url, kwargs)
        return response

    def calls_to(self, method: str, url: str) -> list[Call]:
        return [c for c in self.calls if c.method == method and c.url == url]


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def session(transport: FakeTransport) -> AuthSession:
    s = AuthSession(transport, api_base=API)
    s.access_token = "access-1"
    s.refresh_token = "refresh-1"
    return s


@pytest.fixture
def options() -> EnhanceOptions:
    return EnhanceOptions(
        attempts=2,
        progress_interval_sec=0.001,
        show_progress=False,
    )
