from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Any

import pytest

from storix_sync.entity_store import EntityStore
from storix_sync.log_utils import reset_warnings


class FakeTransport:
    """Scripted stand-in for :class:`storix_sync.transport.JsonpTransport`.

    ``routes`` maps an action name to a reply. A reply may be a payload, an
    exception instance (raised), a callable taking the params, or a list of
    any of those consumed one per call (the last entry repeats).
    """

    def __init__(self, routes: dict[str, Any] | None = None) -> None:
        self.routes: dict[str, Any] = dict(routes or {})
        self.calls: list[dict[str, Any]] = []

    async def send(self, params: dict[str, Any]) -> Any:
        self.calls.append(dict(params))
        await asyncio.sleep(0)
        action = params.get("action")
        if action not in self.routes:
            raise AssertionError(f"unexpected call: {params}")
        reply = self.routes[action]
        if isinstance(reply, list):
            reply = reply.pop(0) if len(reply) > 1 else reply[0]
        if callable(reply) and not isinstance(reply, BaseException):
            reply = reply(params)
            if asyncio.iscoroutine(reply):
                reply = await reply
        if isinstance(reply, BaseException):
            raise reply
        return reply

    async def request(self, sheet: str | None, action: str, **params: Any) -> Any:
        query: dict[str, Any] = {}
        if sheet:
            query["sheet"] = sheet
        query["action"] = action
        query.update({key: value for key, value in params.items() if value is not None})
        return await self.send(query)

    def actions(self) -> list[str]:
        return [call["action"] for call in self.calls]


class FakeResponse:
    def __init__(self, status: int, body: str) -> None:
        self.status = status
        self._body = body

    async def text(self) -> str:
        return self._body


class _RequestContext:
    def __init__(self, session: FakeSession, url: str, params: dict[str, str]) -> None:
        self.session = session
        self.url = url
        self.params = params

    async def __aenter__(self) -> FakeResponse:
        return await self.session.respond(self.url, self.params)

    async def __aexit__(self, *exc_info: Any) -> None:
        return None


class FakeSession:
    """Minimal ``aiohttp.ClientSession`` double driven by an async responder.

    The responder receives the query params and returns ``(status, body)`` or
    raises.
    """

    def __init__(self, responder: Callable[[dict[str, str]], Any]) -> None:
        self.responder = responder
        self.started: list[dict[str, str]] = []
        self.closed = False

    def get(self, url: str, params: dict[str, str] | None = None, **_kwargs: Any) -> _RequestContext:
        return _RequestContext(self, url, dict(params or {}))

    async def respond(self, url: str, params: dict[str, str]) -> FakeResponse:
        self.started.append(params)
        status, body = await self.responder(params)
        return FakeResponse(status, body)

    async def close(self) -> None:
        self.closed = True


def jsonp(payload: str, callback: str = "storix") -> str:
    return f"{callback}({payload});"


@pytest.fixture
def store() -> EntityStore:
    return EntityStore()


@pytest.fixture(autouse=True)
def _reset_rate_limited_warnings():
    reset_warnings()
    yield
    reset_warnings()


@pytest.fixture
def fake_transport() -> type[FakeTransport]:
    return FakeTransport


@pytest.fixture
def fake_session() -> type[FakeSession]:
    return FakeSession


@pytest.fixture
def wrap_jsonp() -> Callable[..., str]:
    return jsonp
