"""Serialized JSONP-style transport to the remote spreadsheet endpoint.

The remote answers every GET with ``<callback>(<json>);`` and always uses the
same callback name, so a reply carries nothing that ties it to the request
that produced it. Only one exchange may therefore be in flight at a time:
:class:`JsonpTransport` chains every call behind the previous one and owns
the single reply slot for the duration of one exchange.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from aiohttp import ClientError, ClientSession

from .const import DEFAULT_REQUEST_TIMEOUT, JSONP_CALLBACK
from .errors import TransportError, TransportTimeout

_LOGGER = logging.getLogger(__name__)

ReplyHandler = Callable[[Any], None]


class ReplyChannel:
    """Registry of named completion handlers, one handler per name."""

    def __init__(self) -> None:
        self._handlers: dict[str, ReplyHandler] = {}

    def register(self, name: str, handler: ReplyHandler) -> None:
        if name in self._handlers:
            raise TransportError(f"reply channel {name!r} is already claimed", reason="channel_busy")
        self._handlers[name] = handler

    def unregister(self, name: str, handler: ReplyHandler) -> None:
        if self._handlers.get(name) == handler:
            del self._handlers[name]

    def is_claimed(self, name: str) -> bool:
        return name in self._handlers

    def deliver(self, name: str, payload: Any) -> bool:
        """Invoke the handler registered under ``name``; ``False`` if none is."""

        handler = self._handlers.get(name)
        if handler is None:
            _LOGGER.debug("Dropping reply for %s: no handler registered", name)
            return False
        handler(payload)
        return True


def parse_jsonp(body: str, callback_name: str) -> Any:
    """Unwrap ``callback_name(<json>);`` and decode the JSON argument."""

    text = body.strip()
    prefix = f"{callback_name}("
    if not text.startswith(prefix):
        raise TransportError(
            f"reply is not wrapped in {callback_name}(...): {text[:80]!r}", reason="bad_wrapper"
        )
    inner = text[len(prefix) :].rstrip()
    while inner.endswith(";"):
        inner = inner[:-1].rstrip()
    if not inner.endswith(")"):
        raise TransportError("reply wrapper is not closed", reason="bad_wrapper")
    try:
        return json.loads(inner[:-1])
    except ValueError as err:
        raise TransportError(f"reply is not valid JSON: {err}", reason="bad_json") from err


def encode_params(params: Mapping[str, Any]) -> dict[str, str]:
    """Render request parameters the way the remote expects them."""

    encoded: dict[str, str] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, bool):
            encoded[key] = "true" if value else "false"
        elif isinstance(value, list | tuple | set | frozenset):
            encoded[key] = ",".join(str(item) for item in value)
        elif isinstance(value, Mapping):
            encoded[key] = json.dumps(value, separators=(",", ":"))
        else:
            encoded[key] = str(value)
    return encoded


@dataclass(slots=True)
class _Injection:
    """One outstanding fetch and the caller-side future waiting on it."""

    query: dict[str, str]
    reply: asyncio.Future
    detached: bool = False
    task: asyncio.Task | None = field(default=None, repr=False)

    def describe(self) -> str:
        sheet = self.query.get("sheet")
        action = self.query.get("action", "?")
        return f"{sheet}:{action}" if sheet else action


class JsonpTransport:
    """FIFO queue of remote calls sharing a single reply channel."""

    def __init__(
        self,
        session: ClientSession,
        base_url: str,
        *,
        callback_name: str = JSONP_CALLBACK,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        channel: ReplyChannel | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.session = session
        self.base_url = base_url
        self.callback_name = callback_name
        self.timeout = timeout
        self.channel = channel or ReplyChannel()
        self.logger = logger or _LOGGER
        self._tail: asyncio.Future | None = None
        self._abandoned: set[asyncio.Task] = set()
        self.exchanges = 0
        self.failures = 0
        self.last_error: str | None = None
        self.last_success_at: datetime | None = None

    # ------------------------------------------------------------------
    async def send(self, params: Mapping[str, Any]) -> Any:
        """Queue one exchange and return the decoded reply payload.

        The exchange starts only after every previously queued exchange has
        settled. A failure is raised to this caller and does not stop the
        calls queued behind it.
        """

        loop = asyncio.get_running_loop()
        previous = self._tail
        gate: asyncio.Future = loop.create_future()
        self._tail = gate
        try:
            if previous is not None and not previous.done():
                await asyncio.shield(previous)
            return await self._perform_call(encode_params(params))
        finally:
            _open_gate_after(previous, gate)

    async def request(self, sheet: str | None, action: str, **params: Any) -> Any:
        query: dict[str, Any] = {}
        if sheet:
            query["sheet"] = sheet
        query["action"] = action
        query.update(params)
        return await self.send(query)

    async def probe(self) -> dict[str, Any]:
        """Check that the endpoint answers; never raises transport errors."""

        started = time.monotonic()
        try:
            await self.request("Settings", "get", key="test")
        except TransportError as err:
            return {
                "success": False,
                "error": str(err),
                "url": self.base_url,
                "response_time": time.monotonic() - started,
            }
        return {
            "success": True,
            "error": None,
            "url": self.base_url,
            "response_time": time.monotonic() - started,
        }

    @property
    def busy(self) -> bool:
        return self._tail is not None and not self._tail.done()

    @property
    def abandoned(self) -> int:
        return len(self._abandoned)

    async def async_close(self) -> None:
        """Cancel fetches that were abandoned after a timeout."""

        tasks = list(self._abandoned)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._abandoned.clear()

    # ------------------------------------------------------------------
    async def _perform_call(self, query: dict[str, str]) -> Any:
        loop = asyncio.get_running_loop()
        query["callback"] = self.callback_name
        injection = _Injection(query=query, reply=loop.create_future())

        def handle_reply(payload: Any) -> None:
            if not injection.reply.done():
                injection.reply.set_result(payload)

        self.channel.register(self.callback_name, handle_reply)
        injection.task = loop.create_task(self._inject(injection))
        self.exchanges += 1
        self.logger.debug("Sending %s", injection.describe())
        try:
            payload = await asyncio.wait_for(injection.reply, timeout=self.timeout)
        except TimeoutError:
            self._record_failure(f"{injection.describe()} timed out after {self.timeout}s")
            raise TransportTimeout(
                f"no reply for {injection.describe()} within {self.timeout}s", timeout=self.timeout
            ) from None
        except TransportError as err:
            self._record_failure(str(err))
            raise
        finally:
            self._cleanup(injection, handle_reply)
        self.last_error = None
        self.last_success_at = datetime.now(tz=UTC)
        return payload

    async def _inject(self, injection: _Injection) -> None:
        try:
            async with self.session.get(self.base_url, params=injection.query) as resp:
                body = await resp.text()
                if resp.status >= 400:
                    raise TransportError(
                        f"{injection.describe()} failed: HTTP {resp.status}", reason="http_status"
                    )
            payload = parse_jsonp(body, self.callback_name)
        except TransportError as err:
            self._reject(injection, err)
            return
        except (ClientError, TimeoutError, UnicodeDecodeError) as err:
            self._reject(
                injection,
                TransportError(f"{injection.describe()} failed to load: {err}", reason="network"),
            )
            return
        if injection.detached:
            self.logger.debug("Ignoring late reply for %s", injection.describe())
            return
        self.channel.deliver(self.callback_name, payload)

    def _reject(self, injection: _Injection, err: TransportError) -> None:
        if injection.detached or injection.reply.done():
            self.logger.debug("Ignoring late failure for %s: %s", injection.describe(), err)
            return
        injection.reply.set_exception(err)

    def _cleanup(self, injection: _Injection, handler: ReplyHandler) -> None:
        injection.detached = True
        self.channel.unregister(self.callback_name, handler)
        task = injection.task
        if task is not None and not task.done():
            self._abandoned.add(task)
            task.add_done_callback(self._abandoned.discard)

    def _record_failure(self, message: str) -> None:
        self.failures += 1
        self.last_error = message
        self.logger.warning("Transport failure: %s", message)

    def status(self) -> dict[str, Any]:
        return {
            "url": self.base_url,
            "busy": self.busy,
            "exchanges": self.exchanges,
            "failures": self.failures,
            "abandoned": self.abandoned,
            "last_error": self.last_error,
            "last_success_at": self.last_success_at.isoformat() if self.last_success_at else None,
        }


def _open_gate_after(previous: asyncio.Future | None, gate: asyncio.Future) -> None:
    if previous is None or previous.done():
        if not gate.done():
            gate.set_result(None)
        return

    def _release(_fut: asyncio.Future) -> None:
        if not gate.done():
            gate.set_result(None)

    previous.add_done_callback(_release)


__all__ = ["JsonpTransport", "ReplyChannel", "encode_params", "parse_jsonp"]
