"""
Unit test fixtures — an in-memory stand-in for the gateway's WebSocket.

FakeTransport mimics the parts of a websockets client connection the
GatewayClient uses: async send/close, async iteration over inbound frames,
and close_code/close_reason after the stream ends.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable, Optional

import pytest

from clawchat.gateway.gateway_client import GatewayClient

_EOF = object()


class FakeTransport:
    def __init__(self, url: str):
        self.url = url
        self.sent: list[dict[str, Any]] = []
        self.closed_with: Optional[tuple[int, str]] = None
        self.close_code: Optional[int] = None
        self.close_reason: Optional[str] = None
        self._inbox: asyncio.Queue = asyncio.Queue()

    # -- websockets surface ----------------------------------------------------

    async def send(self, raw: str) -> None:
        self.sent.append(json.loads(raw))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self.close_code is None:
            self.closed_with = (code, reason)
            self.close_code = code
            self.close_reason = reason
            self._inbox.put_nowait(_EOF)

    def __aiter__(self) -> "FakeTransport":
        return self

    async def __anext__(self) -> Any:
        item = await self._inbox.get()
        if item is _EOF:
            raise StopAsyncIteration
        return item

    # -- test controls ---------------------------------------------------------

    def feed(self, frame: Any) -> None:
        """Queue an inbound frame; dicts are JSON-encoded, anything else is sent raw."""
        self._inbox.put_nowait(json.dumps(frame) if isinstance(frame, dict) else frame)

    def challenge(self, nonce: str = "nonce-1") -> None:
        self.feed({"type": "event", "event": "connect.challenge", "payload": {"nonce": nonce}})

    def chat(self, **payload: Any) -> None:
        self.feed({"type": "event", "event": "chat", "payload": payload})

    def drop(self, code: int = 1006, reason: str = "") -> None:
        """Close from the gateway side."""
        self.close_code = code
        self.close_reason = reason
        self._inbox.put_nowait(_EOF)

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [f for f in self.sent if f.get("method") == method]

    def respond(
        self,
        request: dict[str, Any],
        ok: bool = True,
        payload: Any = None,
        error: Optional[str] = None,
    ) -> None:
        frame: dict[str, Any] = {"type": "res", "id": request["id"], "ok": ok}
        if ok:
            frame["payload"] = payload if payload is not None else {}
        else:
            frame["error"] = {"message": error or "request failed"}
        self.feed(frame)


class FakeGateway:
    """Transport factory handed to GatewayClient(connect_transport=...)."""

    def __init__(self):
        self.transports: list[FakeTransport] = []
        self.urls: list[str] = []
        self.refuse = False
        self.hang = False

    async def connect(self, url: str) -> FakeTransport:
        self.urls.append(url)
        if self.refuse:
            raise ConnectionRefusedError(f"connection refused: {url}")
        if self.hang:
            await asyncio.sleep(3600)
        transport = FakeTransport(url)
        self.transports.append(transport)
        return transport

    @property
    def latest(self) -> FakeTransport:
        return self.transports[-1]

    @staticmethod
    async def wait_until(predicate: Callable[[], Any], timeout: float = 2.0) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met before timeout")
            await asyncio.sleep(0.001)

    async def open_and_handshake(
        self, client: GatewayClient, *, challenge: bool = True
    ) -> FakeTransport:
        """Drive client.connect() through a successful handshake."""
        opened = len(self.transports)
        task = asyncio.create_task(client.connect())
        await self.wait_until(lambda: len(self.transports) > opened)
        transport = self.latest
        if challenge:
            transport.challenge()
        await self.wait_until(lambda: transport.requests("connect"))
        transport.respond(transport.requests("connect")[0], payload={"protocol": 3})
        await task
        return transport


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def make_client(gateway: FakeGateway):
    def _make(**kwargs: Any) -> GatewayClient:
        kwargs.setdefault("auth_token", "secret-token")
        kwargs.setdefault("handshake_delay", 5.0)
        kwargs.setdefault("open_timeout", 1.0)
        kwargs.setdefault("reconnect_base_delay", 0.001)
        return GatewayClient("ws://gateway.test", connect_transport=gateway.connect, **kwargs)
    return _make
