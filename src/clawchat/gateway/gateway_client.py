"""
gateway/gateway_client.py — Async Gateway Client

Persistent WebSocket client for an OpenClaw agent gateway (protocol v3).
One client owns at most one transport at a time. It runs the connect
handshake, correlates request/response pairs over the shared connection,
and fans streamed chat events out to subscribers.

Usage:
    async with GatewayClient("ws://127.0.0.1:18789", auth_token=token) as client:
        client.on_chat_event(lambda ev: print(ev.stream_text))
        history = await client.load_history()
        client.send("Hello")

Handshake sequencing:
    open ─▶ AWAITING_HANDSHAKE ─┬─ connect.challenge ─▶ HANDSHAKE_SENT ─▶ READY
                                └─ 750 ms timer ──────▶ HANDSHAKE_SENT ─▶ READY
    Whichever trigger fires first sends the single `connect` request; the
    other one becomes a no-op.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

import websockets

from clawchat import __version__
from clawchat.config.settings import Settings, resolve_gateway_url
from clawchat.exceptions import (
    AlreadyConnectingError,
    ConnectionTimeoutError,
    GatewayError,
    HandshakeRejectedError,
    MaxReconnectAttemptsError,
    RequestFailedError,
    TransportClosedError,
    TransportError,
)
from clawchat.gateway.protocol import (
    CLOSE_ABNORMAL,
    CLOSE_NORMAL,
    CLOSE_SERVICE_RESTART,
    ChatMessage,
    ChatState,
    ChatStreamEvent,
    ConnectionState,
    EventName,
    FrameType,
    Method,
    RequestFrame,
    chat_event_from_payload,
    chat_message_from_history,
    make_chat_send_params,
    make_connect_params,
    make_history_params,
    parse_frame,
    response_error_message,
)
from clawchat.observability.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")
Unsubscribe = Callable[[], None]
TransportFactory = Callable[[str], Awaitable[Any]]

DEFAULT_GATEWAY_URL = "ws://127.0.0.1:18789"


class ConnectionPhase(str, Enum):
    """Internal connection state machine."""
    IDLE               = "idle"
    CONNECTING         = "connecting"
    AWAITING_HANDSHAKE = "awaiting_handshake"
    HANDSHAKE_SENT     = "handshake_sent"
    READY              = "ready"
    CLOSED             = "closed"


def backoff_delay(attempt: int, base_delay: float = 2.0) -> float:
    """Delay in seconds before reconnect `attempt` (1-based)."""
    return base_delay * 2 ** (attempt - 1)


async def _open_websocket(url: str) -> Any:
    # open_timeout=None: the client enforces its own open timeout
    return await websockets.connect(url, max_size=2**20, open_timeout=None)


@dataclass
class _PendingRequest:
    method: str
    future: asyncio.Future


class _HandlerSet(Generic[T]):
    """Insertion-ordered subscriber set, safe to unsubscribe from during dispatch."""

    def __init__(self, channel: str):
        self._channel = channel
        self._handlers: dict[Callable[[T], None], None] = {}

    def __len__(self) -> int:
        return len(self._handlers)

    def add(self, handler: Callable[[T], None]) -> Unsubscribe:
        self._handlers[handler] = None

        def unsubscribe() -> None:
            self._handlers.pop(handler, None)

        return unsubscribe

    def emit(self, value: T) -> None:
        for handler in list(self._handlers):
            try:
                handler(value)
            except Exception:
                log.error(
                    "gateway_client.handler_error",
                    channel=self._channel,
                    exc_info=True,
                )


class GatewayClient:
    """
    Async WebSocket client for the agent gateway.

    Async context manager — connects on enter, disconnects on exit.
    All callbacks run on the event loop that called connect().
    """

    def __init__(
        self,
        url: str = DEFAULT_GATEWAY_URL,
        auth_token: Optional[str] = None,
        *,
        client_id: str = "webchat-ui",
        client_version: str = __version__,
        platform: str = "web",
        mode: str = "webchat",
        handshake_delay: float = 0.75,
        open_timeout: float = 15.0,
        reconnect_base_delay: float = 2.0,
        max_reconnect_attempts: int = 5,
        connect_transport: Optional[TransportFactory] = None,
    ):
        self._url = url
        self._auth_token = auth_token
        self._client_id = client_id
        self._client_version = client_version
        self._platform = platform
        self._mode = mode
        self._handshake_delay = handshake_delay
        self._open_timeout = open_timeout
        self._reconnect_base_delay = reconnect_base_delay
        self._max_reconnect_attempts = max_reconnect_attempts
        self._connect_transport = connect_transport or _open_websocket

        self._ws: Any = None
        self._reader_task: Optional[asyncio.Task] = None
        self._phase = ConnectionPhase.IDLE
        self._state = ConnectionState()

        # Per-attempt handshake bookkeeping
        self._connecting = False
        self._attempt: Optional[asyncio.Future] = None
        self._handshake_sent = False
        self._handshake_timer: Optional[asyncio.TimerHandle] = None
        self._challenge_nonce: Optional[str] = None

        self._pending: dict[str, _PendingRequest] = {}
        self._reconnect_attempts = 0
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background: set[asyncio.Task] = set()

        self._message_handlers: _HandlerSet[ChatMessage] = _HandlerSet("message")
        self._state_handlers: _HandlerSet[ConnectionState] = _HandlerSet("state")
        self._chat_event_handlers: _HandlerSet[ChatStreamEvent] = _HandlerSet("chat_event")

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        host: Optional[str] = None,
        **overrides: Any,
    ) -> "GatewayClient":
        """Build a client from loaded settings, resolving the endpoint for `host`."""
        kwargs: dict[str, Any] = {
            "url": resolve_gateway_url(settings, host),
            "auth_token": settings.openclaw_token,
            "client_id": settings.client.id,
            "client_version": settings.client.version,
            "platform": settings.client.platform,
            "mode": settings.client.mode,
            "handshake_delay": settings.gateway.handshake_delay_seconds,
            "open_timeout": settings.gateway.open_timeout_seconds,
            "reconnect_base_delay": settings.reconnect.base_delay_seconds,
            "max_reconnect_attempts": settings.reconnect.max_attempts,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    async def __aenter__(self) -> "GatewayClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.disconnect()

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def url(self) -> str:
        return self._url

    @property
    def phase(self) -> ConnectionPhase:
        return self._phase

    @property
    def is_ready(self) -> bool:
        return self._ws is not None and self._phase is ConnectionPhase.READY

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def pending_requests(self) -> int:
        return len(self._pending)

    def get_state(self) -> ConnectionState:
        """Return the most recently published connection state."""
        return self._state

    def set_auth_token(self, token: Optional[str]) -> None:
        """Replace the bearer token sent with the next handshake."""
        self._auth_token = token

    # ─────────────────────────────────────────────────────────────────────────
    # Subscriptions
    # ─────────────────────────────────────────────────────────────────────────

    def on_message(self, handler: Callable[[ChatMessage], None]) -> Unsubscribe:
        return self._message_handlers.add(handler)

    def on_state_change(self, handler: Callable[[ConnectionState], None]) -> Unsubscribe:
        return self._state_handlers.add(handler)

    def on_chat_event(self, handler: Callable[[ChatStreamEvent], None]) -> Unsubscribe:
        return self._chat_event_handlers.add(handler)

    def _emit_state(self, state: ConnectionState) -> None:
        self._state = state
        self._state_handlers.emit(state)

    def _set_phase(self, phase: ConnectionPhase) -> None:
        if phase is not self._phase:
            log.debug("gateway_client.phase", old=self._phase.value, new=phase.value)
            self._phase = phase

    # ─────────────────────────────────────────────────────────────────────────
    # Connection lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """
        Open the transport and complete the handshake.

        Raises AlreadyConnectingError immediately if an attempt is in flight,
        otherwise ConnectionTimeoutError, TransportError, HandshakeRejectedError
        or TransportClosedError when the attempt fails.
        """
        if self._connecting:
            raise AlreadyConnectingError()
        self._connecting = True

        self._cancel_reconnect()
        await self._teardown(CLOSE_NORMAL, "cleanup")
        self._handshake_sent = False
        self._challenge_nonce = None

        loop = asyncio.get_running_loop()
        attempt: asyncio.Future = loop.create_future()
        self._attempt = attempt
        self._set_phase(ConnectionPhase.CONNECTING)
        self._emit_state(ConnectionState(connecting=True))
        log.info("gateway_client.connecting", url=self._url)

        try:
            ws = await asyncio.wait_for(
                self._connect_transport(self._url), timeout=self._open_timeout
            )
        except asyncio.TimeoutError:
            log.warning("gateway_client.open_timeout", url=self._url, timeout=self._open_timeout)
            self._fail_attempt(attempt, ConnectionTimeoutError())
            self._set_phase(ConnectionPhase.CLOSED)
        except (OSError, websockets.WebSocketException) as e:
            log.warning("gateway_client.open_failed", url=self._url, error=str(e))
            self._fail_attempt(attempt, TransportError())
            self._set_phase(ConnectionPhase.CLOSED)
        except BaseException:
            self._abandon_attempt(attempt)
            raise
        else:
            if attempt.done():
                # disconnect() ran while the transport was opening
                await self._close_quietly(ws, CLOSE_NORMAL, "cleanup")
            else:
                self._ws = ws
                self._set_phase(ConnectionPhase.AWAITING_HANDSHAKE)
                self._reader_task = asyncio.create_task(self._reader_loop(ws))
                self._handshake_timer = loop.call_later(
                    self._handshake_delay, self._on_handshake_timer
                )

        try:
            await attempt
        except asyncio.CancelledError:
            self._abandon_attempt(attempt)
            raise

    async def disconnect(self) -> None:
        """Close the connection on purpose. Never triggers a reconnect."""
        self._cancel_reconnect()
        await self._teardown(CLOSE_NORMAL, "Client disconnect")
        self._connecting = False
        self._emit_state(ConnectionState())
        log.info("gateway_client.disconnected", url=self._url)

    def _fail_attempt(self, attempt: asyncio.Future, exc: GatewayError) -> None:
        """Settle `attempt` with `exc` if it is still the current attempt."""
        if attempt is not self._attempt or attempt.done():
            return
        self._attempt = None
        self._connecting = False
        self._emit_state(ConnectionState(error=str(exc)))
        attempt.set_exception(exc)

    def _abandon_attempt(self, attempt: asyncio.Future) -> None:
        """The caller of connect() went away; release the in-flight guard."""
        if attempt is self._attempt:
            self._attempt = None
            self._connecting = False

    async def _teardown(self, code: int, reason: str) -> None:
        """Drop the current transport without scheduling a reconnect."""
        self._cancel_handshake_timer()

        ws, self._ws = self._ws, None
        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        self._reject_pending(code, reason)
        if self._attempt is not None:
            self._fail_attempt(self._attempt, TransportClosedError(code, reason))
        if ws is not None:
            await self._close_quietly(ws, code, reason)
        self._set_phase(ConnectionPhase.IDLE)

    async def _close_quietly(self, ws: Any, code: int, reason: str) -> None:
        try:
            await ws.close(code, reason)
        except (OSError, websockets.WebSocketException) as e:
            log.debug("gateway_client.close_error", error=str(e))

    # ─────────────────────────────────────────────────────────────────────────
    # Handshake
    # ─────────────────────────────────────────────────────────────────────────

    def _on_handshake_timer(self) -> None:
        self._handshake_timer = None
        self._begin_handshake()

    def _cancel_handshake_timer(self) -> None:
        if self._handshake_timer is not None:
            self._handshake_timer.cancel()
            self._handshake_timer = None

    def _begin_handshake(self) -> None:
        # Exactly one handshake per attempt, whichever trigger comes first
        if self._handshake_sent or self._ws is None or self._attempt is None:
            return
        self._handshake_sent = True
        self._cancel_handshake_timer()
        self._set_phase(ConnectionPhase.HANDSHAKE_SENT)
        self._spawn(self._handshake(self._attempt))

    async def _handshake(self, attempt: asyncio.Future) -> None:
        params = make_connect_params(
            client_id=self._client_id,
            client_version=self._client_version,
            platform=self._platform,
            mode=self._mode,
            token=self._auth_token,
        )
        try:
            await self.request(Method.CONNECT.value, params)
        except RequestFailedError as e:
            log.warning("gateway_client.handshake_rejected", url=self._url, error=e.message)
            self._fail_attempt(attempt, HandshakeRejectedError(e.message))
            return
        except GatewayError as e:
            self._fail_attempt(attempt, e)
            return

        if attempt is not self._attempt or attempt.done():
            return
        self._attempt = None
        self._connecting = False
        self._reconnect_attempts = 0
        self._set_phase(ConnectionPhase.READY)
        self._emit_state(ConnectionState(connected=True))
        log.info(
            "gateway_client.connected",
            url=self._url,
            challenged=self._challenge_nonce is not None,
        )
        attempt.set_result(None)

    # ─────────────────────────────────────────────────────────────────────────
    # Reader loop
    # ─────────────────────────────────────────────────────────────────────────

    async def _reader_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except websockets.ConnectionClosed:
            pass
        except (OSError, websockets.WebSocketException) as e:
            self._on_transport_error(e)

        # Cancellation from _teardown() skips this: only far-end closes land here
        if ws is self._ws:
            code = getattr(ws, "close_code", None) or CLOSE_ABNORMAL
            reason = getattr(ws, "close_reason", None) or ""
            self._on_close(code, reason)

    def _on_transport_error(self, exc: Exception) -> None:
        log.warning("gateway_client.transport_error", url=self._url, error=str(exc))
        if self._attempt is not None:
            self._fail_attempt(self._attempt, TransportError())
        else:
            self._emit_state(ConnectionState(error=str(TransportError())))

    def _on_close(self, code: int, reason: str) -> None:
        self._ws = None
        self._reader_task = None
        self._cancel_handshake_timer()
        self._set_phase(ConnectionPhase.CLOSED)
        self._reject_pending(code, reason or "closed")
        log.info("gateway_client.closed", url=self._url, code=code, reason=reason)

        if self._attempt is not None:
            self._fail_attempt(self._attempt, TransportClosedError(code, reason or "closed"))
        else:
            self._connecting = False
            self._emit_state(ConnectionState())

        if code not in (CLOSE_NORMAL, CLOSE_SERVICE_RESTART):
            self._schedule_reconnect()

    def _handle_frame(self, raw: Any) -> None:
        frame = parse_frame(raw)
        if frame is None:
            log.debug("gateway_client.malformed_frame")
            return

        kind = frame.get("type")
        if kind == FrameType.EVENT.value:
            self._handle_event(frame)
        elif kind == FrameType.RESPONSE.value:
            self._handle_response(frame)

    def _handle_event(self, frame: dict[str, Any]) -> None:
        name = frame.get("event")
        payload = frame.get("payload")
        if not isinstance(payload, dict):
            payload = {}

        if name == EventName.CONNECT_CHALLENGE.value:
            nonce = payload.get("nonce")
            if isinstance(nonce, str) and nonce:
                self._challenge_nonce = nonce
                self._begin_handshake()
        elif name == EventName.CHAT.value:
            self._handle_chat(payload)

    def _handle_chat(self, payload: dict[str, Any]) -> None:
        event = chat_event_from_payload(payload)
        self._chat_event_handlers.emit(event)

        if event.state is ChatState.FINAL and event.stream_text:
            message = payload.get("message")
            model = message.get("model") if isinstance(message, dict) else None
            self._message_handlers.emit(ChatMessage.assistant(
                event.stream_text,
                id=event.run_id,
                model=model if isinstance(model, str) else None,
            ))
        elif event.state is ChatState.ERROR:
            self._message_handlers.emit(
                ChatMessage.system("Error: " + (event.error_message or "Unknown error"))
            )

    def _handle_response(self, frame: dict[str, Any]) -> None:
        req_id = frame.get("id")
        if not isinstance(req_id, str):
            return
        pending = self._pending.pop(req_id, None)
        if pending is None or pending.future.done():
            return
        if frame.get("ok"):
            pending.future.set_result(frame.get("payload"))
        else:
            pending.future.set_exception(
                RequestFailedError(response_error_message(frame), method=pending.method)
            )

    def _reject_pending(self, code: int, reason: str) -> None:
        pending, self._pending = self._pending, {}
        for req in pending.values():
            if not req.future.done():
                req.future.set_exception(TransportClosedError(code, reason))
        if pending:
            log.debug("gateway_client.pending_rejected", count=len(pending), code=code)

    # ─────────────────────────────────────────────────────────────────────────
    # Reconnection
    # ─────────────────────────────────────────────────────────────────────────

    def _schedule_reconnect(self) -> None:
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return
        if self._reconnect_attempts >= self._max_reconnect_attempts:
            err = MaxReconnectAttemptsError()
            log.warning(
                "gateway_client.reconnect_exhausted",
                url=self._url,
                attempts=self._reconnect_attempts,
            )
            self._emit_state(ConnectionState(error=str(err)))
            return

        self._reconnect_attempts += 1
        delay = backoff_delay(self._reconnect_attempts, self._reconnect_base_delay)
        log.info(
            "gateway_client.reconnect_scheduled",
            url=self._url,
            attempt=self._reconnect_attempts,
            delay=delay,
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        try:
            await self.connect()
        except (ConnectionTimeoutError, TransportError):
            # The transport never opened, so no close event will follow
            self._schedule_reconnect()
        except GatewayError as e:
            log.warning("gateway_client.reconnect_failed", url=self._url, error=str(e))

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    # ─────────────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────────────

    async def request(self, method: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        Send a request frame and wait for the matching response payload.

        No timeout: the call settles when the gateway answers or the
        connection closes (TransportClosedError).
        """
        ws = self._ws
        if ws is None:
            raise TransportError("gateway not connected")

        frame = RequestFrame(method=method, params=params or {})
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[frame.id] = _PendingRequest(method=method, future=future)
        try:
            await ws.send(frame.to_json())
        except websockets.ConnectionClosed as e:
            self._pending.pop(frame.id, None)
            raise TransportClosedError(
                getattr(ws, "close_code", None) or CLOSE_ABNORMAL,
                getattr(ws, "close_reason", None) or "closed",
            ) from e
        except OSError as e:
            self._pending.pop(frame.id, None)
            raise TransportError(str(e)) from e

        log.debug("gateway_client.request_sent", method=method, id=frame.id)
        return await future

    def send(self, content: str, session_key: str = "main") -> bool:
        """
        Fire-and-forget a `chat.send`. Returns False without side effects
        when the connection is not ready; True once the request is dispatched.
        """
        if not self.is_ready:
            return False
        self._spawn(self._send_chat(content, session_key))
        return True

    async def _send_chat(self, content: str, session_key: str) -> None:
        try:
            await self.request(
                Method.CHAT_SEND.value, make_chat_send_params(content, session_key)
            )
        except GatewayError as e:
            log.warning("gateway_client.send_failed", session_key=session_key, error=str(e))

    async def load_history(self, session_key: str = "main", limit: int = 100) -> list[ChatMessage]:
        """Fetch chat history. Any failure yields an empty list."""
        if not self.is_ready:
            log.warning("gateway_client.history_failed", error="gateway not connected")
            return []
        try:
            payload = await self.request(
                Method.CHAT_HISTORY.value, make_history_params(session_key, limit)
            )
        except GatewayError as e:
            log.warning("gateway_client.history_failed", session_key=session_key, error=str(e))
            return []

        raw_messages = payload.get("messages") if isinstance(payload, dict) else None
        if not isinstance(raw_messages, list):
            return []
        return [chat_message_from_history(m) for m in raw_messages if isinstance(m, dict)]

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
