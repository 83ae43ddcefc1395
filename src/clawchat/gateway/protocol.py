"""
gateway/protocol.py — Gateway WebSocket Message Protocol (v3)

Typed frame schema for client↔gateway communication.
Every frame is a JSON text message with a `type` discriminator:

    req    client → gateway   {"type":"req","id":...,"method":...,"params":{...}}
    res    gateway → client   {"type":"res","id":...,"ok":bool,"payload"|"error":{...}}
    event  gateway → client   {"type":"event","event":...,"payload":{...}}
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

PROTOCOL_VERSION = 3

# WebSocket close codes that never trigger an automatic reconnect
CLOSE_NORMAL = 1000
CLOSE_SERVICE_RESTART = 1012
CLOSE_ABNORMAL = 1006


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class FrameType(str, Enum):
    REQUEST  = "req"
    RESPONSE = "res"
    EVENT    = "event"


class EventName(str, Enum):
    CONNECT_CHALLENGE = "connect.challenge"
    CHAT              = "chat"


class Method(str, Enum):
    CONNECT      = "connect"
    CHAT_SEND    = "chat.send"
    CHAT_HISTORY = "chat.history"


class Role(str, Enum):
    USER      = "user"
    ASSISTANT = "assistant"
    SYSTEM    = "system"


class ChatState(str, Enum):
    """Lifecycle tag carried by every `chat` event of a run."""
    DELTA   = "delta"
    FINAL   = "final"
    ERROR   = "error"
    ABORTED = "aborted"


def new_id() -> str:
    return str(uuid.uuid4())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ─────────────────────────────────────────────────────────────────────────────
# Frames
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class RequestFrame:
    """Outgoing request envelope. A fresh id is generated per frame."""
    method: str
    params: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=new_id)
    type: str = FrameType.REQUEST.value

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type,
            "id": self.id,
            "method": self.method,
            "params": self.params,
        })


def parse_frame(raw: str | bytes) -> Optional[dict[str, Any]]:
    """
    Parse an inbound frame. Returns None for anything that is not a JSON
    object; malformed input is never an error at this layer.
    """
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        data = json.loads(raw)
    except (TypeError, ValueError, RecursionError):
        return None
    if not isinstance(data, dict):
        return None
    return data


def response_error_message(frame: dict[str, Any]) -> str:
    error = frame.get("error")
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    return "request failed"


# ─────────────────────────────────────────────────────────────────────────────
# Text extraction
# ─────────────────────────────────────────────────────────────────────────────

def _join_text_parts(parts: list[Any]) -> str:
    return "\n".join(
        p["text"] for p in parts
        if isinstance(p, dict) and p.get("type") == "text" and isinstance(p.get("text"), str)
    )


def extract_text(message: Any) -> str:
    """
    Flatten a gateway message body into plain text.

    String content is used verbatim; a list of typed parts keeps only the
    `text` parts, joined by newlines; otherwise a top-level `text` field is
    used; otherwise the result is empty.
    """
    if not isinstance(message, dict):
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return _join_text_parts(content)
    text = message.get("text")
    if isinstance(text, str):
        return text
    return ""


# ─────────────────────────────────────────────────────────────────────────────
# Domain objects
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ChatMessage:
    id: str
    role: Role
    content: str
    timestamp: str = field(default_factory=_now_iso)
    model: Optional[str] = None

    @classmethod
    def user(cls, content: str) -> "ChatMessage":
        return cls(id=new_id(), role=Role.USER, content=content)

    @classmethod
    def assistant(
        cls, content: str, *, id: Optional[str] = None, model: Optional[str] = None
    ) -> "ChatMessage":
        return cls(id=id or new_id(), role=Role.ASSISTANT, content=content, model=model)

    @classmethod
    def system(cls, content: str) -> "ChatMessage":
        return cls(id=new_id(), role=Role.SYSTEM, content=content)

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["role"] = self.role.value
        return {k: v for k, v in d.items() if v is not None}


@dataclass(frozen=True)
class ChatStreamEvent:
    """One `chat` event of a run. Emitted to subscribers and not retained."""
    state: Optional[ChatState]
    run_id: Optional[str] = None
    stream_text: str = ""
    error_message: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in (ChatState.FINAL, ChatState.ERROR, ChatState.ABORTED)


@dataclass(frozen=True)
class ConnectionState:
    """Externally visible projection of the connection."""
    connected: bool = False
    connecting: bool = False
    error: Optional[str] = None


def _coerce_role(value: Any) -> Role:
    try:
        return Role(value)
    except ValueError:
        return Role.ASSISTANT


def chat_message_from_history(raw: dict[str, Any]) -> ChatMessage:
    """Map one entry of a `chat.history` payload into a ChatMessage."""
    content = raw.get("content")
    if isinstance(content, list):
        text = _join_text_parts(content)
    elif isinstance(content, str):
        text = content
    else:
        text = ""
    model = raw.get("model")
    sent_at = raw.get("time")
    return ChatMessage(
        id=new_id(),
        role=_coerce_role(raw.get("role") or Role.ASSISTANT.value),
        content=text,
        timestamp=sent_at if isinstance(sent_at, str) and sent_at else _now_iso(),
        model=model if isinstance(model, str) else None,
    )


def chat_event_from_payload(payload: dict[str, Any]) -> ChatStreamEvent:
    try:
        state: Optional[ChatState] = ChatState(payload.get("state"))
    except ValueError:
        state = None
    run_id = payload.get("runId")
    error_message = payload.get("errorMessage")
    return ChatStreamEvent(
        state=state,
        run_id=run_id if isinstance(run_id, str) else None,
        stream_text=extract_text(payload.get("message")),
        error_message=error_message if isinstance(error_message, str) else None,
    )


# ─────────────────────────────────────────────────────────────────────────────
# Request params
# ─────────────────────────────────────────────────────────────────────────────

def make_connect_params(
    *,
    client_id: str = "webchat-ui",
    client_version: str = "0.1.0",
    platform: str = "web",
    mode: str = "webchat",
    token: Optional[str] = None,
) -> dict[str, Any]:
    """Build the `connect` handshake params. `auth` is left out without a token."""
    params: dict[str, Any] = {
        "minProtocol": PROTOCOL_VERSION,
        "maxProtocol": PROTOCOL_VERSION,
        "client": {
            "id": client_id,
            "version": client_version,
            "platform": platform,
            "mode": mode,
            "instanceId": new_id(),
        },
        "role": "operator",
        "scopes": ["operator.admin"],
        "caps": [],
    }
    if token:
        params["auth"] = {"token": token}
    return params


def make_chat_send_params(message: str, session_key: str = "main") -> dict[str, Any]:
    return {
        "sessionKey": session_key,
        "message": message,
        "deliver": False,
        "idempotencyKey": new_id(),
    }


def make_history_params(session_key: str = "main", limit: int = 100) -> dict[str, Any]:
    return {"sessionKey": session_key, "limit": limit}
