"""
gateway/ — OpenClaw Gateway Client

Persistent WebSocket connection to an agent gateway: connect handshake,
request/response correlation and streamed chat events.

Interfaces stay thin rendering shells that subscribe to the client and
call its public methods.
"""

from clawchat.gateway.protocol import (
    ChatMessage,
    ChatState,
    ChatStreamEvent,
    ConnectionState,
    Role,
)
from clawchat.gateway.gateway_client import ConnectionPhase, GatewayClient

__all__ = [
    "ChatMessage",
    "ChatState",
    "ChatStreamEvent",
    "ConnectionPhase",
    "ConnectionState",
    "GatewayClient",
    "Role",
]
