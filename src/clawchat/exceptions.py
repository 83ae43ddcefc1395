"""
exceptions.py — clawchat Unified Error Hierarchy

All clawchat-specific exceptions live here. The gateway client raises typed
subclasses of ClawChatError — never bare Exception.

Import from here, not from individual modules:
    from clawchat.exceptions import HandshakeRejectedError, TransportClosedError

Hierarchy:
    ClawChatError
    └── GatewayError
        ├── AlreadyConnectingError
        ├── ConnectionTimeoutError
        ├── TransportError
        ├── HandshakeRejectedError
        ├── RequestFailedError
        ├── MaxReconnectAttemptsError
        └── TransportClosedError
"""

from __future__ import annotations


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class ClawChatError(Exception):
    """Base class for all clawchat exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Gateway connection layer
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(ClawChatError):
    """Base for gateway connection and request errors."""


class AlreadyConnectingError(GatewayError):
    """connect() was called while another attempt is still in flight."""

    def __init__(self, message: str = "Already connecting"):
        super().__init__(message)


class ConnectionTimeoutError(GatewayError):
    """The transport did not open within the connect timeout."""

    def __init__(self, message: str = "Connection timeout"):
        super().__init__(message)


class TransportError(GatewayError):
    """The underlying WebSocket reported a transport-level failure."""

    def __init__(self, message: str = "WebSocket error"):
        super().__init__(message)


class HandshakeRejectedError(GatewayError):
    """The gateway answered the connect handshake with ok=false."""

    def __init__(self, message: str = "Connect failed"):
        self.message = message
        super().__init__(message)


class RequestFailedError(GatewayError):
    """A non-handshake request was answered with ok=false."""

    def __init__(self, message: str = "request failed", method: str | None = None):
        self.message = message
        self.method = method
        super().__init__(message)


class MaxReconnectAttemptsError(GatewayError):
    """Automatic reconnection gave up after the configured number of tries."""

    def __init__(self, message: str = "Max reconnection attempts reached"):
        super().__init__(message)


class TransportClosedError(GatewayError):
    """The connection closed while requests were still waiting for a reply."""

    def __init__(self, code: int, reason: str = "closed"):
        self.code = code
        self.reason = reason
        super().__init__(f"gateway closed ({code}): {reason}")
