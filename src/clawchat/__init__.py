"""clawchat — async chat client for an OpenClaw agent gateway."""

__version__ = "0.1.0"
