"""Synchronized audio streaming: WebSocket server, clock sync, scheduler, sources and player state."""

__version__ = "0.1.0"

__all__ = ["clock", "scheduler", "source", "server", "player"]