"""Statistics for the topic router."""

from __future__ import annotations

import threading


class RouterStats:
    """Contadores del router de topics."""

    def __init__(self):
        self.received = 0
        self.handled = 0
        self.malformed = 0
        self.unroutable = 0
        self.failed = 0
        self.last_message_at: float = 0
        self._lock = threading.Lock()

    def incr(self, name: str) -> None:
        with self._lock:
            setattr(self, name, getattr(self, name) + 1)

    def __str__(self) -> str:
        return (
            f"Stats: received={self.received} handled={self.handled} "
            f"malformed={self.malformed} unroutable={self.unroutable} failed={self.failed}"
        )

    def to_dict(self) -> dict:
        """Convert stats to dictionary."""
        return {
            "received": self.received,
            "handled": self.handled,
            "malformed": self.malformed,
            "unroutable": self.unroutable,
            "failed": self.failed,
            "last_message_at": self.last_message_at,
        }
