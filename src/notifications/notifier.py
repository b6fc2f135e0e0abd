"""
Notifier interface and the log-only implementation used by --dry-run.
"""

from typing import Protocol

import structlog

logger = structlog.get_logger(__name__)


class Notifier(Protocol):
    """Anything that can push a plain-text alert."""

    def send(self, message: str) -> bool:
        """Deliver a message; returns False when delivery failed."""
        ...


class LogNotifier:
    """Writes alerts to the log instead of sending them."""

    def __init__(self):
        self.sent: list[str] = []

    def send(self, message: str) -> bool:
        self.sent.append(message)
        logger.info("alert_message", text=message)
        return True
