"""Notification sinks telling the GUI layer that changes arrived."""

import inspect
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

CHANGES_RECEIVED_EVENT = "sync:changes-received"


class ChangeNotifier(ABC):
    """Receives a notification after a push applied at least one change."""

    @abstractmethod
    async def changes_received(self, count: int, tables: list[str]) -> None:
        """Called once per push with the number of applied changes.

        Args:
            count: Number of changes applied.
            tables: Tables that received changes, in first-seen order.
        """
        ...

    @staticmethod
    def build_payload(count: int, tables: list[str]) -> dict[str, Any]:
        return {
            "event": CHANGES_RECEIVED_EVENT,
            "count": count,
            "tables": tables,
            "timestamp": datetime.now().isoformat(),
        }


class LogNotifier(ChangeNotifier):
    """Default sink: writes the event to the log."""

    async def changes_received(self, count: int, tables: list[str]) -> None:
        logger.info(f"Received {count} changes for {', '.join(tables)}")


class CallbackNotifier(ChangeNotifier):
    """Forwards the event payload to an in-process callback (sync or async)."""

    def __init__(self, callback: Callable[[dict[str, Any]], Awaitable[None] | None]):
        self.callback = callback

    async def changes_received(self, count: int, tables: list[str]) -> None:
        result = self.callback(self.build_payload(count, tables))
        if inspect.isawaitable(result):
            await result


class WebhookNotifier(ChangeNotifier):
    """Posts the event payload to the GUI shell's local HTTP endpoint."""

    def __init__(self, url: str, timeout: float = 5.0):
        """Initialize the webhook notifier.

        Args:
            url: Endpoint that accepts the JSON event payload.
            timeout: Request timeout in seconds.
        """
        self.url = url
        self.timeout = timeout

    async def changes_received(self, count: int, tables: list[str]) -> None:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.post(self.url, json=self.build_payload(count, tables))
            response.raise_for_status()
