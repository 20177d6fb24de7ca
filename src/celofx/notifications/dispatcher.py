"""Fire-and-forget ops notifications.

Notifications never block or fail a request: each delivery runs as a
background task, and delivery errors land in the dispatcher's own failure
log instead of propagating.
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Coroutine, Optional

import httpx

from celofx.notifications.telegram import TelegramNotifier

logger = logging.getLogger(__name__)


@dataclass
class DeliveryFailure:
    name: str
    error: str
    at: float = field(default_factory=time.time)


class BackgroundDispatcher:
    """Tracks background tasks and records the ones that fail."""

    def __init__(self, max_failures: int = 100):
        self._tasks: set[asyncio.Task] = set()
        self.failures: deque[DeliveryFailure] = deque(maxlen=max_failures)

    def submit(self, coro: Coroutine, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"Background task {task.get_name()} failed: {error}")
            self.failures.append(DeliveryFailure(task.get_name(), str(error)))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = 10.0) -> None:
        """Wait for in-flight tasks (shutdown and tests)."""
        if not self._tasks:
            return
        done, not_done = await asyncio.wait(set(self._tasks), timeout=timeout)
        for task in not_done:
            task.cancel()


class OpsNotifier:
    """Delivers ops events to the configured webhook and Telegram chat."""

    def __init__(
        self,
        dispatcher: BackgroundDispatcher,
        webhook_url: str = "",
        telegram: Optional[TelegramNotifier] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.dispatcher = dispatcher
        self.webhook_url = webhook_url
        self.telegram = telegram
        self.timeout = timeout
        self._transport = transport

    def notify(self, event: str, payload: dict[str, Any]) -> None:
        """Schedule delivery on every configured channel and return at once."""
        if self.webhook_url:
            self.dispatcher.submit(self._post_webhook(event, payload), f"webhook:{event}")
        if self.telegram:
            self.dispatcher.submit(self._send_telegram(event, payload), f"telegram:{event}")

    async def _post_webhook(self, event: str, payload: dict[str, Any]) -> None:
        body = {"event": event, "timestamp": int(time.time() * 1000), "payload": payload}
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            response = await client.post(self.webhook_url, json=body)
            response.raise_for_status()

    async def _send_telegram(self, event: str, payload: dict[str, Any]) -> None:
        if not await self.telegram.notify_event(event, payload):
            raise RuntimeError(f"Telegram delivery of {event} failed")
