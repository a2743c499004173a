"""
Feed event fan-out.

State transitions push FeedEvents without awaiting; one worker drains the
queue, keeps a short history for the dashboard API, runs in-process handlers
and posts to subscribed webhooks with retries.
"""

import asyncio
import aiohttp
import logging
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from models import EventType, FeedEvent, WebhookConfig


logger = logging.getLogger(__name__)

HISTORY_SIZE = 200


def webhook_payload(event: FeedEvent) -> Dict[str, Any]:
    return {
        "event_id": event.event_id,
        "event_type": event.event_type.value,
        "feed_index": event.feed_index,
        "feed_name": event.data.get("name"),
        "timestamp": event.timestamp.isoformat(),
        "data": event.data,
    }


def wants(webhook: WebhookConfig, event: FeedEvent) -> bool:
    if event.event_type not in webhook.events:
        return False
    return webhook.feeds is None or event.feed_index in webhook.feeds


class EventManager:
    def __init__(self, history_size: int = HISTORY_SIZE):
        self.webhooks: List[WebhookConfig] = []
        self.event_queue: asyncio.Queue = asyncio.Queue()
        self.event_handlers: List[Callable] = []
        self.history: Deque[FeedEvent] = deque(maxlen=history_size)
        self._running = False
        self._worker_task: Optional[asyncio.Task] = None

    async def start(self):
        self._running = True
        self._worker_task = asyncio.create_task(self._process_events())
        logger.info("Event manager started")

    async def stop(self):
        self._running = False
        if self._worker_task:
            self._worker_task.cancel()
            try:
                await self._worker_task
            except asyncio.CancelledError:
                pass
            self._worker_task = None
        logger.info("Event manager stopped")

    def add_webhook(self, webhook: WebhookConfig):
        # Re-adding a URL replaces its subscription
        self.webhooks = [wh for wh in self.webhooks if str(wh.url) != str(webhook.url)]
        self.webhooks.append(webhook)
        scope = "all feeds" if webhook.feeds is None else f"feeds {webhook.feeds}"
        logger.info(f"Added webhook for {webhook.url} ({scope})")

    def remove_webhook(self, webhook_url: str) -> bool:
        before = len(self.webhooks)
        self.webhooks = [wh for wh in self.webhooks if str(wh.url) != webhook_url]
        removed = len(self.webhooks) != before
        if removed:
            logger.info(f"Removed webhook {webhook_url}")
        return removed

    def add_handler(self, handler: Callable):
        self.event_handlers.append(handler)
        logger.info(f"Added event handler: {handler.__name__}")

    async def emit_event(self, event: FeedEvent):
        await self.event_queue.put(event)

    def emit_nowait(self, event: FeedEvent):
        """Emit from synchronous code such as a state transition."""
        self.event_queue.put_nowait(event)
        logger.debug(f"Queued {event.event_type.value} for feed {event.feed_index}")

    def recent(self, feed_index: Optional[int] = None, event_type: Optional[EventType] = None,
               limit: int = 50) -> List[FeedEvent]:
        """Newest first."""
        events = [
            e for e in reversed(self.history)
            if (feed_index is None or e.feed_index == feed_index)
            and (event_type is None or e.event_type == event_type)
        ]
        return events[:limit]

    async def _process_events(self):
        while self._running:
            try:
                try:
                    event = await asyncio.wait_for(self.event_queue.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                await self._handle_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error processing event: {e}")

    async def _handle_event(self, event: FeedEvent):
        self.history.append(event)
        for handler in self.event_handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event)
                else:
                    handler(event)
            except Exception as e:
                logger.error(f"Error in event handler {handler.__name__}: {e}")

        await self._send_webhooks(event)

    async def _send_webhooks(self, event: FeedEvent):
        targets = [wh for wh in self.webhooks if wants(wh, event)]
        if targets:
            await asyncio.gather(
                *(self._send_webhook(wh, event) for wh in targets), return_exceptions=True)

    async def _send_webhook(self, webhook: WebhookConfig, event: FeedEvent) -> bool:
        payload = webhook_payload(event)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": "Crew-Dashboard-Webhook/1.0",
            **webhook.headers
        }

        for attempt in range(webhook.retry_attempts + 1):
            try:
                async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=webhook.timeout)) as session:
                    async with session.post(str(webhook.url), json=payload, headers=headers) as response:
                        if response.status < 400:
                            logger.debug(f"Delivered {event.event_type.value} to {webhook.url}")
                            return True
                        logger.warning(f"Webhook {webhook.url} answered {response.status}")
            except Exception as e:
                logger.warning(f"Webhook attempt {attempt + 1} failed for {webhook.url}: {e}")

            if attempt < webhook.retry_attempts:
                await asyncio.sleep(2 ** attempt)

        logger.error(f"Giving up on webhook {webhook.url} after {webhook.retry_attempts + 1} attempts")
        return False
