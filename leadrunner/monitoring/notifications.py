#!/usr/bin/env python3
"""
Progress feed and notifications.

Design goals:
- Every human-readable progress message lands in one bounded feed a UI can read
  or subscribe to.
- Terminal notifications (job start/finish/cancel, auth errors) also go to
  Slack/Discord webhooks when configured.
- Non-blocking: webhook calls are best-effort and never raise.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Set

import aiohttp

logger = logging.getLogger(__name__)


@dataclass
class ProgressEvent:
    source: str
    message: str
    level: str = "info"
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "source": self.source,
            "level": self.level,
            "message": self.message,
            "data": self.data,
        }


class ProgressFeed:
    def __init__(self, history: int = 500, subscriber_buffer: int = 100):
        self._history: Deque[ProgressEvent] = deque(maxlen=history)
        self._subscribers: Set[asyncio.Queue] = set()
        self.subscriber_buffer = subscriber_buffer

    def publish(self, source: str, message: str, level: str = "info", **data: Any) -> ProgressEvent:
        event = ProgressEvent(source=source, message=message, level=level, data=data)
        self._history.append(event)
        for queue in list(self._subscribers):
            if queue.full():
                # Slow subscriber: drop its oldest event
                queue.get_nowait()
            queue.put_nowait(event)
        return event

    def recent(self, limit: int = 50, source: Optional[str] = None) -> List[ProgressEvent]:
        events = [e for e in self._history if source is None or e.source == source]
        return events[-limit:] if limit else events

    async def subscribe(self) -> AsyncIterator[ProgressEvent]:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.subscriber_buffer)
        self._subscribers.add(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)


class NotificationManager:
    def __init__(self, feed: ProgressFeed, slack_webhook_url: str = "", discord_webhook_url: str = ""):
        self.feed = feed
        self.slack_webhook_url = slack_webhook_url
        self.discord_webhook_url = discord_webhook_url

    def enabled(self) -> bool:
        return bool(self.slack_webhook_url or self.discord_webhook_url)

    async def _post_json(self, url: str, payload: dict) -> bool:
        if not url:
            return False
        try:
            timeout = aiohttp.ClientTimeout(total=12)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(url, json=payload) as resp:
                    if 200 <= resp.status < 300:
                        return True
                    text = await resp.text()
                    logger.warning(f"Webhook failed ({resp.status}): {text[:200]}")
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Webhook error: {e}")
            return False

    async def notify(self, title: str, message: str, level: str = "info", **data: Any):
        """Publish a terminal notification to the feed and any configured webhooks."""
        self.feed.publish("notification", f"{title}: {message}", level=level, title=title, **data)

        line = f"*{title}*\n{message}"
        await asyncio.gather(
            self._post_json(self.slack_webhook_url, {"text": line}) if self.slack_webhook_url else asyncio.sleep(0),
            self._post_json(self.discord_webhook_url, {"content": line}) if self.discord_webhook_url else asyncio.sleep(0),
            return_exceptions=True,
        )

        logger.info(f"Notification event: {json.dumps({'title': title, 'message': message, **data}, default=str)[:800]}")
