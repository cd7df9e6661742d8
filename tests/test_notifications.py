"""
Progress feed and notification tests.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from leadrunner.monitoring.notifications import NotificationManager, ProgressFeed


@pytest.mark.unit
class TestProgressFeed:

    def test_recent_filters_by_source(self):
        feed = ProgressFeed(history=3)
        feed.publish("executor", "Processing lead 1/3")
        feed.publish("discovery", "Collecting posts...")
        feed.publish("executor", "Processing lead 2/3")
        feed.publish("executor", "Processing lead 3/3")

        assert [e.message for e in feed.recent(limit=0)] == [
            "Collecting posts...",
            "Processing lead 2/3",
            "Processing lead 3/3",
        ]
        assert [e.message for e in feed.recent(limit=1, source="executor")] == ["Processing lead 3/3"]

    @pytest.mark.asyncio
    async def test_subscriber_receives_events(self):
        feed = ProgressFeed()
        received = []

        async def consume():
            async for event in feed.subscribe():
                received.append(event.message)
                if len(received) == 2:
                    break

        consumer = asyncio.create_task(consume())
        await asyncio.sleep(0)
        assert feed.subscriber_count == 1

        feed.publish("executor", "one")
        feed.publish("executor", "two", index=1)
        await asyncio.wait_for(consumer, 1.0)

        assert received == ["one", "two"]

    @pytest.mark.asyncio
    async def test_slow_subscriber_drops_oldest(self):
        feed = ProgressFeed(subscriber_buffer=2)
        stream = feed.subscribe()
        first = asyncio.ensure_future(stream.__anext__())
        await asyncio.sleep(0)

        feed.publish("executor", "event 0")
        assert (await first).message == "event 0"

        # Nobody reads now; only the newest two stay buffered
        for i in range(1, 5):
            feed.publish("executor", f"event {i}")

        assert (await stream.__anext__()).message == "event 3"
        assert (await stream.__anext__()).message == "event 4"
        await stream.aclose()


@pytest.mark.unit
class TestNotificationManager:

    @pytest.mark.asyncio
    async def test_notify_publishes_to_feed(self):
        feed = ProgressFeed()
        notifier = NotificationManager(feed)

        await notifier.notify("Automation Finished", "Completed! 3/3 leads processed.", job_id="job-1")

        event = feed.recent(limit=1)[0]
        assert event.source == "notification"
        assert event.message == "Automation Finished: Completed! 3/3 leads processed."
        assert event.data == {"title": "Automation Finished", "job_id": "job-1"}
        assert not notifier.enabled()

    @pytest.mark.asyncio
    async def test_webhooks_called_when_configured(self):
        notifier = NotificationManager(ProgressFeed(), slack_webhook_url="https://hooks.slack.test/x",
                                       discord_webhook_url="https://discord.test/y")
        notifier._post_json = AsyncMock(return_value=True)

        await notifier.notify("Auth Error", "Please log in to run automations.", level="error")

        urls = [call.args[0] for call in notifier._post_json.await_args_list]
        assert urls == ["https://hooks.slack.test/x", "https://discord.test/y"]
        assert notifier._post_json.await_args_list[0].args[1] == {"text": "*Auth Error*\nPlease log in to run automations."}
