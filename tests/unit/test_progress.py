"""Tests for the progress bus."""

import asyncio
import logging

import pytest

from conformance_harness.progress import ProgressBus, ProgressEvent, log_progress
from conformance_harness.testing.factories import TestResultFactory


def event(instance_id: str, completed: int) -> ProgressEvent:
    return ProgressEvent(
        instance_id=instance_id,
        sequence_name="Discovery",
        completed_count=completed,
        total_count=3,
        last_outcome="pass",
        result=TestResultFactory.build(),
    )


async def test_subscribers_receive_events_for_their_instance() -> None:
    """Delivers only the subscribed instance's events, in order."""
    bus = ProgressBus()
    subscription = bus.subscribe("instance-1")
    first = asyncio.ensure_future(anext(subscription))
    await asyncio.sleep(0)

    await bus(event("instance-2", 1))
    await bus(event("instance-1", 1))
    await bus(event("instance-1", 2))

    received = [await first, await anext(subscription)]
    await subscription.aclose()

    assert [e.instance_id for e in received] == ["instance-1", "instance-1"]
    assert [e.completed_count for e in received] == [1, 2]


async def test_publish_without_subscribers() -> None:
    """Drops events nobody listens to."""
    await ProgressBus().publish(event("instance-1", 1))


async def test_closing_subscription_unregisters_queue() -> None:
    """Removes the queue when the iterator is closed."""
    bus = ProgressBus()
    subscription = bus.subscribe("instance-1")
    pending = asyncio.ensure_future(anext(subscription))
    await asyncio.sleep(0)
    await bus.publish(event("instance-1", 1))
    await pending

    await subscription.aclose()

    assert bus._subscribers == {}


def test_log_progress(caplog: pytest.LogCaptureFixture) -> None:
    """Logs the position and outcome of the finished test."""
    progress = event("instance-1", 2)

    with caplog.at_level(logging.INFO):
        log_progress(progress)

    assert f"[2/3] Discovery {progress.result.id}: pass" in caplog.text


def test_event_as_dict() -> None:
    """Serializes the event with the finished test's id."""
    progress = event("instance-1", 1)

    assert progress.as_dict()["test_id"] == progress.result.id
    assert progress.as_dict()["completed_count"] == 1
