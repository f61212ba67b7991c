import asyncio
import threading

import pytest

from api_gateway.bridge.registry import CorrelationRegistry
from api_gateway.errors import DuplicateCorrelationError, TransportUnavailableError

"""
Correlation Registry tests: one waiter per topic, exactly-once delivery,
and a single winner when resolve and expire race.
"""

@pytest.mark.asyncio
async def test_resolve_delivers_payload_and_removes_entry():
    registry = CorrelationRegistry()
    pending = registry.register("appointments/make_appointment/res/abc", "abc")
    assert len(registry) == 1

    assert registry.resolve("appointments/make_appointment/res/abc", b'{"status": 201}') is True

    assert await asyncio.wait_for(pending.future, timeout=1) == b'{"status": 201}'
    assert len(registry) == 0
    assert pending.correlation_id == "abc"


@pytest.mark.asyncio
async def test_register_rejects_duplicate_topic():
    registry = CorrelationRegistry()
    registry.register("t/res/1")

    with pytest.raises(DuplicateCorrelationError) as exc_info:
        registry.register("t/res/1")

    assert exc_info.value.topic == "t/res/1"
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_unmatched_message_is_dropped_without_mutation():
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")

    assert registry.resolve("t/res/unknown", b"{}") is False

    assert registry.pending_topics() == ["t/res/1"]
    assert not pending.future.done()


@pytest.mark.asyncio
async def test_second_reply_on_same_topic_is_dropped():
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")

    assert registry.resolve("t/res/1", b"first") is True
    assert registry.resolve("t/res/1", b"second") is False

    assert await pending.future == b"first"


@pytest.mark.asyncio
async def test_expire_is_idempotent():
    registry = CorrelationRegistry()
    registry.register("t/res/1")

    assert registry.expire("t/res/1") is True
    assert registry.expire("t/res/1") is False
    assert "t/res/1" not in registry


@pytest.mark.asyncio
async def test_resolve_after_expire_loses_the_race():
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")

    assert registry.expire("t/res/1") is True
    assert registry.resolve("t/res/1", b"late") is False
    assert not pending.future.done()


@pytest.mark.asyncio
async def test_expire_after_resolve_loses_the_race():
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")

    assert registry.resolve("t/res/1", b"reply") is True
    assert registry.expire("t/res/1") is False
    assert await pending.future == b"reply"


@pytest.mark.asyncio
async def test_resolve_from_foreign_thread_is_handed_to_the_loop():
    """A transport calling back from its own network thread still reaches the waiter."""
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")

    results = []
    worker = threading.Thread(target=lambda: results.append(registry.resolve("t/res/1", b"from-thread")))
    worker.start()
    worker.join()

    assert results == [True]
    assert await asyncio.wait_for(pending.future, timeout=1) == b"from-thread"


@pytest.mark.asyncio
async def test_concurrent_resolve_and_expire_have_exactly_one_winner():
    registry = CorrelationRegistry()
    topics = [f"t/res/{i}" for i in range(200)]
    for topic in topics:
        registry.register(topic)

    outcomes = {"resolved": 0, "expired": 0}
    lock = threading.Lock()
    barrier = threading.Barrier(2)

    def resolver():
        barrier.wait()
        for topic in topics:
            if registry.resolve(topic, b"x"):
                with lock:
                    outcomes["resolved"] += 1

    def expirer():
        barrier.wait()
        for topic in reversed(topics):
            if registry.expire(topic):
                with lock:
                    outcomes["expired"] += 1

    threads = [threading.Thread(target=resolver), threading.Thread(target=expirer)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert outcomes["resolved"] + outcomes["expired"] == len(topics)
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_fail_all_delivers_error_to_every_waiter():
    registry = CorrelationRegistry()
    first = registry.register("t/res/1")
    second = registry.register("t/res/2")

    assert registry.fail_all(TransportUnavailableError("shutting down")) == 2

    for pending in (first, second):
        with pytest.raises(TransportUnavailableError):
            await pending.future
    assert len(registry) == 0


@pytest.mark.asyncio
async def test_delivery_to_cancelled_waiter_is_ignored():
    registry = CorrelationRegistry()
    pending = registry.register("t/res/1")
    pending.future.cancel()

    assert registry.resolve("t/res/1", b"reply") is True
    assert pending.future.cancelled()


@pytest.mark.asyncio
async def test_fail_delivers_error_to_one_waiter_only():
    registry = CorrelationRegistry()
    failed = registry.register("t/res/1")
    untouched = registry.register("t/res/2")

    assert registry.fail("t/res/1", TransportUnavailableError("connection lost")) is True
    assert registry.fail("t/res/1", TransportUnavailableError("again")) is False

    with pytest.raises(TransportUnavailableError, match="connection lost"):
        await failed.future
    assert not untouched.future.done()
    assert registry.pending_topics() == ["t/res/2"]


@pytest.mark.asyncio
async def test_fail_all_skips_waiters_already_resolved():
    registry = CorrelationRegistry()
    resolved = registry.register("t/res/1")
    registry.register("t/res/2")
    registry.resolve("t/res/1", b"reply")

    assert registry.fail_all(TransportUnavailableError("shutting down")) == 1
    assert await resolved.future == b"reply"
