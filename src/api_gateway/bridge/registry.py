"""
Correlation Registry.

Maps a response topic to the one caller waiting on it. This is the only
shared mutable state between concurrent calls, so every mutation goes
through `register`, `resolve`, `fail` and `expire`, all guarded by one lock.

The lock is a `threading.Lock` and the handoff to the waiter goes through
`loop.call_soon_threadsafe` when delivery happens off the waiter's loop,
so a transport that calls back from its own network thread is safe too.
"""
import asyncio
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from api_gateway.errors import DuplicateCorrelationError

logger = logging.getLogger(__name__)


@dataclass
class PendingRequest:
    """
    One in-flight call. The future is the single-use, capacity-one handoff
    from the demultiplexer to the waiting caller.
    """
    correlation_id: str
    response_topic: str
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)

    def _settle(self, result: Any = None, error: Optional[BaseException] = None):
        # The caller may have been cancelled; a done future just drops the value
        if self.future.done():
            return
        if error is not None:
            self.future.set_exception(error)
        else:
            self.future.set_result(result)

    def hand_off(self, result: Any = None, error: Optional[BaseException] = None):
        """Delivers without blocking, from any thread."""
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self.loop:
            self._settle(result, error)
        else:
            self.loop.call_soon_threadsafe(self._settle, result, error)


class CorrelationRegistry:
    """
    Holds at most one PendingRequest per response topic.
    """
    def __init__(self):
        self._lock = threading.Lock()
        self._pending: Dict[str, PendingRequest] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def __contains__(self, topic: str) -> bool:
        with self._lock:
            return topic in self._pending

    def pending_topics(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def register(self, topic: str, correlation_id: str = "") -> PendingRequest:
        """
        Creates the waiter for `topic` bound to the running loop.
        Raises DuplicateCorrelationError if the topic is already taken.
        """
        loop = asyncio.get_running_loop()
        pending = PendingRequest(correlation_id=correlation_id,
                                 response_topic=topic,
                                 loop=loop,
                                 future=loop.create_future())
        with self._lock:
            if topic in self._pending:
                raise DuplicateCorrelationError(topic)
            self._pending[topic] = pending
        return pending

    def _pop(self, topic: str) -> Optional[PendingRequest]:
        with self._lock:
            return self._pending.pop(topic, None)

    def resolve(self, topic: str, payload: bytes) -> bool:
        """
        Removes the entry for `topic` and delivers `payload` to its waiter.
        Unknown topics (late, duplicate or unrelated messages) are dropped
        without touching the registry. Returns whether a waiter was resolved.
        """
        pending = self._pop(topic)
        if pending is None:
            return False
        pending.hand_off(result=payload)
        return True

    def fail(self, topic: str, error: BaseException) -> bool:
        """Removes the entry for `topic` and delivers `error` to its waiter."""
        pending = self._pop(topic)
        if pending is None:
            return False
        pending.hand_off(error=error)
        return True

    def fail_all(self, error: BaseException) -> int:
        """Fails every waiter, e.g. on shutdown. Returns how many were failed."""
        # Each topic goes through fail() so a concurrent resolve still wins or loses atomically
        failed = sum(1 for topic in self.pending_topics() if self.fail(topic, error))
        if failed:
            logger.warning(f"Failed {failed} pending request(s): {error}")
        return failed

    def expire(self, topic: str) -> bool:
        """
        Removes the entry for `topic` after a timeout. Returns True only if
        this call removed it; False means a resolve got there first (or the
        entry was already gone).
        """
        return self._pop(topic) is not None
