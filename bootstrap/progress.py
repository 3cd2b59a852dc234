"""
Phase state machine and progress delivery for bootstrap runs.

PhaseMachine guards the order of phases; ProgressChannel fans snapshots out
to subscribers without ever blocking the producer.

Delivery policy:
    Each subscriber owns a bounded buffer. When it is full the oldest
    snapshot that is followed by another snapshot of the same phase is
    dropped (sub-progress is re-derivable from the later snapshot), so phase
    entries and the terminal snapshot always reach the subscriber in order.
"""

from collections import deque
from typing import Deque, List, Optional
import asyncio
import logging

from models.base import BootstrapPhase
from schemas.progress import BootstrapProgress

logger = logging.getLogger(__name__)


_TRANSITIONS = {
    BootstrapPhase.IDLE: {BootstrapPhase.CHECKING},
    BootstrapPhase.CHECKING: {BootstrapPhase.USING_LOCAL, BootstrapPhase.DOWNLOADING},
    BootstrapPhase.USING_LOCAL: {BootstrapPhase.COMPLETED},
    BootstrapPhase.DOWNLOADING: {BootstrapPhase.EXTRACTING},
    BootstrapPhase.EXTRACTING: {BootstrapPhase.IMPORTING_SHOWS},
    BootstrapPhase.IMPORTING_SHOWS: {BootstrapPhase.COMPUTING_VENUES},
    BootstrapPhase.COMPUTING_VENUES: {BootstrapPhase.IMPORTING_RECORDINGS},
    BootstrapPhase.IMPORTING_RECORDINGS: {BootstrapPhase.COMPLETED},
}


class PhaseMachine:
    """Tracks the active phase and rejects out-of-order transitions"""

    def __init__(self):
        self.phase = BootstrapPhase.IDLE

    def can_advance(self, target: BootstrapPhase) -> bool:
        if self.phase.is_terminal:
            return False
        if target == BootstrapPhase.ERROR:
            return True
        return target in _TRANSITIONS.get(self.phase, set())

    def advance(self, target: BootstrapPhase) -> BootstrapPhase:
        if not self.can_advance(target):
            raise RuntimeError(f"Illegal bootstrap transition {self.phase.value} -> {target.value}")
        self.phase = target
        return target


class ProgressSubscription:
    """Async iterator over snapshots of one run; ends after the terminal snapshot"""

    def __init__(self, channel: "ProgressChannel", maxsize: int):
        self._channel = channel
        self._maxsize = maxsize
        self._buffer: Deque[BootstrapProgress] = deque()
        self._ready = asyncio.Event()
        self._finished = False
        self.dropped = 0

    def _push(self, progress: BootstrapProgress):
        if len(self._buffer) >= self._maxsize:
            self._evict_for(progress)
        self._buffer.append(progress)
        self._ready.set()

    def _evict_for(self, progress: BootstrapProgress):
        if self._buffer[-1].phase == progress.phase and not self._buffer[-1].is_terminal:
            self._buffer.pop()
            self.dropped += 1
            return
        for i in range(len(self._buffer) - 1):
            if self._buffer[i].phase == self._buffer[i + 1].phase:
                del self._buffer[i]
                self.dropped += 1
                return
        # Every buffered snapshot opens a distinct phase; keep them all
        logger.warning("Progress buffer holds only phase entries, growing past its bound")

    def __aiter__(self):
        return self

    async def __anext__(self) -> BootstrapProgress:
        while True:
            if self._buffer:
                progress = self._buffer.popleft()
                if progress.is_terminal:
                    self._finished = True
                    self.close()
                return progress
            if self._finished or self._channel.closed:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

    def close(self):
        self._channel._unsubscribe(self)


class ProgressChannel:
    """
    Ordered, non-blocking broadcast of BootstrapProgress snapshots.

    Late subscribers first receive the latest snapshot; the first terminal
    snapshot closes the channel.
    """

    def __init__(self, buffer_size: int = 32):
        # A buffer must fit one snapshot per phase so coalescing never drops a phase entry
        self.buffer_size = max(buffer_size, len(BootstrapPhase) + 1)
        self._subscribers: List[ProgressSubscription] = []
        self.latest: Optional[BootstrapProgress] = None
        self.closed = False

    def publish(self, progress: BootstrapProgress):
        if self.closed:
            raise RuntimeError("Progress channel already received its terminal snapshot")
        self.latest = progress
        if progress.is_terminal:
            self.closed = True
        for subscription in list(self._subscribers):
            subscription._push(progress)

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self, self.buffer_size)
        if self.latest is not None:
            subscription._push(self.latest)
        if not self.closed:
            self._subscribers.append(subscription)
        return subscription

    def _unsubscribe(self, subscription: ProgressSubscription):
        if subscription in self._subscribers:
            self._subscribers.remove(subscription)
