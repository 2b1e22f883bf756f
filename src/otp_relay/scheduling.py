"""Single-timeline timer queue with cancellable handles.

Every continuation in the process (worker cycles, reconnect attempts,
transport events) is executed by one ``Scheduler`` so state mutations
never interleave. Other threads only enqueue callbacks.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)


class ScheduledCall:
    """Handle for a pending callback."""

    __slots__ = ("args", "callback", "cancelled", "seq", "when")

    def __init__(self, when: float, seq: int, callback: Callable[..., Any], args: tuple) -> None:
        self.when = when
        self.seq = seq
        self.callback = callback
        self.args = args
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True

    def __lt__(self, other: ScheduledCall) -> bool:
        return (self.when, self.seq) < (other.when, other.seq)

    def __repr__(self) -> str:
        name = getattr(self.callback, "__qualname__", repr(self.callback))
        state = " cancelled" if self.cancelled else ""
        return f"<ScheduledCall {name} at {self.when:.3f}{state}>"


class Scheduler:
    """Timer heap driven either by ``run_forever`` or by explicit ``run_pending`` calls.

    Args:
        clock: Monotonic time source; tests pass a manual clock.
        fatal_exceptions: Exception types that abort the loop instead of being logged.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.monotonic,
        fatal_exceptions: tuple[type[BaseException], ...] = (),
    ) -> None:
        self._clock = clock
        self._fatal_exceptions = fatal_exceptions
        self._heap: list[ScheduledCall] = []
        self._counter = itertools.count()
        self._condition = threading.Condition()
        self._stopped = False

    def now(self) -> float:
        return self._clock()

    def call_soon(self, callback: Callable[..., Any], *args: Any) -> ScheduledCall:
        return self.call_later(0.0, callback, *args)

    def call_later(self, delay: float, callback: Callable[..., Any], *args: Any) -> ScheduledCall:
        call = ScheduledCall(
            when=self._clock() + max(0.0, delay),
            seq=next(self._counter),
            callback=callback,
            args=args,
        )
        with self._condition:
            heapq.heappush(self._heap, call)
            self._condition.notify_all()
        return call

    def next_deadline(self) -> float | None:
        with self._condition:
            self._discard_cancelled()
            return self._heap[0].when if self._heap else None

    @property
    def pending(self) -> int:
        with self._condition:
            return sum(1 for call in self._heap if not call.cancelled)

    def run_pending(self) -> int:
        """Run every callback that is due now, including ones scheduled meanwhile."""

        executed = 0
        while True:
            call = self._pop_due()
            if call is None:
                return executed
            self._execute(call)
            executed += 1

    def run_forever(self) -> None:
        """Block and execute callbacks until ``stop`` is called (stopping is final)."""

        while True:
            with self._condition:
                if self._stopped:
                    return
                self._discard_cancelled()
                if self._heap:
                    timeout = max(0.0, self._heap[0].when - self._clock())
                else:
                    timeout = None
                if timeout is None or timeout > 0:
                    self._condition.wait(timeout=timeout)
                    continue
            self.run_pending()

    def stop(self) -> None:
        with self._condition:
            self._stopped = True
            self._condition.notify_all()

    def cancel_all(self) -> None:
        with self._condition:
            for call in self._heap:
                call.cancel()
            self._heap.clear()

    def _pop_due(self) -> ScheduledCall | None:
        with self._condition:
            self._discard_cancelled()
            if not self._heap or self._heap[0].when > self._clock():
                return None
            return heapq.heappop(self._heap)

    def _discard_cancelled(self) -> None:
        while self._heap and self._heap[0].cancelled:
            heapq.heappop(self._heap)

    def _execute(self, call: ScheduledCall) -> None:
        try:
            call.callback(*call.args)
        except self._fatal_exceptions:
            raise
        except Exception:
            logger.exception("Scheduled callback %r failed", call)
