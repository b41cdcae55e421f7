"""Bounded ring queue for many producers and consumers."""

from __future__ import annotations

import itertools
import threading
from typing import Any, Iterator, Optional


class QueueClosedError(ValueError):
    """Raised when sending to, or receiving from, a closed queue."""


class _Slot:
    __slots__ = ("sem_enqueue", "sem_dequeue", "data")

    def __init__(self) -> None:
        self.sem_enqueue = threading.Semaphore(1)
        self.sem_dequeue = threading.Semaphore(0)
        self.data: Any = None


class _Guard:
    def __init__(self, slot: Optional[_Slot] = None) -> None:
        self._slot = slot

    def __bool__(self) -> bool:
        return self._slot is not None

    @property
    def value(self) -> Any:
        if self._slot is None:
            raise QueueClosedError("guard holds no slot")
        return self._slot.data

    @value.setter
    def value(self, data: Any) -> None:
        if self._slot is None:
            raise QueueClosedError("guard holds no slot")
        self._slot.data = data


class SendGuard(_Guard):
    """Holds a slot for writing; releasing it hands the slot to a consumer."""

    def release(self) -> None:
        slot, self._slot = self._slot, None
        if slot is not None:
            slot.sem_dequeue.release()

    def __enter__(self) -> "SendGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class RecvGuard(_Guard):
    """Holds a slot for reading; releasing it hands the slot back to producers."""

    def release(self) -> None:
        slot, self._slot = self._slot, None
        if slot is not None:
            slot.sem_enqueue.release()

    def __enter__(self) -> "RecvGuard":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class MPCQueue:
    """Fixed-size ring of slots, each guarded by an enqueue and a dequeue semaphore."""

    def __init__(self, max_chunks_in_ring: int) -> None:
        if max_chunks_in_ring < 1:
            raise ValueError("ring needs at least one slot")
        self._ring = [_Slot() for _ in range(max_chunks_in_ring)]
        self._done = threading.Event()
        self._counter_lock = threading.Lock()
        self._head = itertools.count()
        self._tail = itertools.count()

    def _next_slot(self, counter: Iterator[int]) -> _Slot:
        with self._counter_lock:
            index = next(counter)
        return self._ring[index % len(self._ring)]

    def acquire_send(self) -> SendGuard:
        slot = self._next_slot(self._head)
        slot.sem_enqueue.acquire()
        if self._done.is_set():
            raise QueueClosedError("Enqueue on closed queue")
        return SendGuard(slot)

    def send(self, data: Any) -> None:
        with self.acquire_send() as guard:
            guard.value = data

    def acquire_block_recv(self) -> RecvGuard:
        """Wait for the next slot; the guard is empty once the queue is closed."""
        slot = self._next_slot(self._tail)
        slot.sem_dequeue.acquire()
        if self._done.is_set():
            return RecvGuard()
        return RecvGuard(slot)

    def block_recv(self) -> Any:
        with self.acquire_block_recv() as guard:
            if not guard:
                raise QueueClosedError("Dequeue on closed queue")
            data = guard.value
            guard.value = None
            return data

    def signal_done(self) -> None:
        self._done.set()
        for slot in self._ring:
            slot.sem_dequeue.release(len(self._ring))

    def __iter__(self) -> Iterator[Any]:
        while True:
            guard = self.acquire_block_recv()
            if not guard:
                return
            with guard:
                yield guard.value