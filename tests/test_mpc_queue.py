import threading

import pytest

from ppcloud.mpc_queue import MPCQueue, QueueClosedError


def test_send_then_receive_in_order():
    queue = MPCQueue(2)
    queue.send("a")
    queue.send("b")
    assert queue.block_recv() == "a"
    assert queue.block_recv() == "b"


def test_ring_slots_are_reused():
    queue = MPCQueue(2)
    received = []
    for value in range(6):
        queue.send(value)
        received.append(queue.block_recv())
    assert received == list(range(6))


def test_producer_thread_with_small_ring():
    queue = MPCQueue(3)
    items = list(range(20))

    def produce():
        for item in items:
            queue.send(item)

    producer = threading.Thread(target=produce)
    producer.start()
    received = [queue.block_recv() for _ in items]
    producer.join(timeout=5)
    assert received == items
    assert not producer.is_alive()


def test_send_on_closed_queue_raises():
    queue = MPCQueue(2)
    queue.signal_done()
    with pytest.raises(QueueClosedError):
        queue.send(1)


def test_block_recv_on_closed_queue_raises():
    queue = MPCQueue(2)
    queue.signal_done()
    with pytest.raises(QueueClosedError):
        queue.block_recv()


def test_iteration_after_close_is_empty():
    queue = MPCQueue(4)
    queue.send(1)
    assert queue.block_recv() == 1
    queue.signal_done()
    assert list(queue) == []


def test_iteration_stops_when_done():
    queue = MPCQueue(4)

    def produce():
        for item in range(3):
            queue.send(item)

    producer = threading.Thread(target=produce)
    producer.start()
    iterator = iter(queue)
    first_three = [next(iterator) for _ in range(3)]
    producer.join(timeout=5)
    assert first_three == [0, 1, 2]
    queue.signal_done()
    assert list(iterator) == []


def test_guards_are_falsy_after_release():
    queue = MPCQueue(1)
    guard = queue.acquire_send()
    assert bool(guard) is True
    guard.value = 42
    guard.release()
    assert bool(guard) is False
    with pytest.raises(QueueClosedError):
        guard.value
    recv = queue.acquire_block_recv()
    with recv:
        assert recv.value == 42


def test_empty_ring_rejected():
    with pytest.raises(ValueError):
        MPCQueue(0)