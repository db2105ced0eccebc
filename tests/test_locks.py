from __future__ import annotations

import threading
import time

from feature_autopilot.locks import ReadWriteLock


def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=2)
    errors: list[BaseException] = []

    def reader() -> None:
        try:
            with lock.read():
                inside.wait()
        except threading.BrokenBarrierError as exc:
            errors.append(exc)

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    assert errors == []


def test_writer_is_reentrant_and_may_read():
    lock = ReadWriteLock()
    with lock.write():
        with lock.write():
            with lock.read():
                pass
    # released fully: another thread can write
    done = threading.Event()

    def writer() -> None:
        with lock.write():
            done.set()

    thread = threading.Thread(target=writer)
    thread.start()
    thread.join(timeout=5)
    assert done.is_set()


def test_writer_excludes_readers():
    lock = ReadWriteLock()
    order: list[str] = []
    writer_in = threading.Event()

    def writer() -> None:
        with lock.write():
            writer_in.set()
            time.sleep(0.05)
            order.append("write")

    def reader() -> None:
        writer_in.wait(timeout=2)
        with lock.read():
            order.append("read")

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
    assert order == ["write", "read"]


def test_waiting_writer_blocks_new_readers():
    lock = ReadWriteLock()
    order: list[str] = []
    first_reader_in = threading.Event()
    release_first_reader = threading.Event()

    def first_reader() -> None:
        with lock.read():
            first_reader_in.set()
            release_first_reader.wait(timeout=2)
            order.append("read-1")

    def writer() -> None:
        with lock.write():
            order.append("write")

    def late_reader() -> None:
        with lock.read():
            order.append("read-2")

    t1 = threading.Thread(target=first_reader)
    t1.start()
    first_reader_in.wait(timeout=2)

    t2 = threading.Thread(target=writer)
    t2.start()
    deadline = time.monotonic() + 2
    while lock._writers_waiting == 0 and time.monotonic() < deadline:
        time.sleep(0.001)

    t3 = threading.Thread(target=late_reader)
    t3.start()
    time.sleep(0.05)
    release_first_reader.set()

    for thread in (t1, t2, t3):
        thread.join(timeout=5)
    assert order == ["read-1", "write", "read-2"]
