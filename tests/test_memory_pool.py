# tests/test_memory_pool.py

import threading

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from unityfs import MemoryPool


def test_acquire_returns_exact_length(pool):
    for n in (0, 1, 1024, 1025, 5000):
        buf = pool.acquire(n)
        assert isinstance(buf, bytearray)
        assert len(buf) == n
        pool.release(buf)


def test_released_buffers_are_reused(pool):
    a = pool.acquire(100)
    pool.release(a)
    b = pool.acquire(200)
    assert b is a
    assert len(b) == 200
    assert pool.stats()["hits"] == 1


def test_reused_buffer_is_cleared(pool):
    a = pool.acquire(100)
    a[:] = b"\xaa" * 100
    pool.release(a)
    b = pool.acquire(60)
    assert b is a
    assert b == bytearray(60)
    b[:] = b"\x55" * 60
    pool.release(b)
    c = pool.acquire(200)
    assert c is a
    assert c == bytearray(200)


def test_buckets_split_at_threshold(pool):
    small = pool.acquire(1024)
    large = pool.acquire(1025)
    pool.release(small)
    pool.release(large)
    s = pool.stats()
    assert s["small"] == 1
    assert s["large"] == 1


def test_release_into_full_bucket_drops_buffer(pool):
    bufs = [pool.acquire(2048) for _ in range(3)]
    kept = [pool.release(b) for b in bufs]
    assert kept == [True, True, False]
    assert pool.stats()["large"] == 2
    assert pool.stats()["dropped"] == 1


def test_double_release_is_rejected(pool):
    buf = pool.acquire(10)
    pool.release(buf)
    with pytest.raises(ValueError):
        pool.release(buf)


def test_foreign_buffer_is_rejected(pool):
    with pytest.raises(ValueError):
        pool.release(bytearray(10))


def test_negative_size_is_rejected(pool):
    with pytest.raises(ValueError):
        pool.acquire(-1)


def test_pooled_context_releases(pool):
    with pool.pooled(64) as buf:
        assert pool.outstanding == 1
        buf[:3] = b"abc"
    assert pool.outstanding == 0


def test_buffer_pinned_by_view_is_replaced(pool):
    buf = pool.acquire(100)
    view = memoryview(buf)
    pool.release(buf)
    again = pool.acquire(50)
    assert len(again) == 50
    assert again is not buf
    view.release()


def test_concurrent_owners_never_share_a_buffer():
    pool = MemoryPool(threshold=4096, max_small=8, max_large=2)
    seen_conflict = []
    owners = {}
    lock = threading.Lock()

    def worker(tid):
        for i in range(200):
            buf = pool.acquire(64 + (i % 7) * 100)
            with lock:
                if id(buf) in owners:
                    seen_conflict.append(id(buf))
                owners[id(buf)] = tid
            buf[0] = tid
            with lock:
                del owners[id(buf)]
            pool.release(buf)

    threads = [threading.Thread(target=worker, args=(t,)) for t in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert not seen_conflict
    assert pool.outstanding == 0
    assert pool.stats()["small"] <= 8


@settings(max_examples=100, deadline=None)
@given(st.lists(st.tuples(st.booleans(), st.integers(min_value=0, max_value=4000)), max_size=60))
def test_bucket_caps_hold_for_any_sequence(ops):
    pool = MemoryPool(threshold=1000, max_small=3, max_large=2)
    held = []
    for release, size in ops:
        if release and held:
            pool.release(held.pop(size % len(held)))
        else:
            held.append(pool.acquire(size))
        s = pool.stats()
        assert s["small"] <= 3
        assert s["large"] <= 2
        assert s["outstanding"] == len(held)
    assert len({id(b) for b in held}) == len(held)
