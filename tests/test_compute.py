import threading

import pytest

from chunkbrain import (
    ComputeSystem,
    SerialComputeSystem,
    ThreadPoolComputeSystem,
    create_compute_system,
)


def _collect(cs, size):
    seen = []
    lock = threading.Lock()

    def task(i):
        with lock:
            seen.append(i)

    cs.parallel_for(size, task)
    return seen


def test_serial_visits_every_index_in_order(serial_cs):
    assert _collect(serial_cs, 10) == list(range(10))


def test_thread_pool_visits_every_index_once(thread_cs):
    seen = _collect(thread_cs, 257)
    assert sorted(seen) == list(range(257))


def test_thread_pool_returns_only_after_all_tasks_finish():
    results = [0] * 64

    def task(i):
        results[i] = i * i

    with ThreadPoolComputeSystem(num_workers=3) as cs:
        cs.parallel_for(len(results), task)
        assert results == [i * i for i in range(64)]


def test_empty_domain_is_a_no_op(thread_cs):
    assert _collect(thread_cs, 0) == []


def test_task_errors_propagate_after_the_barrier(thread_cs):
    done = []

    def task(i):
        if i == 3:
            raise RuntimeError("chunk failed")
        done.append(i)

    with pytest.raises(RuntimeError, match="chunk failed"):
        thread_cs.parallel_for(8, task)
    assert sorted(done) == [0, 1, 2, 4, 5, 6, 7]


def test_factory_selects_backend():
    assert isinstance(create_compute_system("serial"), SerialComputeSystem)
    cs = create_compute_system("threads", num_workers=2)
    try:
        assert isinstance(cs, ThreadPoolComputeSystem)
        assert cs.num_workers == 2
    finally:
        cs.shutdown()

    with pytest.raises(ValueError):
        create_compute_system("gpu")


def test_compute_system_is_abstract():
    with pytest.raises(TypeError):
        ComputeSystem()
