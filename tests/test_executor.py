import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from notifstream.config import ThreadingMode
from notifstream.executor import ELASTIC_FACTOR, ThreadPerTaskExecutor, create_executor


@pytest.mark.parametrize("mode, expected_type, expected_workers", [
    (ThreadingMode.SINGLE_THREADED, ThreadPoolExecutor, 1),
    (ThreadingMode.THREAD_POOL, ThreadPoolExecutor, 4),
])
def test_pool_modes(mode, expected_type, expected_workers):
    executor = create_executor(mode, 4)
    try:
        assert isinstance(executor, expected_type)
        assert executor._max_workers == expected_workers
    finally:
        executor.shutdown()


def test_elastic_mode_scales_the_in_flight_limit():
    executor = create_executor(ThreadingMode.ELASTIC, 4)

    assert isinstance(executor, ThreadPerTaskExecutor)
    assert executor.max_in_flight == 4 * ELASTIC_FACTOR
    executor.shutdown()


def test_thread_per_task_runs_each_task_on_a_new_thread():
    executor = ThreadPerTaskExecutor(4, thread_name_prefix="t")

    futures = [executor.submit(lambda: threading.current_thread().name) for _ in range(3)]
    names = [f.result(timeout=5) for f in futures]

    assert sorted(names) == ["t-1", "t-2", "t-3"]
    executor.shutdown()
    assert executor.in_flight() == 0


def test_thread_per_task_propagates_exceptions():
    executor = ThreadPerTaskExecutor(1)

    def fail():
        raise ValueError("bad")

    with pytest.raises(ValueError):
        executor.submit(fail).result(timeout=5)
    executor.shutdown()


def test_submit_blocks_while_at_capacity():
    executor = ThreadPerTaskExecutor(1)
    release = threading.Event()
    first = executor.submit(release.wait)
    second_submitted = threading.Event()

    def submit_second():
        executor.submit(lambda: None)
        second_submitted.set()

    threading.Thread(target=submit_second, daemon=True).start()
    assert not second_submitted.wait(0.2)

    release.set()
    assert first.result(timeout=5) is True
    assert second_submitted.wait(5)
    executor.shutdown()


def test_submit_after_shutdown_is_rejected():
    executor = ThreadPerTaskExecutor(2)
    executor.shutdown(wait=False, cancel_futures=True)

    with pytest.raises(RuntimeError):
        executor.submit(lambda: None)
