"""
Execution pools for delivery tasks

Every mode returns a `concurrent.futures.Executor`, so the worker pool submits tasks and tracks futures the same
way regardless of the threading model

- SINGLE_THREADED  one worker thread; deliveries run strictly one after another across all poll loops
- THREAD_POOL      a fixed ThreadPoolExecutor of `max_pool_size` threads
- ELASTIC          one short-lived thread per task, at most `max_pool_size * ELASTIC_FACTOR` in flight
"""
import logging
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor

from .config import ThreadingMode

log = logging.getLogger(__name__)

ELASTIC_FACTOR = 10


class ThreadPerTaskExecutor(Executor):
    """
    Start a fresh daemon thread for each submitted task

    `submit` blocks while `max_in_flight` tasks are running, which pushes back on the poll loop instead of
    growing without bound
    """

    def __init__(self, max_in_flight: int, thread_name_prefix: str = "notifstream-task"):
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self.max_in_flight = max_in_flight
        self.thread_name_prefix = thread_name_prefix
        self._slots = threading.BoundedSemaphore(max_in_flight)
        self._lock = threading.Lock()
        self._threads = set()
        self._counter = 0
        self._shutdown = False

    def submit(self, fn, /, *args, **kwargs) -> Future:
        with self._lock:
            if self._shutdown:
                raise RuntimeError("cannot schedule new futures after shutdown")
        self._slots.acquire()

        future = Future()
        with self._lock:
            if self._shutdown:
                self._slots.release()
                raise RuntimeError("cannot schedule new futures after shutdown")
            self._counter += 1
            thread = threading.Thread(
                target=self._run,
                args=(future, fn, args, kwargs),
                name=f"{self.thread_name_prefix}-{self._counter}",
                daemon=True
            )
            self._threads.add(thread)
        thread.start()
        return future

    def _run(self, future: Future, fn, args, kwargs):
        try:
            if not future.set_running_or_notify_cancel():
                return
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)
        finally:
            with self._lock:
                self._threads.discard(threading.current_thread())
            self._slots.release()

    def in_flight(self) -> int:
        with self._lock:
            return len(self._threads)

    def shutdown(self, wait: bool = True, *, cancel_futures: bool = False):
        # Tasks start as soon as they are submitted, so there is never a queue to cancel
        with self._lock:
            self._shutdown = True
            threads = list(self._threads)
        if wait:
            for thread in threads:
                thread.join()


def create_executor(mode: ThreadingMode, max_pool_size: int) -> Executor:
    """Build the delivery executor for `mode`"""
    if mode is ThreadingMode.SINGLE_THREADED:
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="notifstream-delivery")
    elif mode is ThreadingMode.ELASTIC:
        executor = ThreadPerTaskExecutor(max_pool_size * ELASTIC_FACTOR, thread_name_prefix="notifstream-task")
    else:
        executor = ThreadPoolExecutor(max_workers=max_pool_size, thread_name_prefix="notifstream-delivery")

    log.info(f"Delivery executor: mode={mode.value}, max_pool_size={max_pool_size}")
    return executor
