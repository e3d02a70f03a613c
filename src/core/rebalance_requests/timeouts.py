from concurrent.futures import ThreadPoolExecutor
from typing import Callable, TypeVar

A = TypeVar("A")
R = TypeVar("R")


def call_with_timeout(
    func: Callable[[A], R],
    argument: A,
    *,
    timeout_seconds: float,
    thread_name_prefix: str,
) -> R:
    """Run ``func(argument)`` and raise ``TimeoutError`` once the deadline passes.

    The worker thread is abandoned, not interrupted, on timeout.
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=thread_name_prefix)
    try:
        future = pool.submit(func, argument)
        return future.result(timeout=timeout_seconds)
    finally:
        pool.shutdown(wait=False, cancel_futures=True)
