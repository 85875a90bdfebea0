"""Detached execution helpers for work that must not block the caller."""
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor

logger = logging.getLogger(__name__)

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="batch-side-effect")


def _log_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error(f"❌ Background side effect failed: {exc}", exc_info=exc)


def run_detached(fn, *args, **kwargs) -> Future:
    """Run fn on the side-effect pool. Failures are logged, never raised to the caller."""
    future = _executor.submit(fn, *args, **kwargs)
    future.add_done_callback(_log_failure)
    return future


def schedule_after(delay: float, fn, *args) -> threading.Timer:
    """Call fn(*args) on a daemon thread once delay seconds have passed."""
    timer = threading.Timer(delay, fn, args=args)
    timer.daemon = True
    timer.start()
    return timer


def shutdown_background(wait: bool = True) -> None:
    _executor.shutdown(wait=wait)
