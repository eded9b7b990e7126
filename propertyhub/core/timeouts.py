from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Optional, TypeVar

from .errors import Unavailable

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_IO_WORKERS = 8

# Shared by notification delivery and file storage calls.
_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _get_executor() -> ThreadPoolExecutor:
    global _executor
    with _executor_lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(max_workers=MAX_IO_WORKERS, thread_name_prefix="propertyhub-io")
        return _executor


def run_with_timeout(func: Callable[..., T], timeout_seconds: float, *args: Any, description: str = "call", **kwargs: Any) -> T:
    """Run ``func`` on the I/O pool and wait at most ``timeout_seconds``.

    A timeout raises ``Unavailable``; the worker is left to finish on its own.
    Exceptions raised by ``func`` propagate unchanged.
    """
    future = _get_executor().submit(func, *args, **kwargs)
    try:
        return future.result(timeout=timeout_seconds)
    except FutureTimeoutError as exc:
        future.cancel()
        logger.warning("%s timed out after %.1fs", description, timeout_seconds)
        raise Unavailable(f"{description} timed out after {timeout_seconds:g}s.") from exc


def shutdown_executor() -> None:
    global _executor
    with _executor_lock:
        if _executor is not None:
            _executor.shutdown(wait=False, cancel_futures=True)
        _executor = None
