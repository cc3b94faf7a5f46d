"""First-of(result, timer) race for blocking calls."""

import logging
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

WORKER_PREFIX = "openlens-call"


def first_settled(fn: Callable[[], T], timeout: float, default: Optional[T] = None) -> Optional[T]:
    """
    Run ``fn`` and return its result, or ``default`` if ``timeout`` seconds pass first.

    A call that loses the race keeps running in its worker thread; whatever
    it eventually returns is discarded. Workers are daemon threads, so a
    call that never returns does not hold the process open at exit.
    Exceptions raised by ``fn`` before the deadline propagate to the caller.
    """
    future: Future = Future()

    def work() -> None:
        if not future.set_running_or_notify_cancel():
            return
        try:
            future.set_result(fn())
        except BaseException as exc:
            future.set_exception(exc)

    threading.Thread(target=work, name=f"{WORKER_PREFIX}-{id(future):x}", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        logger.info("Call timed out after %.1fs", timeout)
        return default
