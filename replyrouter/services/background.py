"""Fire-and-forget dispatch for side effects off the reply path.

Token usage records, funnel events and admin-flag writes are submitted here
after the reply has been computed.  A failing task is logged and dropped;
it never reaches the caller.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger(__name__)


def _run_logged(label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.exception("Background task %s failed", label)


class BackgroundDispatcher:
    """Thread-pool dispatcher.  ``shutdown`` waits for queued work."""

    def __init__(self, max_workers: int = 4) -> None:
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="bg")

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future | None:
        try:
            return self._pool.submit(_run_logged, label, fn, *args, **kwargs)
        except RuntimeError:
            # pool already shut down during teardown
            logger.warning("Dropped background task %s after shutdown", label)
            return None

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)


class SyncDispatcher:
    """Runs tasks inline.  Used by the CLI and tests."""

    def submit(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> None:
        _run_logged(label, fn, *args, **kwargs)

    def shutdown(self) -> None:
        pass
