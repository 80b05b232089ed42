"""
Task Supervisor

Runs notification handlers off the telemetry dispatch path. A handler that
fails is logged with its task name; the failure never reaches the thread
that raised the notification.
"""

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class TaskSupervisor:
    """
    Supervised fire-and-forget execution.

    Usage:
        supervisor = TaskSupervisor(max_workers=2)
        supervisor.submit('section boundary', handle_section)
        ...
        supervisor.shutdown()

    With synchronous=True tasks run inline on the caller's thread (still
    guarded), which keeps tests and CLI tools deterministic.
    """

    def __init__(self, max_workers: int = 2, synchronous: bool = False,
                 thread_name_prefix: str = 'encounter-sync'):
        self.synchronous = synchronous
        self._executor: Optional[ThreadPoolExecutor] = None
        self._closed = False
        self._lock = threading.Lock()
        self.failures = 0
        if not synchronous:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=thread_name_prefix,
            )

    def submit(self, name: str, fn: Callable, *args) -> Optional[Future]:
        """
        Schedule fn(*args). Returns the Future, or None when run inline or
        when the supervisor is already shut down.
        """
        with self._lock:
            if self._closed:
                logger.debug(f"Supervisor closed, dropping task '{name}'")
                return None
            if self.synchronous:
                executor = None
            else:
                executor = self._executor

        if executor is None:
            self._run_guarded(name, fn, *args)
            return None

        try:
            future = executor.submit(fn, *args)
        except RuntimeError:
            # Shut down between the check above and the submit
            logger.debug(f"Supervisor closed, dropping task '{name}'")
            return None
        future.add_done_callback(lambda f: self._on_done(name, f))
        return future

    def _run_guarded(self, name: str, fn: Callable, *args) -> None:
        try:
            fn(*args)
        except Exception:
            self._record_failure()
            logger.exception(f"Task '{name}' failed")

    def _on_done(self, name: str, future: Future) -> None:
        if future.cancelled():
            logger.debug(f"Task '{name}' cancelled")
            return
        error = future.exception()
        if error is not None:
            self._record_failure()
            logger.error(f"Task '{name}' failed: {error!r}", exc_info=error)

    def _record_failure(self) -> None:
        with self._lock:
            self.failures += 1

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting tasks; optionally wait for running ones to finish"""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)

    @property
    def closed(self) -> bool:
        return self._closed
