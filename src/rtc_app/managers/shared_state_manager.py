from __future__ import annotations


import logging
import threading
import concurrent.futures
from os import cpu_count
from typing import Any, Callable, Optional


from rtc_app.utils.general_utils import get_callable_name


logger = logging.getLogger(__name__)


def should_exit(ss_mgr: Optional[SharedStateManager], msg: str = "Aborting task due to cleanup/shutdown event.") -> bool:
    """Check if task should terminate due to cleanup/shutdown events."""
    if ss_mgr and (ss_mgr.cleanup_event.is_set() or ss_mgr.shutdown_event.is_set()):
        logger.info(msg)
        return True
    return False


class SharedStateManager:
    """Holds cancellation events and the bounded worker pool used for per-slice work."""
    RESERVED_LC_COUNT = 1 # Withhold logical cores from the executor for the calling thread

    def __init__(self, max_workers: Optional[int] = None) -> None:
        """Initialize shared state manager."""
        # Get total logical cores, defaulting to 1 if retrieval fails
        total_logical_cores = cpu_count() or 1

        # Determine available workers, ensuring at least 1 worker is always available
        self.num_workers = max(1, total_logical_cores - self.RESERVED_LC_COUNT)
        if max_workers:
            self.num_workers = max(1, min(self.num_workers, int(max_workers)))

        # Signal cleanup in progress. Set will cancel running work between units. Clear will allow new work.
        self.cleanup_event = threading.Event()
        self.cleanup_event.clear()

        # Signal event for shutdown. Set will refuse new work.
        self.shutdown_event = threading.Event()
        self.shutdown_event.clear()

        self._executor: Optional[concurrent.futures.Executor] = None

    @property
    def has_executor(self) -> bool:
        return self._executor is not None

    def submit_executor_action(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Optional[concurrent.futures.Future]:
        """Submit action to executor pool."""
        if self.shutdown_event.is_set():
            logger.info(f"Skipped executor '{get_callable_name(func)}' - shutting down")
        elif self._executor is None:
            logger.info("Executor not initialized")
        else:
            try:
                return self._executor.submit(func, *args, **kwargs)
            except Exception:
                logger.exception(f"Submission failed for executor '{get_callable_name(func)}'.", exc_info=True, stack_info=True)
        return None

    def startup_executor(self, max_workers: Optional[int] = None) -> None:
        """Start the thread pool executor."""
        if self._executor is not None:
            logger.debug("Executor already running; shutting down previous executor.")
            self.shutdown_executor()
        workers = max(min(self.num_workers, max_workers or self.num_workers), 1)
        self._executor = concurrent.futures.ThreadPoolExecutor(max_workers=workers)
        logger.debug(f"Started executor with {workers} worker(s).")

    def request_cleanup(self) -> None:
        """Ask running work to stop at its next checkpoint."""
        self.cleanup_event.set()

    def clear_cleanup(self) -> None:
        self.cleanup_event.clear()

    def shutdown_executor(self) -> None:
        """Shutdown executor pool."""
        if self._executor:
            self._executor.shutdown(wait=True, cancel_futures=True)
            self._executor = None

    def shutdown_manager(self) -> None:
        """Shutdown shared state manager."""
        self.shutdown_event.set()
        self.shutdown_executor()
