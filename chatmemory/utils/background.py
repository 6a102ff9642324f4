"""
Fire-and-forget execution of post-turn jobs (fact extraction, synopses).
"""

from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from .logging_config import get_logger

logger = get_logger(__name__)


class BackgroundTaskRunner:
    """Run jobs detached from the request that spawned them.

    Failures are reported through this module's logger and never reach the
    submitter.
    """

    def __init__(self, max_workers: int = 4, executor: Optional[ThreadPoolExecutor] = None):
        self._executor = executor or ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix='chatmemory-bg')

    def submit(self, name: str, fn: Callable[..., Any], *args, **kwargs) -> Optional[Future]:
        """
        Schedule a job and return immediately.

        Args:
            name: Job name used in log records
            fn: Callable to run
            *args: Positional arguments for fn
            **kwargs: Keyword arguments for fn

        Returns:
            The job's Future, or None if the runner is shut down
        """
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError as e:
            logger.error(f'Background job {name} rejected: {e}')
            return None

        future.add_done_callback(lambda f: self._report(name, f))
        logger.debug(f'Scheduled background job {name}')
        return future

    @staticmethod
    def _report(name: str, future: Future) -> None:
        if future.cancelled():
            logger.info(f'Background job {name} cancelled')
            return
        error = future.exception()
        if error is not None:
            logger.error(f'Background job {name} failed: {error}', exc_info=error)
        else:
            logger.debug(f'Background job {name} finished')

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs; optionally wait for running ones."""
        self._executor.shutdown(wait=wait)
