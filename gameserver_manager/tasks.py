"""Background execution of long operations (builds, restores, backups)."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable

from gameserver_manager.models import PendingOperation, ServerDescriptor

logger = logging.getLogger(__name__)


class OperationRunner:
    """Thread pool that runs operation bodies and hands back their futures.

    Operations cannot be cancelled once submitted; ``shutdown`` waits for
    the ones already running.
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="gameserver-op"
        )

    def submit(
        self,
        operation: str,
        server: ServerDescriptor,
        func: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> PendingOperation:
        """Run ``func(*args, **kwargs)`` on a worker.

        Args:
            operation: Operation name, used in logs.
            server: Descriptor at the time the operation was accepted.

        Returns:
            PendingOperation whose future resolves to ``func``'s result.
        """
        future: Future = self._executor.submit(func, *args, **kwargs)
        future.add_done_callback(lambda f: self._log_outcome(operation, server.id, f))
        logger.debug(f"Submitted {operation} for server '{server.id}'")
        return PendingOperation(operation=operation, server=server, future=future)

    @staticmethod
    def _log_outcome(operation: str, server_id: str, future: Future) -> None:
        error = future.exception()
        if error is None:
            logger.debug(f"{operation} for server '{server_id}' finished")
        else:
            logger.debug(f"{operation} for server '{server_id}' finished with {type(error).__name__}")

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
