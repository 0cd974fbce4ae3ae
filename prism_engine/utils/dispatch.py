"""
Owner-context dispatching.

All extension catalog, background context and compiled rule state is owned
by a single execution context. Blocking work (file I/O, archive extraction,
rule compilation, script evaluation) may run elsewhere, but its completion
is always handed back to the owner before shared state is touched.
"""

import concurrent.futures
import functools
import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

# on_complete(result, error) -> value
CompletionCallback = Callable[[Any, Optional[BaseException]], Any]


def on_owner(method: Callable) -> Callable:
    """Run a method on the owner context of its object's `dispatcher`."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        return self.dispatcher.call(method, self, *args, **kwargs)
    return wrapper


class InlineDispatcher:
    """
    Dispatcher for callers that already run on the owner context.

    Work and completion both run immediately in the calling thread, so the
    returned futures are always done.
    """

    def is_owner_thread(self) -> bool:
        return True

    def post(self, fn: Callable, *args, **kwargs) -> concurrent.futures.Future:
        future = concurrent.futures.Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            logger.error(f"Error in owner task {getattr(fn, '__name__', fn)}: {e}")
            future.set_exception(e)
        return future

    def call(self, fn: Callable, *args, **kwargs) -> Any:
        return fn(*args, **kwargs)

    def run_async(self, work: Callable[[], Any], on_complete: CompletionCallback) -> concurrent.futures.Future:
        try:
            result, error = work(), None
        except Exception as e:
            result, error = None, e
        return self.post(on_complete, result, error)

    def shutdown(self, wait: bool = True) -> None:
        pass


class OwnerDispatcher:
    """
    Dispatcher backed by a single owner thread and a worker pool.

    `post` and `call` run functions on the owner thread. `run_async` runs the
    work on a worker thread and then runs the completion on the owner thread.
    """

    def __init__(self, max_workers: int = 2, name: str = "prism"):
        """
        Initialize the dispatcher.

        Args:
            max_workers: Number of worker threads for blocking work
            name: Thread name prefix
        """
        self._owner = concurrent.futures.ThreadPoolExecutor(
            max_workers=1, thread_name_prefix=f"{name}-owner")
        self._workers = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-worker")
        self._owner_ident = self._owner.submit(threading.get_ident).result()
        self._closed = False

        logger.debug(f"Owner dispatcher started (workers: {max_workers})")

    def is_owner_thread(self) -> bool:
        return threading.get_ident() == self._owner_ident

    def post(self, fn: Callable, *args, **kwargs) -> concurrent.futures.Future:
        """Queue fn on the owner thread without waiting for it."""
        return self._owner.submit(fn, *args, **kwargs)

    def call(self, fn: Callable, *args, **kwargs) -> Any:
        """Run fn on the owner thread and wait for its result."""
        if self.is_owner_thread():
            return fn(*args, **kwargs)
        return self._owner.submit(fn, *args, **kwargs).result()

    def run_async(self, work: Callable[[], Any], on_complete: CompletionCallback) -> concurrent.futures.Future:
        """
        Run work on a worker and rejoin the owner thread for completion.

        Returns:
            Future resolved with the value returned by on_complete
        """
        result_future = concurrent.futures.Future()

        def _complete_on_owner(result, error):
            try:
                result_future.set_result(on_complete(result, error))
            except Exception as e:
                logger.error(f"Error completing async work: {e}")
                result_future.set_exception(e)

        def _on_work_done(work_future):
            error = work_future.exception()
            result = None if error else work_future.result()
            try:
                self._owner.submit(_complete_on_owner, result, error)
            except RuntimeError as e:
                # Owner already shut down
                result_future.set_exception(e)

        self._workers.submit(work).add_done_callback(_on_work_done)
        return result_future

    def shutdown(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._workers.shutdown(wait=wait)
        self._owner.shutdown(wait=wait)
        logger.debug("Owner dispatcher stopped")
