"""Utility helpers shared by the BLE session engine."""

import logging
import threading
from queue import Queue
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class DeferredExecution:
    """A thread that runs queued work items in submission order."""

    def __init__(self, name: str = "DeferredExecution") -> None:
        """
        Create the work queue and start the daemon worker thread.

        Parameters:
            name (str): Name given to the worker thread.
        """
        self.queue: "Queue[Optional[Callable[[], None]]]" = Queue()
        self._stopped = False
        self.thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.thread.start()

    def queueWork(self, runnable: Callable[[], None]) -> None:
        """Queue up the given callable to run on the worker thread."""
        if self._stopped:
            logger.debug("Dropping work queued after %s stopped", self.thread.name)
            return
        self.queue.put(runnable)

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until every queued item has run.

        Parameters:
            timeout (Optional[float]): Maximum seconds to wait; None waits forever.

        Returns:
            bool: True if the queue drained before the timeout elapsed.
        """
        # Queue.join() with a deadline; all_tasks_done is notified by task_done()
        with self.queue.all_tasks_done:
            return self.queue.all_tasks_done.wait_for(
                lambda: not self.queue.unfinished_tasks, timeout
            )

    def close(self, timeout: Optional[float] = None) -> None:
        """Stop accepting work and let the worker exit once the queue is empty."""
        if self._stopped:
            return
        self._stopped = True
        self.queue.put(None)
        if self.thread is not threading.current_thread():
            self.thread.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            runnable = self.queue.get()
            try:
                if runnable is None:
                    return
                runnable()
            except Exception:  # noqa: BLE001 - worker must outlive a failing item
                logger.exception("Unexpected error in deferred execution")
            finally:
                self.queue.task_done()
