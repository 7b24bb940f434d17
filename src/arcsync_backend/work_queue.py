"""
In-process work queue and the single Dispatcher thread that drains it.

Request handlers enqueue a ``WorkItem`` and return immediately. The
Dispatcher takes items one at a time in FIFO order and drives each job
through its lifecycle, opening a fresh transactional scope for every status
change. A handler that raises marks its job failed; it never stops the loop.

There is exactly one consumer, so a handler that hangs delays every job
queued after it.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from threading import Condition, Event, Thread
from typing import Callable, Deque, Optional

from .database import Database
from .job_store import JobStore

logger = logging.getLogger(__name__)

Handler = Callable[[str, Event], None]


@dataclass(frozen=True)
class WorkItem:
    """
    A deferred unit of work.

    Only the job id is captured; the handler re-reads everything else from
    the store inside its own scope when it runs.
    """

    job_id: str
    handler: Handler

    def __call__(self, stop_event: Event) -> None:
        self.handler(self.job_id, stop_event)


class WorkQueue:
    """Unbounded FIFO queue, safe for concurrent producers."""

    def __init__(self) -> None:
        self._items: Deque[WorkItem] = deque()
        self._condition = Condition()

    def __len__(self) -> int:
        with self._condition:
            return len(self._items)

    def enqueue(self, item: WorkItem) -> None:
        """Add an item without blocking the caller."""
        with self._condition:
            self._items.append(item)
            self._condition.notify()

    def dequeue(self, stop_event: Event) -> Optional[WorkItem]:
        """
        Wait for the next item.

        Returns:
            The oldest item, or ``None`` once ``stop_event`` is set and the
            waiter has been woken with ``interrupt``
        """
        with self._condition:
            while not self._items:
                if stop_event.is_set():
                    return None
                self._condition.wait()
            return self._items.popleft()

    def interrupt(self) -> None:
        """Wake every waiter so it can re-check its stop signal."""
        with self._condition:
            self._condition.notify_all()


class Dispatcher:
    """
    Single long-lived consumer of a ``WorkQueue``.

    Attributes:
        queue: The queue being drained
        database: Source of the per-item transactional scopes
    """

    def __init__(self, queue: WorkQueue, database: Database) -> None:
        self.queue = queue
        self.database = database
        self._stop_event = Event()
        self._thread: Optional[Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop_event.is_set()

    def start(self) -> None:
        """
        Start the consumer thread.

        A thread left behind by a ``stop`` that timed out is joined first, so
        at most one item is ever in progress.
        """
        if self.is_running:
            return
        if self._thread is not None and self._thread.is_alive():
            logger.info("Waiting for the previous dispatcher thread to finish its item.")
            self._thread.join()
        # Each thread gets its own event; a stopped thread cannot be revived.
        self._stop_event = Event()
        self._thread = Thread(target=self._run, args=(self._stop_event,), name="arcsync-dispatcher", daemon=True)
        self._thread.start()
        logger.info("Dispatcher started.")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal shutdown and wait for the item in progress to finish."""
        self._stop_event.set()
        self.queue.interrupt()
        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.warning("Dispatcher did not stop within %s seconds.", timeout)
                return
        self._thread = None
        logger.info("Dispatcher stopped.")

    def _run(self, stop_event: Event) -> None:
        while not stop_event.is_set():
            item = self.queue.dequeue(stop_event)
            if item is None:
                break
            self._execute(item, stop_event)

    def _execute(self, item: WorkItem, stop_event: Event) -> None:
        try:
            with self.database.transaction() as conn:
                JobStore(conn).mark_processing(item.job_id)
        except Exception:
            logger.exception("Job %s could not be started; skipping.", item.job_id)
            return

        try:
            item(stop_event)
        except Exception as exc:
            logger.exception("Job %s failed during execution.", item.job_id)
            self._finish(item.job_id, error_message=str(exc) or type(exc).__name__)
        else:
            self._finish(item.job_id)

    def _finish(self, job_id: str, error_message: Optional[str] = None) -> None:
        try:
            with self.database.transaction() as conn:
                store = JobStore(conn)
                if error_message is None:
                    store.mark_completed(job_id)
                else:
                    store.mark_failed(job_id, error_message)
        except Exception:
            logger.exception("Could not record final status of job %s.", job_id)
