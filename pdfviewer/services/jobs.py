"""Page job descriptors and the bounded in-process worker pool."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from threading import BoundedSemaphore, Condition
from typing import Callable, Protocol

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PageJob:
    """Message asking a worker to extract one page of one document."""

    document_hash: str
    page_number: int
    run: int = 1


JobHandler = Callable[[PageJob], object]


class JobQueue(Protocol):
    """Publish side of the page job channel. Delivery is at-least-once."""

    def enqueue(self, job: PageJob) -> None: ...

    def shutdown(self, wait: bool = True) -> None: ...


class InProcessJobQueue:
    """Run jobs on a fixed size thread pool with blocking backpressure.

    At most ``concurrency`` jobs execute at once and at most ``capacity``
    more wait in the executor queue. :meth:`enqueue` blocks once both are
    full instead of letting the backlog grow without bound.
    """

    def __init__(
        self,
        handler: JobHandler | None = None,
        *,
        concurrency: int = 4,
        capacity: int = 64,
        thread_name_prefix: str = "page-worker",
    ) -> None:
        self._handler = handler
        self._concurrency = max(1, concurrency)
        self._slots = BoundedSemaphore(self._concurrency + max(0, capacity))
        self._executor = ThreadPoolExecutor(
            max_workers=self._concurrency, thread_name_prefix=thread_name_prefix
        )
        self._idle = Condition()
        self._outstanding = 0
        self._closed = False

    @property
    def concurrency(self) -> int:
        return self._concurrency

    @property
    def outstanding(self) -> int:
        with self._idle:
            return self._outstanding

    def bind(self, handler: JobHandler) -> None:
        """Attach the consumer once it has been constructed."""

        self._handler = handler

    def enqueue(self, job: PageJob) -> None:
        if self._closed:
            raise RuntimeError("Job queue has been shut down")
        if self._handler is None:
            raise RuntimeError("Job queue has no handler bound")
        self._slots.acquire()
        with self._idle:
            self._outstanding += 1
        try:
            self._executor.submit(self._run, self._handler, job)
        except RuntimeError:
            self._release()
            raise

    def _run(self, handler: JobHandler, job: PageJob) -> object:
        try:
            return handler(job)
        except Exception:
            LOGGER.exception(
                "Page job crashed for %s page %s", job.document_hash, job.page_number
            )
            return None
        finally:
            self._release()

    def _release(self) -> None:
        self._slots.release()
        with self._idle:
            self._outstanding -= 1
            if self._outstanding == 0:
                self._idle.notify_all()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is queued or running; ``False`` on timeout."""

        with self._idle:
            return self._idle.wait_for(lambda: self._outstanding == 0, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=not wait)


__all__ = ["InProcessJobQueue", "JobHandler", "JobQueue", "PageJob"]
