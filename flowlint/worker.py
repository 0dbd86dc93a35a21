"""
Review worker process.

Pulls jobs from the queue and runs the check-run orchestrator on a bounded
thread pool. Lifecycle::

    RUNNING --request_shutdown()--> DRAINING --in-flight done or timeout--> STOPPED

SIGTERM/SIGINT request the shutdown; a second signal while draining is a
no-op. If in-flight jobs do not finish within SHUTDOWN_TIMEOUT_S the process
exits with status 1 and the unfinished jobs are recovered by the next worker
(RECOVER_STALLED_JOBS).
"""

import logging
import os
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from enum import Enum
from typing import Any, Callable, Optional, Set

from dotenv import load_dotenv

from .config import Settings, setup_logging
from .github import client_factory
from .jobqueue import Delivery, JobQueue, QueueError, RedisJobQueue, queue_from_settings
from .models import ReviewJob
from .orchestrator import ReviewOrchestrator

log = logging.getLogger("flowlint.worker")


class WorkerState(str, Enum):
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


class ReviewWorker:
    def __init__(
        self,
        queue: JobQueue,
        process: Callable[[ReviewJob], Any],
        concurrency: int = 4,
        poll_timeout: float = 1.0,
        shutdown_timeout_s: float = 45.0,
    ):
        self.queue = queue
        self.process = process
        self.concurrency = max(1, concurrency)
        self.poll_timeout = poll_timeout
        self.shutdown_timeout_s = shutdown_timeout_s
        self._state = WorkerState.RUNNING
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._slots = threading.Semaphore(self.concurrency)
        self._inflight: Set[Future] = set()
        self.completed = 0
        self.failed = 0

    @property
    def state(self) -> WorkerState:
        with self._lock:
            return self._state

    def request_shutdown(self) -> bool:
        """Start draining. Returns False if a shutdown is already under way."""
        with self._lock:
            if self._state is not WorkerState.RUNNING:
                return False
            self._state = WorkerState.DRAINING
        self._wake.set()
        log.info("shutdown requested; draining in-flight jobs")
        return True

    def run(self) -> bool:
        """Process jobs until shutdown is requested.

        Returns True when every in-flight job finished within the drain
        timeout, False otherwise.
        """
        pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="review")
        log.info("worker started concurrency=%d", self.concurrency)
        drained = False
        try:
            while self.state is WorkerState.RUNNING:
                if not self._slots.acquire(timeout=self.poll_timeout):
                    continue
                delivery = self._reserve()
                if delivery is None:
                    self._slots.release()
                    continue
                fut = pool.submit(self._handle, delivery)
                with self._lock:
                    self._inflight.add(fut)
                fut.add_done_callback(self._discard)
            drained = self._drain()
        finally:
            pool.shutdown(wait=drained, cancel_futures=True)
            self.queue.close()
            with self._lock:
                self._state = WorkerState.STOPPED
        log.info("worker stopped completed=%d failed=%d drained=%s", self.completed, self.failed, drained)
        return drained

    def _reserve(self) -> Optional[Delivery]:
        try:
            return self.queue.reserve(timeout=self.poll_timeout)
        except QueueError as e:
            log.error("could not reserve job error=%s", e)
            self._wake.wait(self.poll_timeout)
            return None

    def _drain(self) -> bool:
        with self._lock:
            inflight = set(self._inflight)
        if not inflight:
            return True
        log.info("waiting for %d in-flight job(s) timeout=%.0fs", len(inflight), self.shutdown_timeout_s)
        _, not_done = wait(inflight, timeout=self.shutdown_timeout_s)
        if not_done:
            log.error("drain timed out with %d job(s) still running", len(not_done))
        return not not_done

    def _discard(self, fut: Future) -> None:
        with self._lock:
            self._inflight.discard(fut)

    def _handle(self, delivery: Delivery) -> None:
        try:
            self.process(delivery.job)
        except Exception as e:
            log.exception("job failed job=%s attempt=%d", delivery.job_id, delivery.attempt)
            with self._lock:
                self.failed += 1
            try:
                retried = self.queue.fail(delivery, e)
            except QueueError as qe:
                log.error("could not record failure job=%s error=%s", delivery.job_id, qe)
            else:
                if not retried:
                    log.error("job dropped after %d attempt(s) job=%s", delivery.attempt, delivery.job_id)
        else:
            with self._lock:
                self.completed += 1
            try:
                self.queue.complete(delivery)
            except QueueError as qe:
                log.error("could not complete job=%s error=%s", delivery.job_id, qe)
            log.info("job completed job=%s attempt=%d", delivery.job_id, delivery.attempt)
        finally:
            self._slots.release()


def main() -> int:
    load_dotenv(dotenv_path=".env")
    settings = Settings.from_env()
    setup_logging(settings.log_level)

    queue = queue_from_settings(settings)
    if settings.recover_stalled and isinstance(queue, RedisJobQueue):
        queue.requeue_active(settings.stalled_after_s)

    orchestrator = ReviewOrchestrator.from_settings(settings, client_factory(settings))
    worker = ReviewWorker(
        queue,
        orchestrator.process,
        concurrency=settings.worker_concurrency,
        shutdown_timeout_s=settings.shutdown_timeout_s,
    )

    def _on_signal(signum, _frame) -> None:
        name = signal.Signals(signum).name
        if worker.request_shutdown():
            log.info("received %s", name)
        else:
            log.info("received %s while %s; ignoring", name, worker.state.value)

    signal.signal(signal.SIGTERM, _on_signal)
    signal.signal(signal.SIGINT, _on_signal)

    if not worker.run():
        log.error("forcing exit after %.0fs drain timeout", settings.shutdown_timeout_s)
        logging.shutdown()
        os._exit(1)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
