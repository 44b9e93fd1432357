"""
Processing Queue Module.

Batches extraction jobs and runs them on a bounded worker pool.

A dispatcher thread flushes a batch when max_batch_size jobs are pending or
the oldest pending job has waited max_wait_time seconds. Pending jobs run
highest priority first, then in submission order. Each job is isolated: an
exception fails that job only.

Counters always satisfy:
    submitted == succeeded + failed + queued + processing

Author: ML Engineering Team
"""

import itertools
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from config import get_config
from vat_extraction.utils.exceptions import InvalidTransitionError, categorize
from vat_extraction.utils.helpers import generate_id, utc_now
from vat_extraction.utils.logger import get_logger

# Initialize module logger
logger = get_logger(__name__)

CANCELLED_REASON = "cancelled"
SHUTDOWN_REASON = "queue shut down"


class JobStatus(str, Enum):
    """Lifecycle states of a queue job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)


@dataclass(eq=False)
class QueueJob:
    """
    A unit of work tracked by the processing queue.

    The terminal status is set exactly once; a second attempt raises
    InvalidTransitionError.

    Attributes:
        id: Job identifier.
        payload: Handler input.
        priority: Higher runs first.
        sequence: Submission order.
        created_at: ISO-8601 submission time.
        status: Current JobStatus.
        result: Handler return value once succeeded.
        error: Readable failure reason once failed.
        error_category: ErrorCategory value of the failure.
        cancelled: True when the job was cancelled while queued.
    """
    id: str
    payload: Any
    priority: int = 0
    sequence: int = 0
    created_at: str = field(default_factory=lambda: utc_now().isoformat())
    status: JobStatus = JobStatus.QUEUED
    result: Any = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    cancelled: bool = False
    enqueued_at: float = field(default_factory=time.monotonic, repr=False)
    started_at: Optional[float] = field(default=None, repr=False)
    finished_at: Optional[float] = field(default=None, repr=False)
    _done: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def processing_time_ms(self) -> Optional[float]:
        if self.started_at is None or self.finished_at is None:
            return None
        return (self.finished_at - self.started_at) * 1000

    def mark_processing(self, now: float) -> None:
        if self.status != JobStatus.QUEUED:
            raise InvalidTransitionError("job", self.status.value, JobStatus.PROCESSING.value)
        self.status = JobStatus.PROCESSING
        self.started_at = now

    def succeed(self, result: Any, now: float) -> None:
        self._finish(JobStatus.SUCCEEDED, now)
        self.result = result
        self._done.set()

    def fail(self, reason: str, now: float, category: Optional[str] = None, cancelled: bool = False) -> None:
        self._finish(JobStatus.FAILED, now)
        self.error = reason
        self.error_category = category
        self.cancelled = cancelled
        self._done.set()

    def _finish(self, status: JobStatus, now: float) -> None:
        if self.is_terminal:
            raise InvalidTransitionError("job", self.status.value, status.value)
        self.status = status
        self.finished_at = now

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the job is terminal. Returns False on timeout."""
        return self._done.wait(timeout)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'priority': self.priority,
            'status': self.status.value,
            'created_at': self.created_at,
            'error': self.error,
            'error_category': self.error_category,
            'cancelled': self.cancelled,
            'processing_time_ms': self.processing_time_ms,
        }


@dataclass
class QueueMetrics:
    """Point-in-time queue counters."""
    submitted: int = 0
    succeeded: int = 0
    failed: int = 0
    cancelled: int = 0
    queued: int = 0
    processing: int = 0
    average_processing_time_ms: float = 0.0
    throughput_per_second: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'submitted': self.submitted,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'cancelled': self.cancelled,
            'queued': self.queued,
            'processing': self.processing,
            'average_processing_time_ms': round(self.average_processing_time_ms, 2),
            'throughput_per_second': round(self.throughput_per_second, 4),
        }


class ProcessingQueue:
    """
    Priority batch queue with a worker concurrency cap.

    Attributes:
        handler: Callable run once per job payload.
        max_batch_size: Jobs per dispatched batch.
        max_wait_time: Seconds the oldest pending job may wait for a batch.
        max_workers: Worker pool size.
        history_size: Terminal jobs kept for status lookups.

    Example:
        >>> queue = ProcessingQueue(handler=pipeline.run_job, max_workers=4)
        >>> queue.start()
        >>> job = queue.submit(payload, priority=5)
        >>> queue.wait_for(job.id).status
        <JobStatus.SUCCEEDED: 'succeeded'>
    """

    def __init__(
        self,
        handler: Callable[[Any], Any],
        max_batch_size: Optional[int] = None,
        max_wait_time: Optional[float] = None,
        max_workers: Optional[int] = None,
        history_size: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self.handler = handler
        self.max_batch_size = int(max_batch_size or get_config("queue.max_batch_size", 10))
        self.max_wait_time = float(
            max_wait_time if max_wait_time is not None
            else get_config("queue.max_wait_time_seconds", 5.0)
        )
        self.max_workers = int(max_workers or get_config("queue.max_concurrent_uploads", 4))
        self.history_size = int(history_size or get_config("queue.history_size", 1000))
        self._clock = clock

        self._lock = threading.Lock()
        self._condition = threading.Condition(self._lock)
        self._pending: List[QueueJob] = []
        self._active: Dict[str, QueueJob] = {}
        self._history: "OrderedDict[str, QueueJob]" = OrderedDict()
        self._sequence = itertools.count()

        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._cancelled = 0
        self._processing = 0
        self._processing_time_total = 0.0
        self._timed_jobs = 0
        self._started_at: Optional[float] = None

        self._executor: Optional[ThreadPoolExecutor] = None
        self._dispatcher: Optional[threading.Thread] = None
        self._draining = False
        self._accepting = True

        logger.debug(
            f"ProcessingQueue initialized (batch={self.max_batch_size}, "
            f"wait={self.max_wait_time}s, workers={self.max_workers})"
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the dispatcher thread and the worker pool."""
        with self._lock:
            if self._dispatcher is not None:
                return
            self._draining = False
            self._accepting = True
            self._started_at = self._clock()
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="extraction-worker"
            )
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, args=(self._executor,),
                name="queue-dispatcher", daemon=True
            )
            self._dispatcher.start()
        logger.info(f"Processing queue started with {self.max_workers} workers")

    def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting jobs and stop the dispatcher.

        Args:
            wait: Drain pending jobs and wait for running ones. When False,
                queued jobs fail with a shutdown reason.
        """
        with self._condition:
            self._accepting = False
            if not wait:
                now = self._clock()
                for job in list(self._active.values()):
                    if job.status == JobStatus.QUEUED:
                        job.fail(SHUTDOWN_REASON, now)
                        self._failed += 1
                        self._retire(job)
                self._pending.clear()
            self._draining = True
            self._condition.notify_all()
            dispatcher, self._dispatcher = self._dispatcher, None
            executor, self._executor = self._executor, None

        if dispatcher is not None:
            dispatcher.join()
        if executor is not None:
            executor.shutdown(wait=wait)
        logger.info("Processing queue stopped")

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def submit(self, payload: Any, priority: int = 0) -> QueueJob:
        """
        Enqueue a job.

        Raises:
            RuntimeError: If the queue is shut down.
        """
        with self._condition:
            if not self._accepting:
                raise RuntimeError("Processing queue is shut down")
            job = QueueJob(
                id=generate_id("job"),
                payload=payload,
                priority=int(priority),
                sequence=next(self._sequence),
                enqueued_at=self._clock(),
            )
            self._pending.append(job)
            self._active[job.id] = job
            self._submitted += 1
            self._condition.notify_all()
        logger.debug(f"Job {job.id} queued (priority={job.priority})")
        return job

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a job that has not started.

        Returns:
            True if the job was cancelled; False if unknown or already running.
        """
        with self._condition:
            job = self._active.get(job_id)
            if job is None or job.status != JobStatus.QUEUED:
                return False
            if job in self._pending:
                self._pending.remove(job)
            job.fail(CANCELLED_REASON, self._clock(), cancelled=True)
            self._failed += 1
            self._cancelled += 1
            self._retire(job)
        logger.info(f"Job {job_id} cancelled")
        return True

    def get_job(self, job_id: str) -> Optional[QueueJob]:
        with self._lock:
            return self._active.get(job_id) or self._history.get(job_id)

    def wait_for(self, job_id: str, timeout: Optional[float] = None) -> QueueJob:
        """
        Block until a job is terminal.

        Raises:
            KeyError: If the job is unknown.
            TimeoutError: If the job is still running after timeout.
        """
        job = self.get_job(job_id)
        if job is None:
            raise KeyError(job_id)
        if not job.wait(timeout):
            raise TimeoutError(f"Job {job_id} still {job.status.value} after {timeout}s")
        return job

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait until no job is queued or processing. Returns False on timeout."""
        with self._condition:
            return self._condition.wait_for(lambda: not self._active, timeout)

    def metrics(self) -> QueueMetrics:
        with self._lock:
            queued = sum(1 for j in self._active.values() if j.status == JobStatus.QUEUED)
            completed = self._succeeded + self._failed - self._cancelled
            elapsed = self._clock() - self._started_at if self._started_at is not None else 0.0
            return QueueMetrics(
                submitted=self._submitted,
                succeeded=self._succeeded,
                failed=self._failed,
                cancelled=self._cancelled,
                queued=queued,
                processing=self._processing,
                average_processing_time_ms=(
                    self._processing_time_total / self._timed_jobs if self._timed_jobs else 0.0
                ),
                throughput_per_second=completed / elapsed if elapsed > 0 else 0.0,
            )

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    def _dispatch_loop(self, executor: ThreadPoolExecutor) -> None:
        while True:
            with self._condition:
                batch = self._next_batch()
                while batch is None:
                    if self._draining and not self._pending:
                        return
                    self._condition.wait(self._wait_timeout())
                    batch = self._next_batch()

            logger.debug(f"Dispatching batch of {len(batch)} job(s)")
            for job in batch:
                executor.submit(self._run, job)

    def _next_batch(self) -> Optional[List[QueueJob]]:
        if not self._pending:
            return None
        oldest = min(job.enqueued_at for job in self._pending)
        due = (
            len(self._pending) >= self.max_batch_size
            or self._clock() - oldest >= self.max_wait_time
            or self._draining
        )
        if not due:
            return None
        self._pending.sort(key=lambda job: (-job.priority, job.sequence))
        batch = self._pending[:self.max_batch_size]
        del self._pending[:self.max_batch_size]
        return batch

    def _wait_timeout(self) -> Optional[float]:
        if not self._pending:
            return None
        oldest = min(job.enqueued_at for job in self._pending)
        return max(0.0, self.max_wait_time - (self._clock() - oldest))

    def _run(self, job: QueueJob) -> None:
        with self._lock:
            if job.status != JobStatus.QUEUED:
                return
            job.mark_processing(self._clock())
            self._processing += 1

        try:
            result = self.handler(job.payload)
        except Exception as exc:
            logger.error(f"Job {job.id} failed: {exc}")
            with self._condition:
                job.fail(str(exc) or type(exc).__name__, self._clock(), category=categorize(exc).value)
                self._failed += 1
                self._finish(job)
        else:
            with self._condition:
                job.succeed(result, self._clock())
                self._succeeded += 1
                self._finish(job)
            logger.debug(f"Job {job.id} succeeded in {job.processing_time_ms:.0f}ms")

    def _finish(self, job: QueueJob) -> None:
        self._processing -= 1
        self._processing_time_total += job.processing_time_ms or 0.0
        self._timed_jobs += 1
        self._retire(job)

    def _retire(self, job: QueueJob) -> None:
        self._active.pop(job.id, None)
        self._history[job.id] = job
        while len(self._history) > self.history_size:
            self._history.popitem(last=False)
        self._condition.notify_all()
