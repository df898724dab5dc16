"""Per-job serialization and the ingestion worker pool."""

import logging
import queue
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Dict, List, Optional

from src.pipeline.ingestion import IngestionPipeline, IngestionResult
from src.pipeline.uploads import IngestionTask

logger = logging.getLogger(__name__)


class JobLocks:
    """
    One mutex per job id.

    Ingestion and reconciliation both delete then insert rows for a job, so
    two runs against the same job must never interleave. Runs for different
    jobs proceed in parallel.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, job_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(job_id)
            if lock is None:
                lock = self._locks[job_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, job_id: str) -> Iterator[None]:
        """Block until the job's lock is free, then hold it for the ``with`` body."""
        lock = self._lock_for(job_id)
        with lock:
            yield

    def is_held(self, job_id: str) -> bool:
        return self._lock_for(job_id).locked()


class IngestionWorkerPool:
    """
    Worker threads consuming ingestion tasks from a shared queue.

    Each task runs to completion on one worker. A task that blows up is
    logged and the worker moves on to the next one.
    """

    _STOP = object()

    def __init__(
        self,
        pipeline: IngestionPipeline,
        locks: Optional[JobLocks] = None,
        workers: int = 2,
    ):
        if workers < 1:
            raise ValueError("At least one worker is required")
        self.pipeline = pipeline
        self.locks = locks or JobLocks()
        self.workers = workers
        self.results: Dict[str, IngestionResult] = {}
        self._queue: "queue.Queue" = queue.Queue()
        self._threads: List[threading.Thread] = []
        self._results_lock = threading.Lock()

    def submit(self, task: IngestionTask) -> None:
        self._queue.put(task)
        logger.debug("Queued ingestion of job %s", task.job_id)

    def start(self) -> None:
        if self._threads:
            return
        for n in range(self.workers):
            thread = threading.Thread(
                target=self._work, name=f"ingestion-worker-{n}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def join(self) -> None:
        """Wait until every queued task has been processed."""
        self._queue.join()

    def stop(self) -> None:
        """Finish queued work, then shut the workers down."""
        for _ in self._threads:
            self._queue.put(self._STOP)
        for thread in self._threads:
            thread.join()
        self._threads = []

    def run_task(self, task: IngestionTask) -> Optional[IngestionResult]:
        """Run one task on the calling thread under the job's lock."""
        try:
            with self.locks.hold(task.job_id):
                result = self.pipeline.ingest(
                    task.job_id,
                    task.file_path,
                    task.column_mapping,
                    actor=task.actor,
                )
        except Exception:
            logger.exception("Worker failed on job %s", task.job_id)
            return None

        with self._results_lock:
            self.results[task.job_id] = result
        return result

    def _work(self) -> None:
        while True:
            task = self._queue.get()
            try:
                if task is self._STOP:
                    return
                self.run_task(task)
            finally:
                self._queue.task_done()
