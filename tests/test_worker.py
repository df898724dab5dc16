"""Tests for per-job locks and the ingestion worker pool."""

import threading

from src.engine.models import JobStatus
from src.pipeline.ingestion import IngestionPipeline
from src.pipeline.uploads import IngestionTask, UploadService
from src.pipeline.worker import IngestionWorkerPool, JobLocks


class ExplodingPipeline(IngestionPipeline):
    """Pipeline whose ingest raises for one specific job."""

    def __init__(self, store, bad_job_id):
        super().__init__(store)
        self.bad_job_id = bad_job_id

    def ingest(self, job_id, *args, **kwargs):
        if job_id == self.bad_job_id:
            raise RuntimeError("worker crashed")
        return super().ingest(job_id, *args, **kwargs)


def register(store, tmp_path, name, rows):
    csv_file = tmp_path / name
    csv_file.write_text("Txn ID,Amount,Ref,Date,Memo\n" + "".join(rows))
    job, _ = UploadService(store).register_upload(csv_file)
    return job


class TestJobLocks:
    """Test per-job mutual exclusion."""

    def test_same_job_is_serialized(self):
        locks = JobLocks()
        entered = threading.Event()
        release = threading.Event()

        def hold():
            with locks.hold("job-1"):
                entered.set()
                release.wait(5)

        thread = threading.Thread(target=hold)
        thread.start()
        entered.wait(5)

        assert locks.is_held("job-1")
        assert not locks.is_held("job-2")

        release.set()
        thread.join(5)
        assert not locks.is_held("job-1")

    def test_different_jobs_do_not_block(self):
        locks = JobLocks()
        with locks.hold("job-1"):
            with locks.hold("job-2"):
                assert locks.is_held("job-1")
                assert locks.is_held("job-2")


class TestIngestionWorkerPool:
    """Test concurrent ingestion of several jobs."""

    def test_processes_all_jobs(self, store, tmp_path, mapping):
        jobs = [
            register(store, tmp_path, f"upload_{n}.csv", [
                f"T{n}-{i},{i}.00,R{i},2024-01-01,\n" for i in range(1, 6)
            ])
            for n in range(4)
        ]

        pool = IngestionWorkerPool(IngestionPipeline(store, batch_size=2), workers=3)
        pool.start()
        for job in jobs:
            pool.submit(IngestionTask(job.id, job.file_path, mapping))
        pool.join()
        pool.stop()

        for job in jobs:
            stored = store.get_job(job.id)
            assert stored.status == JobStatus.COMPLETED
            assert stored.processed_records == 5
            assert store.count_upload_records(job.id) == 5
            assert pool.results[job.id].accepted == 5

    def test_crash_does_not_stop_worker(self, store, tmp_path, mapping):
        bad = register(store, tmp_path, "bad.csv", ["B1,1.00,R1,2024-01-01,\n"])
        good = register(store, tmp_path, "good.csv", ["G1,1.00,R1,2024-01-01,\n"])

        pool = IngestionWorkerPool(ExplodingPipeline(store, bad.id), workers=1)
        pool.start()
        pool.submit(IngestionTask(bad.id, bad.file_path, mapping))
        pool.submit(IngestionTask(good.id, good.file_path, mapping))
        pool.stop()

        assert bad.id not in pool.results
        assert not pool.locks.is_held(bad.id)
        assert store.get_job(good.id).status == JobStatus.COMPLETED

    def test_run_task_inline(self, store, tmp_path, mapping):
        job = register(store, tmp_path, "inline.csv", ["T1,abc,R1,2024-01-01,\n"])
        pool = IngestionWorkerPool(IngestionPipeline(store))

        result = pool.run_task(IngestionTask(job.id, job.file_path, mapping))

        assert result.succeeded
        assert result.rejected == 1
        assert pool.results[job.id] is result
