import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from unittest.mock import MagicMock

import pytest
import redis
from kombu.exceptions import OperationalError
from PIL import Image

from photobooth.core.config import Settings
from photobooth.core.exceptions import BrokerUnavailableError
from photobooth.modules.jobs.backends import (
    DirectExecutionBackend,
    ExecutionBackend,
    QueueExecutionBackend,
    select_execution_backend,
)
from photobooth.modules.jobs.dispatcher import JobDispatcher
from photobooth.modules.jobs.models import ExecutionMode, JobMode, JobPayload, JobStatus, SubmissionOutcome
from photobooth.modules.jobs.store import BrokerJobStatusStore, InMemoryJobStatusStore
from photobooth.pipeline.runner import PhotoJobRunner
from photobooth.pipeline.stages import ImageCompositor
from tests.conftest import SUBJECT, write_green_screen_photo


def make_payload(storage, job_id="job-1", background_id="wankhede"):
    photo = write_green_screen_photo(storage.raw_image_path(job_id))
    return JobPayload(
        job_id=job_id,
        mode=JobMode.STADIUM,
        background_id=background_id,
        input_image_path=str(photo)
    )


class EchoEnhancer:
    """Returns the composited image unchanged once every party has reached it."""

    def __init__(self, parties: int):
        self.barrier = threading.Barrier(parties, timeout=10)
        self.calls = []

    def enhance(self, composited_image_path, mode):
        path = Path(composited_image_path)
        self.calls.append(path)
        self.barrier.wait()
        return path.read_bytes()


# =============================================================================
# Direct backend
# =============================================================================

class TestDirectExecutionBackend:
    def test_completed_job(self, storage, runner, backdrop_factory):
        backdrop_factory()
        store = InMemoryJobStatusStore(storage)
        backend = DirectExecutionBackend(store, runner)

        outcome = backend.submit(make_payload(storage))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result_image_url == "/static/outputs/job-1_final.jpg"
        assert backend.get_status("job-1").status == JobStatus.COMPLETED
        with Image.open(storage.final_image_path("job-1")) as final:
            assert final.format == "JPEG"

    def test_missing_backdrop_fails_job(self, storage, runner, enhancer):
        store = InMemoryJobStatusStore(storage)
        backend = DirectExecutionBackend(store, runner)

        outcome = backend.submit(make_payload(storage, background_id="nowhere"))

        assert outcome.status == JobStatus.FAILED
        assert "Background image not found" in outcome.error_message
        assert backend.get_status("job-1").error_message == outcome.error_message
        assert enhancer.calls == []
        assert not storage.final_image_path("job-1").exists()

    def test_concurrent_jobs_keep_their_own_files(self, storage, backdrop_factory):
        backdrops = {"job-a": ("north", (30, 30, 120)), "job-b": ("south", (220, 200, 40))}
        for background_id, color in backdrops.values():
            backdrop_factory(background_id=background_id, ext=".png", color=color)
        enhancer = EchoEnhancer(parties=2)
        backend = DirectExecutionBackend(
            InMemoryJobStatusStore(storage),
            PhotoJobRunner(storage, ImageCompositor(storage), enhancer)
        )
        payloads = [make_payload(storage, job_id, background_id) for job_id, (background_id, _) in backdrops.items()]

        with ThreadPoolExecutor(max_workers=2) as pool:
            outcomes = list(pool.map(backend.submit, payloads))

        assert [o.status for o in outcomes] == [JobStatus.COMPLETED, JobStatus.COMPLETED]
        assert sorted(enhancer.calls) == sorted(storage.composited_path(job_id) for job_id in backdrops)
        for job_id, (_, color) in backdrops.items():
            assert backend.get_status(job_id).result_image_url == f"/static/outputs/{job_id}_final.jpg"
            with Image.open(storage.composited_path(job_id)) as composited:
                composited = composited.convert("RGB")
                assert composited.getpixel((0, 0)) == color
                assert composited.getpixel((100, 70)) == SUBJECT
            with Image.open(storage.final_image_path(job_id)) as final:
                corner = final.convert("RGB").getpixel((0, 0))
                assert all(abs(a - b) <= 8 for a, b in zip(corner, color))

    def test_health(self, storage, runner):
        health = DirectExecutionBackend(InMemoryJobStatusStore(storage), runner).health()

        assert health["queueEnabled"] is False
        assert health["mode"] == "direct-processing"
        assert health["message"]


# =============================================================================
# Queue backend
# =============================================================================

@pytest.fixture
def redis_client():
    client = MagicMock()
    client.set.return_value = True
    client.exists.return_value = 1
    return client


def make_queue_backend(storage, redis_client, states=(), submit_mode="async", max_attempts=300):
    results = iter(states)
    store = BrokerJobStatusStore(
        redis_client,
        storage,
        result_lookup=lambda job_id: next(results)
    )
    sleeps = []
    backend = QueueExecutionBackend(
        store,
        task=MagicMock(),
        counters=MagicMock(),
        submit_mode=submit_mode,
        poll_interval_seconds=1.0,
        poll_max_attempts=max_attempts,
        sleep=sleeps.append
    )
    return backend, sleeps


def result(state, value=None):
    return MagicMock(state=state, result=value)


class TestQueueExecutionBackend:
    def test_async_submit_enqueues_with_job_id(self, storage, redis_client):
        backend, sleeps = make_queue_backend(storage, redis_client)
        payload = make_payload(storage)

        outcome = backend.submit(payload)

        assert outcome.status == JobStatus.PROCESSING
        assert outcome.is_pending
        backend.task.apply_async.assert_called_once_with(args=[payload.to_message()], task_id="job-1")
        assert sleeps == []

    def test_enqueue_failure_raises_unavailable(self, storage, redis_client):
        backend, _ = make_queue_backend(storage, redis_client)
        backend.task.apply_async.side_effect = OperationalError("Error 111 connecting to redis")

        with pytest.raises(BrokerUnavailableError):
            backend.submit(make_payload(storage))

        redis_client.delete.assert_called_once_with("photobooth:job:job-1")

    def test_wait_mode_returns_completed(self, storage, redis_client):
        states = [result("PENDING"), result("STARTED"), result("SUCCESS", {"resultImagePath": "x"})]
        backend, sleeps = make_queue_backend(storage, redis_client, states, submit_mode="wait")

        outcome = backend.submit(make_payload(storage))

        assert outcome.status == JobStatus.COMPLETED
        assert outcome.result_image_url == "/static/outputs/job-1_final.jpg"
        assert sleeps == [1.0, 1.0]

    def test_wait_mode_returns_failure_reason(self, storage, redis_client):
        states = [result("STARTED"), result("FAILURE", RuntimeError("Gemini API call failed after 3 attempts: 503"))]
        backend, _ = make_queue_backend(storage, redis_client, states, submit_mode="wait")

        outcome = backend.submit(make_payload(storage))

        assert outcome.status == JobStatus.FAILED
        assert outcome.error_message == "Gemini API call failed after 3 attempts: 503"

    def test_wait_mode_timeout_leaves_job_running(self, storage, redis_client):
        states = [result("STARTED")] * 4
        backend, sleeps = make_queue_backend(storage, redis_client, states, submit_mode="wait", max_attempts=3)

        outcome = backend.submit(make_payload(storage))

        assert outcome.status == JobStatus.FAILED
        assert outcome.error_message == "Job processing timed out after 3 seconds"
        assert len(sleeps) == 3
        # The status query still reports what the broker says
        assert backend.get_status("job-1").status == JobStatus.PROCESSING

    def test_health_reports_counters(self, storage, redis_client):
        backend, _ = make_queue_backend(storage, redis_client)
        backend.counters.snapshot.return_value = {"waiting": 2, "active": 1, "completed": 5, "failed": 0}

        assert backend.health() == {
            "queueEnabled": True,
            "mode": "queue-based",
            "redis": "connected",
            "metrics": {"waiting": 2, "active": 1, "completed": 5, "failed": 0},
        }


# =============================================================================
# Selection
# =============================================================================

class TestSelectExecutionBackend:
    def test_no_broker_configured(self, storage, runner):
        backend = select_execution_backend(Settings(REDIS_URL=None), storage, runner)

        assert isinstance(backend, DirectExecutionBackend)

    def test_unreachable_broker_falls_back_to_direct(self, storage, runner):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("refused")
        factory = MagicMock(return_value=client)

        backend = select_execution_backend(
            Settings(REDIS_URL="redis://broker:6379/0", BROKER_CONNECT_TIMEOUT_SECONDS=0.5),
            storage,
            runner,
            redis_factory=factory
        )

        assert isinstance(backend, DirectExecutionBackend)
        factory.assert_called_once_with(
            "redis://broker:6379/0",
            socket_connect_timeout=0.5,
            socket_timeout=0.5
        )

    def test_reachable_broker_selects_queue(self, storage, runner):
        client = MagicMock()
        task = MagicMock()

        backend = select_execution_backend(
            Settings(REDIS_URL="redis://broker:6379/0", JOB_SUBMIT_MODE="wait"),
            storage,
            runner,
            redis_factory=MagicMock(return_value=client),
            task=task
        )

        assert isinstance(backend, QueueExecutionBackend)
        assert backend.mode == ExecutionMode.QUEUE
        assert backend.submit_mode == "wait"
        assert backend.store.result_lookup is task.AsyncResult

    def test_reuses_given_status_store(self, storage, runner):
        store = InMemoryJobStatusStore(storage)

        backend = select_execution_backend(Settings(REDIS_URL=""), storage, runner, status_store=store)

        assert backend.store is store


# =============================================================================
# Dispatcher
# =============================================================================

class DeadQueueBackend(ExecutionBackend):
    mode = ExecutionMode.QUEUE

    def __init__(self):
        self.submissions = 0
        self.closed = False

    def submit(self, payload):
        self.submissions += 1
        raise BrokerUnavailableError("Failed to enqueue job: connection refused")

    def get_status(self, job_id):
        return None

    def health(self):
        raise BrokerUnavailableError("down")

    def close(self):
        self.closed = True


class RecordingDirectBackend(ExecutionBackend):
    mode = ExecutionMode.DIRECT

    def __init__(self):
        self.submitted = []
        self.closed = False

    def submit(self, payload):
        self.submitted.append(payload.job_id)
        return SubmissionOutcome(job_id=payload.job_id, status=JobStatus.COMPLETED)

    def get_status(self, job_id):
        return None

    def health(self):
        return {"queueEnabled": False}

    def close(self):
        self.closed = True


class TestJobDispatcher:
    def test_downgrades_once_and_stays_direct(self, storage):
        queue, direct = DeadQueueBackend(), RecordingDirectBackend()
        factory = MagicMock(return_value=direct)
        dispatcher = JobDispatcher(queue, fallback_factory=factory)

        first = dispatcher.submit(make_payload(storage, "job-a"))
        second = dispatcher.submit(make_payload(storage, "job-b"))

        assert first.status == second.status == JobStatus.COMPLETED
        assert factory.call_count == 1
        assert queue.submissions == 1
        assert direct.submitted == ["job-a", "job-b"]
        assert dispatcher.mode == ExecutionMode.DIRECT
        assert dispatcher.downgraded

    def test_concurrent_failures_share_one_downgrade(self, storage):
        queue, direct = DeadQueueBackend(), RecordingDirectBackend()
        factory = MagicMock(return_value=direct)
        dispatcher = JobDispatcher(queue, fallback_factory=factory)
        payloads = [make_payload(storage, f"job-{n}") for n in range(8)]
        barrier = threading.Barrier(len(payloads))

        def submit(payload):
            barrier.wait()
            dispatcher.submit(payload)

        threads = [threading.Thread(target=submit, args=(p,)) for p in payloads]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert factory.call_count == 1
        assert sorted(direct.submitted) == sorted(p.job_id for p in payloads)

    def test_without_fallback_error_propagates(self, storage):
        dispatcher = JobDispatcher(DeadQueueBackend())

        with pytest.raises(BrokerUnavailableError):
            dispatcher.submit(make_payload(storage))
        assert dispatcher.mode == ExecutionMode.QUEUE

    def test_close_closes_retired_backend(self, storage):
        queue, direct = DeadQueueBackend(), RecordingDirectBackend()
        dispatcher = JobDispatcher(queue, fallback_factory=lambda: direct)
        dispatcher.submit(make_payload(storage))

        dispatcher.close()

        assert queue.closed and direct.closed
