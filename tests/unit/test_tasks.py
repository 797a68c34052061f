from unittest.mock import MagicMock

import pytest

from photobooth.core.exceptions import ProcessingError
from photobooth.modules.jobs.models import JobMode, JobPayload
from photobooth.pipeline import tasks
from tests.conftest import write_green_screen_photo


@pytest.fixture
def counters(monkeypatch):
    counters = MagicMock()
    monkeypatch.setattr(tasks, "get_queue_counters", lambda: counters)
    return counters


@pytest.fixture
def use_runner(monkeypatch, runner):
    monkeypatch.setattr(tasks, "get_runner", lambda: runner)
    return runner


def test_task_returns_result_path(storage, use_runner, counters, backdrop_factory):
    backdrop_factory()
    photo = write_green_screen_photo(storage.raw_image_path("job-1"))
    payload = JobPayload(job_id="job-1", mode=JobMode.STADIUM, background_id="wankhede", input_image_path=str(photo))

    result = tasks.process_photo_job(payload.to_message())

    assert result == {"resultImagePath": str(storage.final_image_path("job-1"))}
    counters.job_started.assert_called_once()
    counters.job_finished.assert_called_once_with(True)


def test_task_failure_propagates_reason(storage, use_runner, counters):
    photo = write_green_screen_photo(storage.raw_image_path("job-2"))
    payload = JobPayload(job_id="job-2", mode=JobMode.CAPTAIN, background_id="missing", input_image_path=str(photo))

    with pytest.raises(ProcessingError, match="Background image not found"):
        tasks.process_photo_job(payload.to_message())

    counters.job_finished.assert_called_once_with(False)


def test_failure_reason_survives_message_only_rebuild():
    # The result backend rebuilds task exceptions from their message
    rebuilt = ProcessingError(*ProcessingError("Background image not found: x.jpg").args)

    assert str(rebuilt) == "Background image not found: x.jpg"
