"""
Tests for submission intake and re-dispatch scheduling.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from core.intake import DispatchInProgress, FormNotFound, SubmissionIntake, SubmissionNotFound
from core.task_supervisor import BackgroundTaskSupervisor
from utils.schemas import ProcessingStatus, UploadedFile

from conftest import FORM_ID, InMemoryRepository, make_form, make_submission


@pytest.fixture
def repo():
    return InMemoryRepository(make_form())


@pytest.fixture
def dispatcher():
    return AsyncMock()


@pytest.fixture
def intake(repo, dispatcher):
    return SubmissionIntake(repo, dispatcher, BackgroundTaskSupervisor())


class TestSubmit:
    @pytest.mark.asyncio
    async def test_stores_then_schedules_dispatch(self, intake, repo, dispatcher):
        files = [UploadedFile(field_id="resume", filename="cv.pdf", content=b"PDF")]

        accepted = await intake.submit(FORM_ID, {"name": "Alice"}, files)

        assert accepted.status == ProcessingStatus.PENDING
        stored = repo.submissions[accepted.submission_id]
        assert stored.payload == {"name": "Alice"}

        await asyncio.sleep(0)
        dispatcher.dispatch.assert_awaited_once_with(stored, files)

    @pytest.mark.asyncio
    async def test_unknown_form_is_rejected(self, intake, repo, dispatcher):
        with pytest.raises(FormNotFound):
            await intake.submit("no-such-form", {"name": "Alice"})

        assert repo.submissions == {}
        dispatcher.dispatch.assert_not_called()

    @pytest.mark.asyncio
    async def test_dispatch_failure_does_not_reach_submitter(self, repo):
        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = RuntimeError("fan-out exploded")
        supervisor = BackgroundTaskSupervisor()
        intake = SubmissionIntake(repo, dispatcher, supervisor)

        accepted = await intake.submit(FORM_ID, {"name": "Alice"})
        await supervisor.drain(timeout=1)

        assert accepted.submission_id in repo.submissions


class TestRedispatch:
    @pytest.mark.asyncio
    async def test_resets_status_and_schedules_without_files(self, intake, repo, dispatcher):
        submission = make_submission(processing_status=ProcessingStatus.COMPLETED)
        repo.submissions[submission.id] = submission

        result = await intake.redispatch(submission.id)

        assert result.processing_status == ProcessingStatus.PENDING
        assert repo.status_history == [ProcessingStatus.PENDING]
        await asyncio.sleep(0)
        dispatcher.dispatch.assert_awaited_once()
        assert dispatcher.dispatch.await_args.args[1] is None

    @pytest.mark.asyncio
    async def test_unknown_submission(self, intake):
        with pytest.raises(SubmissionNotFound):
            await intake.redispatch("missing")

    @pytest.mark.asyncio
    async def test_refuses_while_dispatch_is_running(self, repo):
        gate = asyncio.Event()

        async def slow_dispatch(submission, files):
            await gate.wait()

        dispatcher = AsyncMock()
        dispatcher.dispatch.side_effect = slow_dispatch
        supervisor = BackgroundTaskSupervisor()
        intake = SubmissionIntake(repo, dispatcher, supervisor)
        submission = make_submission()
        repo.submissions[submission.id] = submission

        await intake.redispatch(submission.id)
        with pytest.raises(DispatchInProgress):
            await intake.redispatch(submission.id)

        gate.set()
        await supervisor.drain(timeout=1)


class _YieldingRepository(InMemoryRepository):
    """Gives other requests a turn while the status update is in flight."""

    def __init__(self, *args, fail_update=False, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_update = fail_update

    async def update_status(self, submission_id, status):
        await asyncio.sleep(0)
        if self.fail_update:
            raise ConnectionError("database unavailable")
        await super().update_status(submission_id, status)


class TestConcurrentRedispatch:
    @pytest.mark.asyncio
    async def test_only_one_of_two_simultaneous_requests_dispatches(self):
        repo = _YieldingRepository(make_form())
        submission = make_submission()
        repo.submissions[submission.id] = submission
        dispatcher = AsyncMock()
        supervisor = BackgroundTaskSupervisor()
        intake = SubmissionIntake(repo, dispatcher, supervisor)

        results = await asyncio.gather(
            intake.redispatch(submission.id), intake.redispatch(submission.id), return_exceptions=True
        )
        await supervisor.drain(timeout=1)

        assert sum(isinstance(r, DispatchInProgress) for r in results) == 1
        assert dispatcher.dispatch.await_count == 1

    @pytest.mark.asyncio
    async def test_failed_status_update_frees_the_submission(self):
        repo = _YieldingRepository(make_form(), fail_update=True)
        submission = make_submission()
        repo.submissions[submission.id] = submission
        dispatcher = AsyncMock()
        supervisor = BackgroundTaskSupervisor()
        intake = SubmissionIntake(repo, dispatcher, supervisor)

        with pytest.raises(ConnectionError):
            await intake.redispatch(submission.id)

        assert not supervisor.is_running(f"dispatch-{submission.id}")
        repo.fail_update = False
        await intake.redispatch(submission.id)
        await supervisor.drain(timeout=1)
        dispatcher.dispatch.assert_awaited_once()
