"""
Submission intake — persist first, then hand the fan-out to the background.

The submitter's request completes as soon as the submission row is
committed; nothing a destination does can fail it.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from core.dispatcher import SubmissionDispatcher, SubmissionRepository
from core.task_supervisor import BackgroundTaskSupervisor
from utils.schemas import ProcessingStatus, Submission, SubmissionAccepted, UploadedFile

logger = logging.getLogger(__name__)


class FormNotFound(LookupError):
    pass


class SubmissionNotFound(LookupError):
    pass


class DispatchInProgress(RuntimeError):
    pass


def _task_name(submission_id: str) -> str:
    return f"dispatch-{submission_id}"


class SubmissionIntake:
    def __init__(
        self,
        repository: SubmissionRepository,
        dispatcher: SubmissionDispatcher,
        supervisor: BackgroundTaskSupervisor,
    ):
        self._repository = repository
        self._dispatcher = dispatcher
        self._supervisor = supervisor

    async def submit(
        self,
        form_id: str,
        payload: Dict[str, Any],
        files: Optional[List[UploadedFile]] = None,
    ) -> SubmissionAccepted:
        """
        Store the submission and schedule its dispatch.

        Raises ``FormNotFound`` for an unknown form.  Storage errors
        propagate: they are the only failure the submitter sees.
        """
        form = await self._repository.get_form(form_id)
        if form is None:
            raise FormNotFound(form_id)

        submission = await self._repository.create_submission(form_id, payload)
        logger.info(
            "Stored submission %s for form %s (%d field(s), %d file(s))",
            submission.id,
            form_id,
            len(payload),
            len(files or []),
        )
        self._schedule(submission, files)
        return SubmissionAccepted(submission_id=submission.id, status=submission.processing_status)

    async def redispatch(self, submission_id: str) -> Submission:
        """
        Re-run the fan-out for a stored submission.  Destinations that
        already delivered are skipped by the dispatcher.  Uploaded file
        bytes are not retained, so Drive has nothing to re-send.
        """
        submission = await self._repository.get_submission(submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        name = _task_name(submission_id)
        # Held from here until spawn; released if the status update fails.
        if not self._supervisor.reserve(name):
            raise DispatchInProgress(submission_id)

        try:
            await self._repository.update_status(submission_id, ProcessingStatus.PENDING)
        except BaseException:
            self._supervisor.release(name)
            raise
        submission = submission.model_copy(update={"processing_status": ProcessingStatus.PENDING})
        self._schedule(submission, None)
        return submission

    def _schedule(self, submission: Submission, files: Optional[List[UploadedFile]]) -> None:
        self._supervisor.spawn(self._dispatcher.dispatch(submission, files), name=_task_name(submission.id))
