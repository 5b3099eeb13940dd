"""
Submission Dispatcher — fans one stored submission out to every
configured destination.

Each destination runs as its own task behind a boundary that turns any
exception (or a timeout) into a ``failed-*`` outcome, so one broken
integration never stops the others.  Tasks run concurrently per stage;
email waits for Drive when the notification should carry file links.
The submission ends ``completed`` once every task has settled, whatever
the individual results.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Mapping, Optional, Protocol, Set

from config.settings import config
from core.connection_resolver import ConnectionRepository, ConnectionResolver
from core.exceptions import DeliveryError, NoConnection, NoData
from utils.dependency_resolver import resolve_dependencies
from utils.schemas import (
    DeliveryContext,
    DeliveryOutcome,
    DeliveryResult,
    DestinationKind,
    DispatchReport,
    FormConfig,
    ProcessingStatus,
    ResolvedConnections,
    Submission,
    UploadedFile,
)

logger = logging.getLogger(__name__)

_CONNECTED_KINDS = (DestinationKind.SHEETS, DestinationKind.CALENDAR, DestinationKind.DRIVE)


class Destination(Protocol):
    destination: DestinationKind

    async def deliver(self, ctx: DeliveryContext) -> DeliveryOutcome: ...


class SubmissionRepository(ConnectionRepository, Protocol):
    async def create_submission(self, form_id: str, payload: Dict) -> Submission: ...

    async def get_submission(self, submission_id: str) -> Optional[Submission]: ...

    async def update_status(self, submission_id: str, status: ProcessingStatus) -> None: ...

    async def save_outcomes(self, outcomes: List[DeliveryOutcome]) -> None: ...

    async def delivered_destinations(self, submission_id: str) -> Set[str]: ...

    async def list_outcomes(self, submission_id: str) -> List[DeliveryOutcome]: ...


class SubmissionDispatcher:
    """
    Parameters
    ----------
    destinations : destination kind → object with ``deliver(ctx)``
    resolver     : form → configured connections
    repository   : submission / outcome persistence
    timeout      : per-destination wall-clock limit in seconds
    """

    def __init__(
        self,
        destinations: Mapping[DestinationKind, Destination],
        resolver: ConnectionResolver,
        repository: SubmissionRepository,
        timeout: Optional[float] = None,
    ):
        self._destinations = dict(destinations)
        self._resolver = resolver
        self._repository = repository
        self._timeout = config.delivery_timeout_seconds if timeout is None else timeout

    # ── public entry point ──────────────────────────────────────────────

    async def dispatch(
        self,
        submission: Submission,
        files: Optional[List[UploadedFile]] = None,
    ) -> DispatchReport:
        """
        Deliver ``submission`` to its destinations and settle its status.

        Destinations already delivered for this submission (an earlier
        run) are skipped.  Only a failure outside every destination task,
        e.g. the database being unreachable, leaves the submission
        ``failed``.
        """
        files = files or []
        try:
            form = await self._repository.get_form(submission.form_id)
            if form is None:
                raise LookupError(f"Form {submission.form_id} not found")
            resolved = await self._resolver.resolve(submission.form_id)
            already = await self._repository.delivered_destinations(submission.id)

            plan = self._build_plan(form, resolved, already)
            logger.info(
                "Dispatching submission %s to %d destination(s)%s",
                submission.id,
                len(plan),
                f" (already delivered: {sorted(already)})" if already else "",
            )
            outcomes = await self._execute_plan(plan, submission, form, files)

            await self._repository.save_outcomes(outcomes)
            await self._repository.update_status(submission.id, ProcessingStatus.COMPLETED)
        except Exception:
            logger.exception("Dispatch of submission %s failed", submission.id)
            await self._mark_failed(submission.id)
            return DispatchReport(submission_id=submission.id, status=ProcessingStatus.FAILED)

        report = DispatchReport(
            submission_id=submission.id,
            status=ProcessingStatus.COMPLETED,
            outcomes=outcomes,
        )
        if report.partial_failure:
            failed = [o.destination.value for o in outcomes if o.result.is_failure]
            logger.warning(
                "Submission %s stored but delivery failed for: %s", submission.id, ", ".join(failed)
            )
        return report

    # ── planning ────────────────────────────────────────────────────────

    def _build_plan(
        self,
        form: FormConfig,
        resolved: ResolvedConnections,
        already: Set[str],
    ) -> List[Dict]:
        tasks: List[Dict] = []
        for kind in _CONNECTED_KINDS:
            connection = resolved.get(kind)
            if connection is None or kind not in self._destinations:
                continue
            if kind.value in already:
                logger.debug("Skipping %s: already delivered", kind.value)
                continue
            tasks.append({"task_id": kind.value, "kind": kind, "connection": connection, "depends_on": []})

        if (
            form.notification_emails
            and DestinationKind.EMAIL in self._destinations
            and DestinationKind.EMAIL.value not in already
        ):
            depends_on = [DestinationKind.DRIVE.value] if form.notify_includes_files else []
            tasks.append(
                {"task_id": DestinationKind.EMAIL.value, "kind": DestinationKind.EMAIL, "connection": None, "depends_on": depends_on}
            )
        return tasks

    # ── execution ───────────────────────────────────────────────────────

    async def _execute_plan(
        self,
        plan: List[Dict],
        submission: Submission,
        form: FormConfig,
        files: List[UploadedFile],
    ) -> List[DeliveryOutcome]:
        settled: Dict[str, DeliveryOutcome] = {}
        for stage_num, stage in enumerate(resolve_dependencies(plan), start=1):
            logger.debug("Stage %d: %s", stage_num, [t["task_id"] for t in stage])
            contexts = [
                DeliveryContext(
                    submission=submission,
                    form=form,
                    connection=task["connection"],
                    files=files,
                    upstream={dep: settled[dep] for dep in task["depends_on"] if dep in settled},
                )
                for task in stage
            ]
            results = await asyncio.gather(
                *[self._run_task(task["kind"], ctx) for task, ctx in zip(stage, contexts)],
                return_exceptions=True,
            )
            for task, result in zip(stage, results):
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError):
                        raise result
                    logger.error("Destination %s escaped its boundary: %r", task["task_id"], result)
                    result = self._failure(submission.id, task["kind"], result)
                settled[task["task_id"]] = result
        return list(settled.values())

    async def _run_task(self, kind: DestinationKind, ctx: DeliveryContext) -> DeliveryOutcome:
        """Task boundary: every exception becomes an outcome."""
        destination = self._destinations[kind]
        sid = ctx.submission.id
        try:
            outcome = await asyncio.wait_for(destination.deliver(ctx), timeout=self._timeout)
        except asyncio.TimeoutError:
            outcome = DeliveryOutcome(
                submission_id=sid,
                destination=kind,
                result=DeliveryResult.FAILED_RETRYABLE,
                detail=f"Timed out after {self._timeout:g}s",
                error_kind="Timeout",
            )
        except NoConnection as exc:
            outcome = DeliveryOutcome(
                submission_id=sid,
                destination=kind,
                result=DeliveryResult.SKIPPED_NO_CONNECTION,
                detail=str(exc),
                error_kind=exc.kind,
            )
        except NoData as exc:
            outcome = DeliveryOutcome(
                submission_id=sid,
                destination=kind,
                result=DeliveryResult.SKIPPED_NO_DATA,
                detail=str(exc),
                error_kind=exc.kind,
            )
        except Exception as exc:
            outcome = self._failure(sid, kind, exc)

        self._log_outcome(outcome)
        return outcome

    @staticmethod
    def _failure(submission_id: str, kind: DestinationKind, exc: BaseException) -> DeliveryOutcome:
        if isinstance(exc, DeliveryError):
            return DeliveryOutcome(
                submission_id=submission_id,
                destination=kind,
                result=DeliveryResult.FAILED_RETRYABLE if exc.retryable else DeliveryResult.FAILED_PERMANENT,
                detail=str(exc),
                error_kind=exc.kind,
                attempts=exc.attempts,
            )
        logger.error("Unexpected error in %s destination", kind.value, exc_info=exc)
        return DeliveryOutcome(
            submission_id=submission_id,
            destination=kind,
            result=DeliveryResult.FAILED_PERMANENT,
            detail=str(exc) or type(exc).__name__,
            error_kind=type(exc).__name__,
            attempts=1,
        )

    @staticmethod
    def _log_outcome(outcome: DeliveryOutcome) -> None:
        if outcome.result == DeliveryResult.DELIVERED:
            logger.info(
                "%s delivered for submission %s: %s",
                outcome.destination.value,
                outcome.submission_id,
                outcome.detail,
            )
        elif outcome.result.is_failure:
            logger.warning(
                "%s %s for submission %s after %d attempt(s): %s",
                outcome.destination.value,
                outcome.result.value,
                outcome.submission_id,
                outcome.attempts,
                outcome.detail,
            )
        else:
            logger.debug(
                "%s %s for submission %s: %s",
                outcome.destination.value,
                outcome.result.value,
                outcome.submission_id,
                outcome.detail,
            )

    async def _mark_failed(self, submission_id: str) -> None:
        try:
            await self._repository.update_status(submission_id, ProcessingStatus.FAILED)
        except Exception:
            logger.exception("Could not mark submission %s as failed", submission_id)
