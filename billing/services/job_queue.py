from __future__ import annotations

import logging
import os
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Mapping

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from ..exceptions import JobExhaustedError, ValidationError
from ..models import Job

logger = logging.getLogger(__name__)

JobHandler = Callable[[dict], "dict | None"]

DEFAULT_MAX_RETRIES = 3


def max_jobs_per_run() -> int:
    return int(getattr(settings, "BILLING_JOB_MAX_JOBS_PER_RUN", 10))


def backoff_seconds(retry_count: int, *, base_seconds: int | None = None) -> int:
    """Quadratischer Backoff: 30 s, 120 s, 270 s, ..."""
    if base_seconds is None:
        base_seconds = int(getattr(settings, "BILLING_JOB_BACKOFF_BASE_SECONDS", 30))
    return base_seconds * int(retry_count) ** 2


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def enqueue(
    job_type: str,
    payload: Mapping[str, object] | None = None,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    scheduled_for: datetime | None = None,
) -> Job:
    if job_type not in Job.JobType.values:
        raise ValidationError(f"Unbekannter Auftragstyp: {job_type}", job_type=job_type)
    if int(max_retries) < 1:
        raise ValidationError("max_retries muss mindestens 1 sein.")
    return Job.objects.create(
        job_type=job_type,
        payload=dict(payload or {}),
        max_retries=max_retries,
        scheduled_for=scheduled_for or timezone.now(),
    )


@transaction.atomic
def claim_next_job(worker_id: str, *, now: datetime | None = None) -> Job | None:
    now = now or timezone.now()
    job = (
        Job.objects.select_for_update(skip_locked=True)
        .filter(status__in=Job.CLAIMABLE_STATUSES, scheduled_for__lte=now)
        .order_by("scheduled_for", "pk")
        .first()
    )
    if job is None:
        return None
    job.status = Job.Status.PROCESSING
    job.locked_by = worker_id
    job.started_at = now
    job.save(update_fields=["status", "locked_by", "started_at", "updated_at"])
    return job


@dataclass(slots=True)
class WorkerSummary:
    processed: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    job_ids: list[int] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "processed": self.processed,
            "completed": self.completed,
            "retried": self.retried,
            "failed": self.failed,
            "job_ids": self.job_ids,
        }


class JobWorker:
    """Holt fällige Aufträge, führt sie aus und plant Wiederholungen."""

    def __init__(
        self,
        handlers: Mapping[str, JobHandler] | None = None,
        *,
        worker_id: str | None = None,
        max_jobs: int | None = None,
    ):
        if handlers is None:
            from .job_handlers import DEFAULT_HANDLERS

            handlers = DEFAULT_HANDLERS
        self.handlers = dict(handlers)
        self.worker_id = worker_id or default_worker_id()
        self.max_jobs = max_jobs or max_jobs_per_run()

    def run_once(self, *, now: datetime | None = None) -> WorkerSummary:
        summary = WorkerSummary()
        while summary.processed < self.max_jobs:
            job = claim_next_job(self.worker_id, now=now)
            if job is None:
                break
            summary.processed += 1
            summary.job_ids.append(job.pk)
            status = self.execute(job, now=now)
            if status == Job.Status.COMPLETED:
                summary.completed += 1
            elif status == Job.Status.RETRYING:
                summary.retried += 1
            else:
                summary.failed += 1
        if summary.processed:
            logger.info(
                "Worker %s: %s Aufträge, %s erledigt, %s Wiederholung, %s fehlgeschlagen.",
                self.worker_id,
                summary.processed,
                summary.completed,
                summary.retried,
                summary.failed,
            )
        return summary

    def execute(self, job: Job, *, now: datetime | None = None) -> str:
        handler = self.handlers.get(job.job_type)
        try:
            if handler is None:
                raise ValidationError(f"Kein Handler für Auftragstyp {job.job_type}.", job_type=job.job_type)
            with transaction.atomic():
                result = handler(dict(job.payload or {}))
        except Exception as exc:
            logger.exception("Auftrag %s (%s) fehlgeschlagen.", job.pk, job.job_type)
            return self._record_failure(job, exc, now=now)

        finished_at = now or timezone.now()
        job.status = Job.Status.COMPLETED
        job.result = result if result is not None else {}
        job.error = ""
        job.completed_at = finished_at
        job.locked_by = ""
        job.save(update_fields=["status", "result", "error", "completed_at", "locked_by", "updated_at"])
        return job.status

    def _record_failure(self, job: Job, exc: Exception, *, now: datetime | None = None) -> str:
        failed_at = now or timezone.now()
        job.retry_count += 1
        job.locked_by = ""
        if job.retry_count < job.max_retries:
            job.status = Job.Status.RETRYING
            job.error = str(exc)
            job.scheduled_for = failed_at + timedelta(seconds=backoff_seconds(job.retry_count))
        else:
            exhausted = JobExhaustedError(
                f"Auftrag {job.pk} nach {job.retry_count} Versuchen abgebrochen: {exc}",
                job_id=job.pk,
            )
            job.status = Job.Status.FAILED
            job.error = str(exhausted)
            job.failed_at = failed_at
        job.save(
            update_fields=["status", "retry_count", "error", "scheduled_for", "failed_at", "locked_by", "updated_at"]
        )
        return job.status
