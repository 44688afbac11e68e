from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .config import Settings
from .errors import DispatchError, ValidationError
from .models import WebhookEvent
from .storage import (
    claim_next_activity_job,
    complete_activity_job_run,
    enqueue_activity_job,
    requeue_expired_jobs,
    start_activity_job_run,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledRun:
    job_id: str
    run_id: str
    attempt_number: int
    max_attempts: int
    event: WebhookEvent


class Dispatcher:
    """Durable hand-off between the webhook gateway and the worker.

    Jobs live in the runtime SQLite db. A job whose lease expires is requeued,
    so every scheduled event runs at least once. There is no ordering across
    activities and no per-activity exclusion.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        max_attempts: int = 3,
        lease_seconds: int = 300,
        retry_delay_seconds: int = 60,
    ) -> None:
        self.db_path = db_path
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self.retry_delay_seconds = retry_delay_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "Dispatcher":
        return cls(
            settings.runtime_db_file,
            max_attempts=settings.job_max_attempts,
            lease_seconds=settings.job_lease_seconds,
            retry_delay_seconds=settings.job_retry_delay_seconds,
        )

    def schedule(self, event: WebhookEvent, routing_key: int | str) -> str:
        job_id = enqueue_activity_job(
            self.db_path,
            routing_key,
            request_kind=event.aspect_type,
            payload=event.to_payload(),
            max_attempts=self.max_attempts,
        )
        if job_id is None:
            raise DispatchError(f"Failed to schedule event for activity {routing_key}.")
        logger.info("Scheduled %s event for activity %s as job %s.", event.aspect_type, routing_key, job_id)
        return job_id

    def claim_next(self, owner: str, *, now_utc: datetime | None = None) -> ScheduledRun | None:
        job_id = claim_next_activity_job(
            self.db_path,
            owner=owner,
            lease_seconds=self.lease_seconds,
            now_utc=now_utc,
        )
        if job_id is None:
            return None
        started = start_activity_job_run(self.db_path, job_id, owner=owner, now_utc=now_utc)
        if started is None:
            return None
        try:
            event = WebhookEvent.from_payload(started["payload"])
        except ValidationError as exc:
            logger.error("Job %s has an unreadable event payload: %s", job_id, exc)
            complete_activity_job_run(
                self.db_path,
                job_id,
                started["run_id"],
                owner=owner,
                outcome="failed_permanent",
                error=str(exc),
            )
            return None
        return ScheduledRun(
            job_id=job_id,
            run_id=started["run_id"],
            attempt_number=started["attempt_number"],
            max_attempts=started["max_attempts"],
            event=event,
        )

    def complete(
        self,
        run: ScheduledRun,
        *,
        owner: str,
        outcome: str,
        error: str | None = None,
    ) -> str | None:
        return complete_activity_job_run(
            self.db_path,
            run.job_id,
            run.run_id,
            owner=owner,
            outcome=outcome,
            error=error,
            retry_delay_seconds=self.retry_delay_seconds,
        )

    def requeue_expired(self, *, now_utc: datetime | None = None) -> int:
        return requeue_expired_jobs(self.db_path, now_utc=now_utc)
