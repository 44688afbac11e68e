from __future__ import annotations

import logging
import os
import socket
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Any

from .config import Settings, configure_logging
from .dispatch import Dispatcher, ScheduledRun
from .errors import UpstreamTransientError
from .pipeline import process_event
from .storage import (
    JOB_STATUS_FAILED_PERMANENT,
    JOB_STATUS_RETRY_WAIT,
    JOB_STATUS_SUCCEEDED,
    _parse_utc,
    delete_finished_jobs,
    get_runtime_value,
    set_runtime_value,
    set_worker_heartbeat,
)
from .tokens import SessionProvider, token_store_from_uri
from .weather import WeatherSource
from .weather_client import OpenMeteoClient


logger = logging.getLogger(__name__)
JOB_CLEANUP_LAST_AT_KEY = "worker.job_cleanup.last_at_utc"
JOB_CLEANUP_INTERVAL_SECONDS = 3600
FINISHED_JOB_RETENTION_DAYS = 14


def _maybe_cleanup_finished_jobs(settings: Settings, *, now_utc: datetime) -> None:
    last_run = _parse_utc(get_runtime_value(settings.runtime_db_file, JOB_CLEANUP_LAST_AT_KEY))
    if last_run is not None and (now_utc - last_run).total_seconds() < JOB_CLEANUP_INTERVAL_SECONDS:
        return
    deleted = delete_finished_jobs(
        settings.runtime_db_file,
        older_than_days=FINISHED_JOB_RETENTION_DAYS,
        now_utc=now_utc,
    )
    set_runtime_value(settings.runtime_db_file, JOB_CLEANUP_LAST_AT_KEY, now_utc.isoformat())
    if deleted > 0:
        logger.info("Deleted %s finished job(s).", deleted)


def run_job(
    run: ScheduledRun,
    *,
    dispatcher: Dispatcher,
    owner: str,
    provider: SessionProvider,
    weather_source: WeatherSource,
    settings: Settings,
) -> str | None:
    """Execute one claimed job and record its outcome.

    Transient upstream failures leave the job waiting for another attempt until
    its attempts run out. Every other failure is permanent.
    """
    result: dict[str, Any] | None = None
    error: str | None = None
    try:
        result = process_event(
            run.event,
            provider=provider,
            weather_source=weather_source,
            processed_db=settings.runtime_db_file if settings.enable_processed_cache else None,
        )
        outcome = JOB_STATUS_SUCCEEDED
    except UpstreamTransientError as exc:
        logger.warning(
            "Job %s attempt %s/%s hit a transient failure: %s",
            run.job_id,
            run.attempt_number,
            run.max_attempts,
            exc,
        )
        outcome = JOB_STATUS_RETRY_WAIT
        error = str(exc)
    except Exception as exc:
        logger.exception("Job %s for activity %s failed.", run.job_id, run.event.object_id)
        outcome = JOB_STATUS_FAILED_PERMANENT
        error = str(exc)

    final = dispatcher.complete(run, owner=owner, outcome=outcome, error=error)
    logger.info("Job %s finished as %s: %s", run.job_id, final, result if result is not None else error)
    return final


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    settings.ensure_state_paths()

    dispatcher = Dispatcher.from_settings(settings)
    provider = SessionProvider.for_strava(
        token_store_from_uri(settings.token_store_uri),
        settings.strava_client_id,
        settings.strava_client_secret,
    )
    weather_source = OpenMeteoClient(settings.open_meteo_base_url)
    owner = f"{socket.gethostname()}:{os.getpid()}"
    interval = settings.worker_poll_interval_seconds

    logger.info(
        "Worker %s started with poll interval %ss and %s thread(s).",
        owner,
        interval,
        settings.worker_concurrency,
    )
    set_runtime_value(settings.runtime_db_file, "worker.started_at_utc", datetime.now(timezone.utc).isoformat())

    in_flight: set[Future] = set()
    with ThreadPoolExecutor(max_workers=settings.worker_concurrency) as executor:
        while True:
            now_utc = datetime.now(timezone.utc)
            try:
                set_worker_heartbeat(settings.runtime_db_file, now_utc)
                requeued = dispatcher.requeue_expired(now_utc=now_utc)
                if requeued > 0:
                    logger.warning("Requeued %s expired job(s).", requeued)
                _maybe_cleanup_finished_jobs(settings, now_utc=now_utc)

                in_flight = {future for future in in_flight if not future.done()}
                claimed = 0
                while len(in_flight) < settings.worker_concurrency:
                    run = dispatcher.claim_next(owner)
                    if run is None:
                        break
                    claimed += 1
                    in_flight.add(
                        executor.submit(
                            run_job,
                            run,
                            dispatcher=dispatcher,
                            owner=owner,
                            provider=provider,
                            weather_source=weather_source,
                            settings=settings,
                        )
                    )
                if claimed:
                    logger.info("Claimed %s job(s).", claimed)
            except Exception:
                logger.exception("Worker cycle failed.")
            time.sleep(interval)


if __name__ == "__main__":
    main()
