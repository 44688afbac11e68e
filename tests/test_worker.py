import tempfile
import unittest
from datetime import datetime, timedelta, timezone
from unittest import mock

from stravahook.config import Settings
from stravahook.dispatch import Dispatcher
from stravahook.errors import DeserializationError, UpstreamAuthError, UpstreamTransientError
from stravahook.models import WebhookEvent
from stravahook.storage import _parse_utc, get_activity_job, get_runtime_value
from stravahook.worker import JOB_CLEANUP_LAST_AT_KEY, _maybe_cleanup_finished_jobs, run_job


EVENT = WebhookEvent(
    aspect_type="create",
    object_type="activity",
    object_id=4004,
    owner_id=42,
    subscription_id=7,
)


class TestRunJob(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        env = {"STATE_DIR": self._tmpdir.name, "JOB_MAX_ATTEMPTS": "2"}
        self.settings = Settings.from_env(env.get)
        self.dispatcher = Dispatcher.from_settings(self.settings)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _run(self, side_effect=None, return_value=None):
        job_id = self.dispatcher.schedule(EVENT, EVENT.object_id)
        run = self.dispatcher.claim_next("worker-a")
        with mock.patch("stravahook.worker.process_event", side_effect=side_effect, return_value=return_value) as process:
            outcome = run_job(
                run,
                dispatcher=self.dispatcher,
                owner="worker-a",
                provider=mock.sentinel.provider,
                weather_source=mock.sentinel.weather,
                settings=self.settings,
            )
        return job_id, outcome, process

    def test_success(self) -> None:
        job_id, outcome, process = self._run(return_value={"status": "updated"})
        self.assertEqual(outcome, "succeeded")
        self.assertEqual(get_activity_job(self.settings.runtime_db_file, job_id)["status"], "succeeded")
        kwargs = process.call_args.kwargs
        self.assertIs(kwargs["provider"], mock.sentinel.provider)
        self.assertEqual(kwargs["processed_db"], self.settings.runtime_db_file)

    def test_processed_cache_can_be_disabled(self) -> None:
        env = {"STATE_DIR": self._tmpdir.name, "ENABLE_PROCESSED_CACHE": "false"}
        self.settings = Settings.from_env(env.get)
        _, _, process = self._run(return_value={"status": "updated"})
        self.assertIsNone(process.call_args.kwargs["processed_db"])

    def test_transient_failure_waits_for_retry(self) -> None:
        job_id, outcome, _ = self._run(side_effect=UpstreamTransientError("503", status_code=503))
        self.assertEqual(outcome, "retry_wait")
        job = get_activity_job(self.settings.runtime_db_file, job_id)
        self.assertEqual(job["status"], "retry_wait")
        self.assertEqual(job["last_error"], "503")

    def test_transient_failure_on_last_attempt_is_permanent(self) -> None:
        job_id = self.dispatcher.schedule(EVENT, EVENT.object_id)
        now = datetime.now(timezone.utc)
        outcomes = []
        for attempt in range(2):
            run = self.dispatcher.claim_next("worker-a", now_utc=now)
            self.assertEqual(run.attempt_number, attempt + 1)
            with mock.patch("stravahook.worker.process_event", side_effect=UpstreamTransientError("timeout")):
                outcomes.append(
                    run_job(
                        run,
                        dispatcher=self.dispatcher,
                        owner="worker-a",
                        provider=None,
                        weather_source=None,
                        settings=self.settings,
                    )
                )
            now = now + timedelta(seconds=self.settings.job_retry_delay_seconds + 1)
        self.assertEqual(outcomes, ["retry_wait", "failed_permanent"])
        self.assertEqual(get_activity_job(self.settings.runtime_db_file, job_id)["status"], "failed_permanent")

    def test_fatal_failures_are_permanent(self) -> None:
        for error in (UpstreamAuthError("reseed"), DeserializationError("bad shape"), RuntimeError("bug")):
            with self.subTest(error=type(error).__name__):
                with self.assertLogs("stravahook.worker", level="ERROR"):
                    _, outcome, _ = self._run(side_effect=error)
                self.assertEqual(outcome, "failed_permanent")


class TestJobCleanup(unittest.TestCase):
    def test_cleanup_runs_at_most_hourly(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            settings = Settings.from_env({"STATE_DIR": tmpdir}.get)
            now = datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc)
            with mock.patch("stravahook.worker.delete_finished_jobs", return_value=0) as delete:
                _maybe_cleanup_finished_jobs(settings, now_utc=now)
                _maybe_cleanup_finished_jobs(settings, now_utc=now + timedelta(minutes=30))
                _maybe_cleanup_finished_jobs(settings, now_utc=now + timedelta(minutes=61))
            self.assertEqual(delete.call_count, 2)
            self.assertEqual(
                _parse_utc(get_runtime_value(settings.runtime_db_file, JOB_CLEANUP_LAST_AT_KEY)),
                now + timedelta(minutes=61),
            )

    def test_parse_utc(self) -> None:
        self.assertIsNone(_parse_utc(None))
        self.assertIsNone(_parse_utc("yesterday"))
        self.assertEqual(_parse_utc("2026-06-01T12:00:00Z"), datetime(2026, 6, 1, 12, 0, tzinfo=timezone.utc))


if __name__ == "__main__":
    unittest.main()
