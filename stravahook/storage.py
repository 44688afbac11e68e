from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any


logger = logging.getLogger(__name__)

JOB_STATUS_QUEUED = "queued"
JOB_STATUS_CLAIMED = "claimed"
JOB_STATUS_RUNNING = "running"
JOB_STATUS_RETRY_WAIT = "retry_wait"
JOB_STATUS_SUCCEEDED = "succeeded"
JOB_STATUS_FAILED_PERMANENT = "failed_permanent"

JOB_STATUS_TERMINAL = {
    JOB_STATUS_SUCCEEDED,
    JOB_STATUS_FAILED_PERMANENT,
}

DEFAULT_BUSY_TIMEOUT_SECONDS = 30.0
# The webhook path must answer the source within its 2 second deadline.
ENQUEUE_BUSY_TIMEOUT_SECONDS = 0.5


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _parse_utc(raw: Any) -> datetime | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _connect_runtime_db(db_path: Path, *, timeout: float = DEFAULT_BUSY_TIMEOUT_SECONDS) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS processed_activities (
            activity_id TEXT PRIMARY KEY,
            processed_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runtime_kv (
            key TEXT PRIMARY KEY,
            value_json TEXT NOT NULL,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            job_id TEXT PRIMARY KEY,
            activity_id TEXT NOT NULL,
            request_kind TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            status TEXT NOT NULL,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            requested_at_utc TEXT NOT NULL,
            available_at_utc TEXT NOT NULL,
            lease_owner TEXT,
            lease_expires_at_utc TEXT,
            started_at_utc TEXT,
            finished_at_utc TEXT,
            run_id TEXT,
            last_error TEXT,
            updated_at_utc TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS runs (
            run_id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL,
            activity_id TEXT NOT NULL,
            attempt_number INTEGER NOT NULL,
            worker_owner TEXT,
            status TEXT NOT NULL,
            started_at_utc TEXT NOT NULL,
            finished_at_utc TEXT,
            error TEXT,
            updated_at_utc TEXT NOT NULL,
            FOREIGN KEY(job_id) REFERENCES jobs(job_id)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_jobs_status_available
        ON jobs (status, available_at_utc, requested_at_utc)
        """
    )
    return conn


def is_activity_processed(db_path: Path, activity_id: int | str) -> bool:
    activity_id_str = str(activity_id).strip()
    if not activity_id_str:
        return False
    try:
        with _connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT 1 FROM processed_activities WHERE activity_id = ? LIMIT 1",
                (activity_id_str,),
            ).fetchone()
    except sqlite3.Error:
        return False
    return row is not None


def mark_activity_processed(db_path: Path, activity_id: int | str) -> None:
    activity_id_str = str(activity_id).strip()
    if not activity_id_str:
        return
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO processed_activities (activity_id, processed_at_utc)
                VALUES (?, ?)
                """,
                (activity_id_str, _utc_now_iso()),
            )
    except sqlite3.Error as exc:
        logger.warning("Failed to record activity %s as processed: %s", activity_id_str, exc)


def _to_json_string(value: Any) -> str:
    return json.dumps(value, sort_keys=True)


def set_runtime_value(db_path: Path, key: str, value: Any) -> None:
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute(
                """
                INSERT INTO runtime_kv (key, value_json, updated_at_utc)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at_utc = excluded.updated_at_utc
                """,
                (key, _to_json_string(value), _utc_now_iso()),
            )
    except sqlite3.Error:
        return


def get_runtime_value(db_path: Path, key: str, default: Any = None) -> Any:
    try:
        with _connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT value_json FROM runtime_kv WHERE key = ? LIMIT 1",
                (key,),
            ).fetchone()
    except sqlite3.Error:
        return default

    if row is None:
        return default
    try:
        return json.loads(str(row[0]))
    except (json.JSONDecodeError, TypeError, ValueError):
        return default


def set_worker_heartbeat(db_path: Path, heartbeat_utc: datetime | None = None) -> None:
    now = heartbeat_utc.astimezone(timezone.utc) if heartbeat_utc else _utc_now()
    set_runtime_value(db_path, "worker.last_heartbeat_utc", now.isoformat())


def get_worker_heartbeat(db_path: Path) -> datetime | None:
    return _parse_utc(get_runtime_value(db_path, "worker.last_heartbeat_utc"))


def is_worker_healthy(
    db_path: Path,
    max_age_seconds: int,
    now_utc: datetime | None = None,
) -> bool:
    heartbeat = get_worker_heartbeat(db_path)
    if heartbeat is None:
        return False
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    age = (now - heartbeat).total_seconds()
    return age <= max(30, int(max_age_seconds))


def _to_job_dict(row: sqlite3.Row | None) -> dict[str, Any] | None:
    if row is None:
        return None
    try:
        payload = json.loads(str(row["payload_json"]))
    except (json.JSONDecodeError, TypeError, ValueError):
        payload = None
    return {
        "job_id": str(row["job_id"]),
        "activity_id": str(row["activity_id"]),
        "request_kind": str(row["request_kind"]),
        "payload": payload,
        "status": str(row["status"]),
        "attempt_count": int(row["attempt_count"]),
        "max_attempts": int(row["max_attempts"]),
        "requested_at_utc": str(row["requested_at_utc"]),
        "available_at_utc": str(row["available_at_utc"]),
        "lease_owner": str(row["lease_owner"]) if row["lease_owner"] is not None else None,
        "started_at_utc": str(row["started_at_utc"]) if row["started_at_utc"] is not None else None,
        "finished_at_utc": str(row["finished_at_utc"]) if row["finished_at_utc"] is not None else None,
        "run_id": str(row["run_id"]) if row["run_id"] is not None else None,
        "last_error": str(row["last_error"]) if row["last_error"] is not None else None,
    }


def enqueue_activity_job(
    db_path: Path,
    activity_id: int | str,
    *,
    request_kind: str,
    payload: dict[str, Any],
    max_attempts: int = 3,
    available_at_utc: datetime | None = None,
) -> str | None:
    activity_id_str = str(activity_id).strip()
    if not activity_id_str:
        return None

    job_id = uuid.uuid4().hex
    now_iso = _utc_now_iso()
    available_iso = (available_at_utc.astimezone(timezone.utc).isoformat() if available_at_utc else now_iso)

    try:
        with _connect_runtime_db(db_path, timeout=ENQUEUE_BUSY_TIMEOUT_SECONDS) as conn:
            conn.execute(
                """
                INSERT INTO jobs (
                    job_id,
                    activity_id,
                    request_kind,
                    payload_json,
                    status,
                    attempt_count,
                    max_attempts,
                    requested_at_utc,
                    available_at_utc,
                    updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    activity_id_str,
                    str(request_kind or "create").strip() or "create",
                    _to_json_string(payload),
                    JOB_STATUS_QUEUED,
                    max(1, int(max_attempts)),
                    now_iso,
                    available_iso,
                    now_iso,
                ),
            )
        return job_id
    except sqlite3.Error as exc:
        logger.error("Failed to enqueue job for activity %s: %s", activity_id_str, exc)
        return None


def claim_next_activity_job(
    db_path: Path,
    *,
    owner: str,
    lease_seconds: int,
    now_utc: datetime | None = None,
) -> str | None:
    owner_value = str(owner).strip()
    if not owner_value:
        return None

    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    lease_expires_iso = (now + timedelta(seconds=max(30, int(lease_seconds)))).isoformat()

    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT job_id
                FROM jobs
                WHERE status IN (?, ?)
                  AND available_at_utc <= ?
                ORDER BY available_at_utc, requested_at_utc
                LIMIT 1
                """,
                (JOB_STATUS_QUEUED, JOB_STATUS_RETRY_WAIT, now_iso),
            ).fetchone()
            if row is None:
                return None
            job_id = str(row["job_id"])
            conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    lease_owner = ?,
                    lease_expires_at_utc = ?,
                    updated_at_utc = ?
                WHERE job_id = ?
                """,
                (JOB_STATUS_CLAIMED, owner_value, lease_expires_iso, now_iso, job_id),
            )
            return job_id
    except sqlite3.Error as exc:
        logger.warning("Failed to claim next job: %s", exc)
        return None


def start_activity_job_run(
    db_path: Path,
    job_id: str,
    *,
    owner: str,
    now_utc: datetime | None = None,
) -> dict[str, Any] | None:
    job_id_value = str(job_id).strip()
    owner_value = str(owner).strip()
    if not job_id_value or not owner_value:
        return None

    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    run_id = uuid.uuid4().hex

    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT activity_id, request_kind, payload_json, status, attempt_count, max_attempts,
                       lease_owner, lease_expires_at_utc
                FROM jobs
                WHERE job_id = ?
                LIMIT 1
                """,
                (job_id_value,),
            ).fetchone()
            if row is None:
                return None
            if str(row["status"]) != JOB_STATUS_CLAIMED:
                return None
            if str(row["lease_owner"] or "").strip() != owner_value:
                return None
            lease_expires = _parse_utc(row["lease_expires_at_utc"])
            if lease_expires is not None and lease_expires <= now:
                return None

            attempt_number = int(row["attempt_count"]) + 1
            conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    attempt_count = ?,
                    started_at_utc = COALESCE(started_at_utc, ?),
                    run_id = ?,
                    updated_at_utc = ?
                WHERE job_id = ?
                """,
                (JOB_STATUS_RUNNING, attempt_number, now_iso, run_id, now_iso, job_id_value),
            )
            conn.execute(
                """
                INSERT INTO runs (
                    run_id,
                    job_id,
                    activity_id,
                    attempt_number,
                    worker_owner,
                    status,
                    started_at_utc,
                    updated_at_utc
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    job_id_value,
                    str(row["activity_id"]),
                    attempt_number,
                    owner_value,
                    JOB_STATUS_RUNNING,
                    now_iso,
                    now_iso,
                ),
            )
            return {
                "job_id": job_id_value,
                "run_id": run_id,
                "activity_id": str(row["activity_id"]),
                "request_kind": str(row["request_kind"]),
                "payload": json.loads(str(row["payload_json"])),
                "attempt_number": attempt_number,
                "max_attempts": int(row["max_attempts"]),
            }
    except (sqlite3.Error, json.JSONDecodeError) as exc:
        logger.warning("Failed to start run for job %s: %s", job_id_value, exc)
        return None


def complete_activity_job_run(
    db_path: Path,
    job_id: str,
    run_id: str,
    *,
    owner: str,
    outcome: str,
    error: str | None = None,
    retry_delay_seconds: int = 60,
    now_utc: datetime | None = None,
) -> str | None:
    job_id_value = str(job_id).strip()
    run_id_value = str(run_id).strip()
    owner_value = str(owner).strip()
    if not job_id_value or not run_id_value or not owner_value:
        return None

    normalized_outcome = str(outcome or "").strip().lower()
    if normalized_outcome not in {JOB_STATUS_SUCCEEDED, JOB_STATUS_FAILED_PERMANENT, JOB_STATUS_RETRY_WAIT}:
        normalized_outcome = JOB_STATUS_FAILED_PERMANENT

    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    retry_at_iso = (now + timedelta(seconds=max(30, int(retry_delay_seconds)))).isoformat()

    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                """
                SELECT attempt_count, max_attempts, lease_owner
                FROM jobs
                WHERE job_id = ?
                LIMIT 1
                """,
                (job_id_value,),
            ).fetchone()
            if row is None:
                return None

            current_owner = str(row["lease_owner"] or "").strip()
            if current_owner and current_owner != owner_value:
                return None

            final_outcome = normalized_outcome
            if final_outcome == JOB_STATUS_RETRY_WAIT and int(row["attempt_count"]) >= max(1, int(row["max_attempts"])):
                final_outcome = JOB_STATUS_FAILED_PERMANENT

            finished_at_value = now_iso if final_outcome in JOB_STATUS_TERMINAL else None
            available_at_value = retry_at_iso if final_outcome == JOB_STATUS_RETRY_WAIT else now_iso

            conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    lease_owner = NULL,
                    lease_expires_at_utc = NULL,
                    finished_at_utc = COALESCE(?, finished_at_utc),
                    available_at_utc = ?,
                    last_error = ?,
                    updated_at_utc = ?
                WHERE job_id = ?
                """,
                (
                    final_outcome,
                    finished_at_value,
                    available_at_value,
                    error,
                    now_iso,
                    job_id_value,
                ),
            )
            conn.execute(
                """
                UPDATE runs
                SET
                    status = ?,
                    finished_at_utc = ?,
                    error = ?,
                    updated_at_utc = ?
                WHERE run_id = ? AND job_id = ?
                """,
                (final_outcome, now_iso, error, now_iso, run_id_value, job_id_value),
            )
            return final_outcome
    except sqlite3.Error as exc:
        logger.warning("Failed to complete run %s for job %s: %s", run_id_value, job_id_value, exc)
        return None


def requeue_expired_jobs(db_path: Path, *, now_utc: datetime | None = None) -> int:
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    now_iso = now.isoformat()
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                """
                UPDATE jobs
                SET
                    status = ?,
                    lease_owner = NULL,
                    lease_expires_at_utc = NULL,
                    available_at_utc = ?,
                    updated_at_utc = ?
                WHERE status IN (?, ?)
                  AND lease_expires_at_utc IS NOT NULL
                  AND lease_expires_at_utc <= ?
                """,
                (
                    JOB_STATUS_QUEUED,
                    now_iso,
                    now_iso,
                    JOB_STATUS_CLAIMED,
                    JOB_STATUS_RUNNING,
                    now_iso,
                ),
            )
            return int(cursor.rowcount or 0)
    except sqlite3.Error:
        return 0


def delete_finished_jobs(db_path: Path, *, older_than_days: int, now_utc: datetime | None = None) -> int:
    now = now_utc.astimezone(timezone.utc) if now_utc else _utc_now()
    cutoff_iso = (now - timedelta(days=max(1, int(older_than_days)))).isoformat()
    try:
        with _connect_runtime_db(db_path) as conn:
            conn.execute(
                """
                DELETE FROM runs
                WHERE job_id IN (
                    SELECT job_id FROM jobs
                    WHERE status IN (?, ?) AND finished_at_utc IS NOT NULL AND finished_at_utc <= ?
                )
                """,
                (JOB_STATUS_SUCCEEDED, JOB_STATUS_FAILED_PERMANENT, cutoff_iso),
            )
            cursor = conn.execute(
                """
                DELETE FROM jobs
                WHERE status IN (?, ?) AND finished_at_utc IS NOT NULL AND finished_at_utc <= ?
                """,
                (JOB_STATUS_SUCCEEDED, JOB_STATUS_FAILED_PERMANENT, cutoff_iso),
            )
            return int(cursor.rowcount or 0)
    except sqlite3.Error:
        return 0


def get_activity_job(db_path: Path, job_id: str) -> dict[str, Any] | None:
    try:
        with _connect_runtime_db(db_path) as conn:
            row = conn.execute(
                "SELECT * FROM jobs WHERE job_id = ? LIMIT 1",
                (str(job_id).strip(),),
            ).fetchone()
    except sqlite3.Error:
        return None
    return _to_job_dict(row)


def write_json(path: Path, payload: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(".tmp")
    tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
    tmp_path.replace(path)


def read_json(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        return None
