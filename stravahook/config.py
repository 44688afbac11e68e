from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from dotenv import load_dotenv

from .models import AspectType
from .tokens import token_store_from_uri


load_dotenv()


EnvGetter = Callable[[str], str | None]

DEFAULT_OPEN_METEO_BASE_URL = "https://api.open-meteo.com/v1"


def _bool_env(name: str, default: bool, *, getenv: EnvGetter = os.getenv) -> bool:
    value = getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _str_env(*names: str, default: str = "", getenv: EnvGetter = os.getenv) -> str:
    for name in names:
        value = getenv(name)
        if value is not None:
            return value.strip()
    return default


def _int_env(
    name: str,
    default: int,
    minimum: int | None = None,
    maximum: int | None = None,
    *,
    getenv: EnvGetter = os.getenv,
) -> int:
    value = getenv(name)
    if value is None:
        parsed = default
    else:
        try:
            parsed = int(value.strip())
        except ValueError:
            parsed = default

    if minimum is not None and parsed < minimum:
        parsed = minimum
    if maximum is not None and parsed > maximum:
        parsed = maximum
    return parsed


def _optional_int_env(name: str, *, getenv: EnvGetter = os.getenv) -> int | None:
    value = getenv(name)
    if value is None:
        return None
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def _aspect_types_env(
    name: str, *, getenv: EnvGetter = os.getenv
) -> tuple[frozenset[AspectType], tuple[str, ...]]:
    """Return the handled aspect types and any names that did not parse."""
    raw = getenv(name)
    if raw is None or not raw.strip():
        return frozenset({AspectType.CREATE}), ()
    handled: set[AspectType] = set()
    unrecognised: list[str] = []
    for part in raw.split(","):
        text = part.strip()
        if not text:
            continue
        aspect = AspectType.parse(text.lower())
        if aspect is None:
            unrecognised.append(text)
        else:
            handled.add(aspect)
    return frozenset(handled), tuple(unrecognised)


@dataclass(frozen=True)
class Settings:
    token_store_uri: str
    strava_client_id: str
    strava_client_secret: str
    strava_athlete_id: int | None
    webhook_subscription_id: int | None
    webhook_verify_token: str

    handled_aspect_types: frozenset[AspectType]
    unrecognised_aspect_types: tuple[str, ...]
    open_meteo_base_url: str

    log_level: str
    api_port: int
    worker_poll_interval_seconds: int
    worker_health_max_age_seconds: int
    worker_concurrency: int
    job_lease_seconds: int
    job_max_attempts: int
    job_retry_delay_seconds: int
    enable_processed_cache: bool

    state_dir: Path
    runtime_db_file: Path

    @classmethod
    def from_env(cls, getenv: EnvGetter = os.getenv) -> "Settings":
        state_dir = Path(_str_env("STATE_DIR", default="state", getenv=getenv) or "state").resolve()
        runtime_db_name = _str_env("RUNTIME_DB_FILE", default="runtime_state.db", getenv=getenv)
        runtime_db_file = Path(runtime_db_name or "runtime_state.db")
        if not runtime_db_file.is_absolute():
            runtime_db_file = state_dir / runtime_db_file
        handled_aspect_types, unrecognised_aspect_types = _aspect_types_env("HANDLED_ASPECT_TYPES", getenv=getenv)

        return cls(
            token_store_uri=_str_env("TOKEN_STORE_URI", getenv=getenv),
            strava_client_id=_str_env("STRAVA_CLIENT_ID", "CLIENT_ID", getenv=getenv),
            strava_client_secret=_str_env("STRAVA_CLIENT_SECRET", "CLIENT_SECRET", getenv=getenv),
            strava_athlete_id=_optional_int_env("STRAVA_ATHLETE_ID", getenv=getenv),
            webhook_subscription_id=_optional_int_env("STRAVA_WEBHOOK_SUBSCRIPTION_ID", getenv=getenv),
            webhook_verify_token=_str_env("STRAVA_WEBHOOK_VERIFY_TOKEN", getenv=getenv),
            handled_aspect_types=handled_aspect_types,
            unrecognised_aspect_types=unrecognised_aspect_types,
            open_meteo_base_url=(
                _str_env("OPEN_METEO_BASE_URL", getenv=getenv) or DEFAULT_OPEN_METEO_BASE_URL
            ).rstrip("/"),
            log_level=_str_env("LOG_LEVEL", default="INFO", getenv=getenv).upper() or "INFO",
            api_port=_int_env("API_PORT", 7071, minimum=1, maximum=65535, getenv=getenv),
            worker_poll_interval_seconds=_int_env(
                "WORKER_POLL_INTERVAL_SECONDS", 2, minimum=1, maximum=300, getenv=getenv
            ),
            worker_health_max_age_seconds=_int_env(
                "WORKER_HEALTH_MAX_AGE_SECONDS", 120, minimum=30, maximum=3600, getenv=getenv
            ),
            worker_concurrency=_int_env("WORKER_CONCURRENCY", 2, minimum=1, maximum=16, getenv=getenv),
            job_lease_seconds=_int_env("JOB_LEASE_SECONDS", 300, minimum=30, maximum=3600, getenv=getenv),
            job_max_attempts=_int_env("JOB_MAX_ATTEMPTS", 3, minimum=1, maximum=10, getenv=getenv),
            job_retry_delay_seconds=_int_env(
                "JOB_RETRY_DELAY_SECONDS", 60, minimum=30, maximum=3600, getenv=getenv
            ),
            enable_processed_cache=_bool_env("ENABLE_PROCESSED_CACHE", True, getenv=getenv),
            state_dir=state_dir,
            runtime_db_file=runtime_db_file,
        )

    def validate(self) -> None:
        problems = []
        if not self.token_store_uri:
            problems.append("TOKEN_STORE_URI is required")
        if not self.strava_client_id:
            problems.append("STRAVA_CLIENT_ID is required")
        if not self.strava_client_secret:
            problems.append("STRAVA_CLIENT_SECRET is required")
        if self.strava_athlete_id is None or self.strava_athlete_id <= 0:
            problems.append("STRAVA_ATHLETE_ID must be a positive integer")
        if self.webhook_subscription_id is None or self.webhook_subscription_id <= 0:
            problems.append("STRAVA_WEBHOOK_SUBSCRIPTION_ID must be a positive integer")
        if not self.webhook_verify_token:
            problems.append("STRAVA_WEBHOOK_VERIFY_TOKEN is required")
        if self.unrecognised_aspect_types:
            problems.append(
                "HANDLED_ASPECT_TYPES has unrecognised value(s): " + ", ".join(self.unrecognised_aspect_types)
            )
        elif not self.handled_aspect_types:
            problems.append("HANDLED_ASPECT_TYPES must name at least one of create, update, delete")
        if self.token_store_uri:
            try:
                token_store_from_uri(self.token_store_uri)
            except ValueError as exc:
                problems.append(str(exc))
        if problems:
            raise ValueError("Invalid configuration: " + "; ".join(problems))

    def ensure_state_paths(self) -> None:
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.runtime_db_file.parent.mkdir(parents=True, exist_ok=True)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
