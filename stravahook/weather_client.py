from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

import requests

from .config import DEFAULT_OPEN_METEO_BASE_URL
from .errors import DeserializationError, UpstreamRequestError, UpstreamTransientError
from .models import SkyCode, WeatherSample
from .retry import call_with_retry


logger = logging.getLogger(__name__)

TIMEOUT_SECONDS = 30
SAMPLE_INTERVAL = timedelta(minutes=15)
MINUTELY_FIELDS = (
    "temperature_2m",
    "relative_humidity_2m",
    "dew_point_2m",
    "precipitation",
    "weather_code",
    "wind_speed_10m",
    "wind_direction_10m",
    "wind_gusts_10m",
)
TIME_FORMAT = "%Y-%m-%dT%H:%M"


def _format_time(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime(TIME_FORMAT)


def _parse_time(value: Any) -> datetime:
    if not isinstance(value, str):
        raise ValueError(f"time entry {value!r} is not a string")
    return datetime.strptime(value, TIME_FORMAT).replace(tzinfo=timezone.utc)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_minutely_response(payload: Any, *, raw_body: str = "") -> list[WeatherSample]:
    """Turn an Open-Meteo ``minutely_15`` response into samples.

    The time array can hold one more entry than the data arrays; rows follow the
    temperature array. Rows with a missing value are skipped.
    """
    if not isinstance(payload, dict):
        raise DeserializationError("Open-Meteo response is not a JSON object.", raw_body=raw_body)
    series = payload.get("minutely_15")
    if series is None:
        return []
    if not isinstance(series, dict):
        raise DeserializationError("Open-Meteo minutely_15 block is not an object.", raw_body=raw_body)
    times = series.get("time")
    if times is None:
        return []

    columns: dict[str, list[Any]] = {}
    for field in MINUTELY_FIELDS:
        column = series.get(field)
        if not isinstance(column, list):
            raise DeserializationError(f"Open-Meteo field '{field}' is missing.", raw_body=raw_body)
        columns[field] = column
    if not isinstance(times, list):
        raise DeserializationError("Open-Meteo time field is not a list.", raw_body=raw_body)

    row_count = len(columns["temperature_2m"])
    if len(times) < row_count or any(len(column) < row_count for column in columns.values()):
        raise DeserializationError("Open-Meteo arrays have mismatched lengths.", raw_body=raw_body)

    samples: list[WeatherSample] = []
    for index in range(row_count):
        row = {field: columns[field][index] for field in MINUTELY_FIELDS}
        if not all(_is_number(value) for value in row.values()):
            logger.debug("Skipping Open-Meteo row %s with missing values.", times[index])
            continue
        try:
            sample_time = _parse_time(times[index])
            sky = SkyCode(int(row["weather_code"]))
        except ValueError as exc:
            raise DeserializationError(f"Problem reading Open-Meteo row {index}: {exc}", raw_body=raw_body) from exc
        samples.append(
            WeatherSample(
                time=sample_time,
                temperature_f=float(row["temperature_2m"]),
                dew_point_f=float(row["dew_point_2m"]),
                humidity_pct=float(row["relative_humidity_2m"]),
                precipitation_in=float(row["precipitation"]),
                sky=sky,
                wind_speed_mph=float(row["wind_speed_10m"]),
                wind_gust_mph=float(row["wind_gusts_10m"]),
                wind_direction_deg=float(row["wind_direction_10m"]),
            )
        )
    return samples


class OpenMeteoClient:
    def __init__(
        self,
        base_url: str = DEFAULT_OPEN_METEO_BASE_URL,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def _fetch(self, params: dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}/forecast"
        try:
            response = self.session.get(url, params=params, timeout=TIMEOUT_SECONDS)
        except requests.RequestException as exc:
            raise UpstreamTransientError(f"Open-Meteo request failed: {exc}") from exc
        status = response.status_code
        if 200 <= status < 300:
            return response
        message = f"{status} error in Open-Meteo call for path '{url}'"
        if response.text:
            message += f"\nResponse content: {response.text}"
        else:
            message += "\nResponse did not specify additional info."
        if status == 404 or status >= 500:
            raise UpstreamTransientError(message, status_code=status)
        raise UpstreamRequestError(message, status_code=status)

    def get_samples(
        self,
        start: datetime,
        end: datetime,
        latitude: float,
        longitude: float,
    ) -> list[WeatherSample]:
        params = {
            "latitude": latitude,
            "longitude": longitude,
            "minutely_15": ",".join(MINUTELY_FIELDS),
            "temperature_unit": "fahrenheit",
            "wind_speed_unit": "mph",
            "precipitation_unit": "inch",
            "timezone": "GMT",
            "start_minutely_15": _format_time(start - SAMPLE_INTERVAL),
            "end_minutely_15": _format_time(end + SAMPLE_INTERVAL),
        }
        response = call_with_retry("open_meteo.forecast", self._fetch, params)
        raw_body = response.text or ""
        if not raw_body.strip():
            raise DeserializationError(
                f"Open-Meteo returned {response.status_code} but the response content was empty."
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise DeserializationError(f"Problem deserializing Open-Meteo response: {exc}", raw_body=raw_body) from exc
        samples = parse_minutely_response(payload, raw_body=raw_body)
        logger.info("Fetched %s weather samples for %.4f,%.4f.", len(samples), latitude, longitude)
        return samples
