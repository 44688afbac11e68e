from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any

from .errors import DeserializationError, ValidationError


class AspectType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"

    @classmethod
    def parse(cls, value: Any) -> "AspectType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class ObjectType(str, Enum):
    ACTIVITY = "activity"
    ATHLETE = "athlete"

    @classmethod
    def parse(cls, value: Any) -> "ObjectType | None":
        try:
            return cls(value)
        except ValueError:
            return None


class SkyCode(IntEnum):
    """WMO weather interpretation codes, ordered by severity."""

    Clear = 0
    MainlyClear = 1
    PartlyCloudy = 2
    Overcast = 3
    Fog = 45
    DepositingRimeFog = 48
    LightDrizzle = 51
    ModerateDrizzle = 53
    DenseDrizzle = 55
    LightFreezingDrizzle = 56
    DenseFreezingDrizzle = 57
    SlightRain = 61
    ModerateRain = 63
    HeavyRain = 65
    LightFreezingRain = 66
    HeavyFreezingRain = 67
    SlightSnowFall = 71
    ModerateSnowFall = 73
    HeavySnowFall = 75
    SnowGrains = 77
    SlightRainShowers = 80
    ModerateRainShowers = 81
    ViolentRainShowers = 82
    SlightSnowShowers = 85
    HeavySnowShowers = 86
    Thunderstorms = 95
    ThunderstormsWithSlightHail = 96
    ThunderstormsWithHeavyHail = 99


def _require_int(payload: dict[str, Any], key: str, *, default: int | None = None) -> int:
    value = payload.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Field '{key}' must be an integer.")
    return value


def _require_str(payload: dict[str, Any], key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise ValidationError(f"Field '{key}' must be a string.")
    return value


@dataclass(frozen=True)
class WebhookEvent:
    """A Strava push notification. Aspect and object types are kept raw so unknown values can be rejected."""

    aspect_type: str
    object_type: str
    object_id: int
    owner_id: int
    subscription_id: int
    event_time: int = 0
    updates: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookEvent":
        if not isinstance(payload, dict):
            raise ValidationError("Webhook payload must be a JSON object.")
        updates_raw = payload.get("updates")
        if updates_raw is None:
            updates: dict[str, str] = {}
        elif isinstance(updates_raw, dict):
            updates = {str(key): str(value) for key, value in updates_raw.items()}
        else:
            raise ValidationError("Field 'updates' must be an object.")
        return cls(
            aspect_type=_require_str(payload, "aspect_type"),
            object_type=_require_str(payload, "object_type"),
            object_id=_require_int(payload, "object_id"),
            owner_id=_require_int(payload, "owner_id"),
            subscription_id=_require_int(payload, "subscription_id"),
            event_time=_require_int(payload, "event_time", default=0),
            updates=updates,
        )

    @property
    def aspect(self) -> AspectType | None:
        return AspectType.parse(self.aspect_type)

    @property
    def object(self) -> ObjectType | None:
        return ObjectType.parse(self.object_type)

    def to_payload(self) -> dict[str, Any]:
        return {
            "aspect_type": self.aspect_type,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "owner_id": self.owner_id,
            "subscription_id": self.subscription_id,
            "event_time": self.event_time,
            "updates": dict(self.updates),
        }


@dataclass(frozen=True)
class SubscriptionChallenge:
    mode: str | None
    verify_token: str | None
    challenge: str | None


@dataclass(frozen=True)
class AuthToken:
    access_token: str
    refresh_token: str


def _latlng(value: Any, key: str, raw: dict[str, Any]) -> tuple[float, float] | None:
    if value is None:
        return None
    if not isinstance(value, list):
        raise DeserializationError(f"Activity field '{key}' is not a list.", raw_body=json.dumps(raw))
    if not value:
        return None
    if len(value) != 2 or not all(isinstance(item, (int, float)) for item in value):
        raise DeserializationError(f"Activity field '{key}' is not a coordinate pair.", raw_body=json.dumps(raw))
    return float(value[0]), float(value[1])


def _parse_start_date(value: Any, raw: dict[str, Any]) -> datetime:
    if not isinstance(value, str) or not value.strip():
        raise DeserializationError("Activity has no start_date.", raw_body=json.dumps(raw))
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise DeserializationError(f"Activity start_date is invalid: {exc}", raw_body=json.dumps(raw)) from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


@dataclass(frozen=True)
class Activity:
    id: int
    name: str | None
    sport_type: str | None
    description: str | None
    trainer: bool
    start_latlng: tuple[float, float] | None
    end_latlng: tuple[float, float] | None
    start_date: datetime
    elapsed_time: int
    summary_polyline: str = ""

    @property
    def has_map(self) -> bool:
        return bool(self.summary_polyline)

    @classmethod
    def from_api(cls, raw: Any) -> "Activity":
        if not isinstance(raw, dict):
            raise DeserializationError("Activity response is not a JSON object.", raw_body=json.dumps(raw))
        activity_id = raw.get("id")
        if isinstance(activity_id, bool) or not isinstance(activity_id, int):
            raise DeserializationError("Activity response has no integer id.", raw_body=json.dumps(raw))
        elapsed = raw.get("elapsed_time", 0)
        if isinstance(elapsed, bool) or not isinstance(elapsed, (int, float)):
            raise DeserializationError("Activity elapsed_time is not numeric.", raw_body=json.dumps(raw))
        map_data = raw.get("map") or {}
        polyline = map_data.get("summary_polyline") if isinstance(map_data, dict) else None
        name = raw.get("name")
        sport_type = raw.get("sport_type") or raw.get("type")
        description = raw.get("description")
        return cls(
            id=activity_id,
            name=name if isinstance(name, str) else None,
            sport_type=sport_type if isinstance(sport_type, str) else None,
            description=description if isinstance(description, str) else None,
            trainer=bool(raw.get("trainer")),
            start_latlng=_latlng(raw.get("start_latlng"), "start_latlng", raw),
            end_latlng=_latlng(raw.get("end_latlng"), "end_latlng", raw),
            start_date=_parse_start_date(raw.get("start_date"), raw),
            elapsed_time=int(elapsed),
            summary_polyline=polyline if isinstance(polyline, str) else "",
        )


@dataclass(frozen=True)
class ActivityUpdateCommand:
    name: str | None = None
    sport_type: str | None = None
    description: str | None = None
    hide_from_home: bool | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.name is not None:
            payload["name"] = self.name
        if self.sport_type is not None:
            payload["sport_type"] = self.sport_type
        if self.description is not None:
            payload["description"] = self.description
        if self.hide_from_home is not None:
            payload["hide_from_home"] = self.hide_from_home
        return payload


@dataclass(frozen=True)
class WeatherSample:
    time: datetime
    temperature_f: float
    dew_point_f: float
    humidity_pct: float
    precipitation_in: float
    sky: SkyCode
    wind_speed_mph: float
    wind_gust_mph: float
    wind_direction_deg: float


@dataclass(frozen=True)
class WeatherSummary:
    label: str | None
    sample: WeatherSample
