"""Turn quarter-hour weather samples into a short narrative for an activity.

Short activities get one summary averaged over the samples inside the activity.
Longer ones get a summary per anchor time (start/end, plus middle past three
hours), each built from the samples bracketing the anchor.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from statistics import fmean
from typing import Iterable, Protocol, Sequence

from .models import Activity, SkyCode, WeatherSample, WeatherSummary


logger = logging.getLogger(__name__)

SINGLE_SUMMARY_MAX_SECONDS = 3600
START_END_MAX_SECONDS = 10800
WARM_DAY_TEMPERATURE_F = 50.0

COMPASS_POINTS = (
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
)
SECTOR_DEGREES = 360.0 / len(COMPASS_POINTS)

SUMMARY_FORMAT = "{temp}F, Dew {dew}F, Hum {hum}%, Wind {wind}mph {direction} (gust {gust}), Sky {sky}{precip}"
NARRATIVE_PREFIX = " \nWeather: "


class WeatherSource(Protocol):
    def get_samples(
        self,
        start: datetime,
        end: datetime,
        latitude: float,
        longitude: float,
    ) -> list[WeatherSample]: ...


def compass_direction(degrees: float) -> str:
    normalized = degrees % 360.0
    index = int((normalized + SECTOR_DEGREES / 2) // SECTOR_DEGREES) % len(COMPASS_POINTS)
    return COMPASS_POINTS[index]


def round_whole(value: float) -> int:
    # Python's round() is half-to-even, used for every numeric field.
    return int(round(value))


def aggregate_sky(codes: Sequence[SkyCode], mean_temperature_f: float) -> SkyCode:
    """Most severe code, except that warm days lean toward the clearest reported sky."""
    worst = max(codes)
    if mean_temperature_f < WARM_DAY_TEMPERATURE_F:
        return worst
    any_clear = any(code <= SkyCode.MainlyClear for code in codes)
    if worst == SkyCode.Overcast:
        if any_clear:
            return SkyCode.MainlyClear
        if SkyCode.PartlyCloudy in codes:
            return SkyCode.PartlyCloudy
    elif worst == SkyCode.PartlyCloudy and any_clear:
        return SkyCode.MainlyClear
    return worst


def aggregate(samples: Iterable[WeatherSample]) -> WeatherSample:
    items = list(samples)
    if not items:
        raise ValueError("Cannot aggregate an empty sample set.")
    temperature = fmean(sample.temperature_f for sample in items)
    return WeatherSample(
        time=items[0].time,
        temperature_f=temperature,
        dew_point_f=fmean(sample.dew_point_f for sample in items),
        humidity_pct=fmean(sample.humidity_pct for sample in items),
        precipitation_in=sum(sample.precipitation_in for sample in items),
        sky=aggregate_sky([sample.sky for sample in items], temperature),
        wind_speed_mph=fmean(sample.wind_speed_mph for sample in items),
        wind_gust_mph=fmean(sample.wind_gust_mph for sample in items),
        # No circular mean; the first reading stands for the set.
        wind_direction_deg=items[0].wind_direction_deg,
    )


def _distance(sample: WeatherSample, anchor: datetime) -> float:
    return abs((sample.time - anchor).total_seconds())


def nearest(samples: Sequence[WeatherSample], anchor: datetime) -> WeatherSample | None:
    if not samples:
        return None
    return min(samples, key=lambda sample: _distance(sample, anchor))


def bracketing_pair(samples: Sequence[WeatherSample], anchor: datetime) -> list[WeatherSample]:
    before = nearest([sample for sample in samples if sample.time <= anchor], anchor)
    after = nearest([sample for sample in samples if sample.time >= anchor], anchor)
    return [sample for sample in (before, after) if sample is not None]


def build_summaries(
    samples: Sequence[WeatherSample],
    start: datetime,
    elapsed_seconds: int,
) -> list[WeatherSummary]:
    if not samples:
        return []
    end = start + timedelta(seconds=elapsed_seconds)

    if elapsed_seconds < SINGLE_SUMMARY_MAX_SECONDS:
        in_range = [sample for sample in samples if start <= sample.time <= end]
        if not in_range:
            closest = nearest(samples, start)
            in_range = [closest] if closest is not None else []
        return [WeatherSummary(label=None, sample=aggregate(in_range))]

    anchors = [("Start", start)]
    if elapsed_seconds >= START_END_MAX_SECONDS:
        anchors.append(("Middle", start + timedelta(seconds=elapsed_seconds // 2)))
    anchors.append(("End", end))

    return [
        WeatherSummary(label=label, sample=aggregate(bracketing_pair(samples, anchor)))
        for label, anchor in anchors
    ]


def format_summary(sample: WeatherSample) -> str:
    return SUMMARY_FORMAT.format(
        temp=round_whole(sample.temperature_f),
        dew=round_whole(sample.dew_point_f),
        hum=round_whole(sample.humidity_pct),
        wind=round_whole(sample.wind_speed_mph),
        direction=compass_direction(sample.wind_direction_deg),
        gust=round_whole(sample.wind_gust_mph),
        sky=sample.sky.name,
        precip=", some precip" if sample.precipitation_in > 0 else "",
    )


def format_narrative(summaries: Sequence[WeatherSummary]) -> str:
    if not summaries:
        return ""
    if len(summaries) == 1 and summaries[0].label is None:
        return NARRATIVE_PREFIX + format_summary(summaries[0].sample)
    lines = [f"{summary.label}: {format_summary(summary.sample)}" for summary in summaries]
    return NARRATIVE_PREFIX + "\n" + " \n".join(lines)


def weather_narrative_for(activity: Activity, source: WeatherSource) -> str:
    """Fetch weather at the activity's start coordinate and describe it.

    The end coordinate is not queried separately.
    """
    if activity.start_latlng is None:
        return ""
    start = activity.start_date
    end = start + timedelta(seconds=activity.elapsed_time)
    latitude, longitude = activity.start_latlng
    samples = source.get_samples(start, end, latitude, longitude)
    summaries = build_summaries(samples, start, activity.elapsed_time)
    if not summaries:
        logger.info("No weather samples for activity %s.", activity.id)
    return format_narrative(summaries)
