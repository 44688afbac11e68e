from __future__ import annotations

import logging
from typing import Any, Callable

from .models import Activity, ActivityUpdateCommand
from .processed_marker import is_processed, mark_processed


logger = logging.getLogger(__name__)

TREADMILL_HIKE_NAME = "Treadmill Hike"
TREADMILL_RUN_NAME = "Treadmill Run"
STRENGTH_TRAINING_NAME = "Strength Training"
GENERAL_ACTIVITY_NAME = "General Activity"

TO_BE_REFINED_SUFFIX = " ~"
UNREFINED_TAG = "\nto be refined"

REFINED_NAME_PREFIXES = (TREADMILL_HIKE_NAME, TREADMILL_RUN_NAME, GENERAL_ACTIVITY_NAME)
WEATHER_SPORTS = {"Run", "TrailRun", "Hike"}

WeatherNarrative = Callable[[Activity], str]
Rule = Callable[[Activity, WeatherNarrative], "ActivityUpdateCommand | None"]


def already_refined(activity: Activity) -> bool:
    if is_processed(activity.description):
        logger.info("Activity %s description carries the processed marker; no action.", activity.id)
        return True
    name = activity.name or ""
    if name.startswith(REFINED_NAME_PREFIXES):
        logger.info("Activity %s name '%s' shows it was already refined; no action.", activity.id, name)
        return True
    return False


def _walk_rule(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    if activity.sport_type != "Walk" or activity.name is None or activity.name == TREADMILL_HIKE_NAME:
        return None
    if activity.has_map or not activity.trainer:
        logger.info("Walk %s recorded outside; hiding from feed.", activity.id)
        return ActivityUpdateCommand(description=mark_processed(), hide_from_home=True)
    logger.info("Walk %s has no map and is trainer-flagged; marking as treadmill hike to be refined.", activity.id)
    return ActivityUpdateCommand(
        name=TREADMILL_HIKE_NAME + TO_BE_REFINED_SUFFIX,
        sport_type="Hike",
        description=mark_processed(suffix=UNREFINED_TAG),
        hide_from_home=True,
    )


def _treadmill_run_rule(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    if (
        activity.sport_type != "Run"
        or activity.has_map
        or activity.name is None
        or activity.name == TREADMILL_RUN_NAME
    ):
        return None
    logger.info("Run %s has no map; marking as treadmill run to be refined.", activity.id)
    return ActivityUpdateCommand(
        name=TREADMILL_RUN_NAME + TO_BE_REFINED_SUFFIX,
        description=mark_processed(suffix=UNREFINED_TAG),
        hide_from_home=True,
    )


def _weather_rule(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    if activity.sport_type not in WEATHER_SPORTS:
        return None
    if activity.start_latlng is None or activity.end_latlng is None:
        return None
    logger.info("Adding weather to %s %s.", activity.sport_type, activity.id)
    narrative = weather_narrative(activity)
    return ActivityUpdateCommand(description=mark_processed(activity.description, suffix=narrative))


def _weight_training_rule(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    if activity.sport_type != "WeightTraining":
        return None
    logger.info("Weight training %s; renaming and hiding from feed.", activity.id)
    return ActivityUpdateCommand(
        name=STRENGTH_TRAINING_NAME,
        sport_type="WeightTraining",
        description=mark_processed(),
        hide_from_home=True,
    )


def _workout_rule(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    if activity.sport_type != "Workout" or activity.has_map:
        return None
    logger.info("Workout %s has no map; renaming and hiding from feed.", activity.id)
    return ActivityUpdateCommand(
        name=GENERAL_ACTIVITY_NAME,
        sport_type="Workout",
        description=mark_processed(),
        hide_from_home=True,
    )


RULES: tuple[Rule, ...] = (
    _walk_rule,
    _treadmill_run_rule,
    _weather_rule,
    _weight_training_rule,
    _workout_rule,
)


def classify(activity: Activity, weather_narrative: WeatherNarrative) -> ActivityUpdateCommand | None:
    """Decide how to rewrite ``activity``, or return None to leave it alone.

    Rules are tried in order and the first one that matches wins.
    ``weather_narrative`` is only called for activities that get weather.
    """
    if already_refined(activity):
        return None
    for rule in RULES:
        command = rule(activity, weather_narrative)
        if command is not None:
            return command
    logger.info("No rule matched %s %s; no action.", activity.sport_type, activity.id)
    return None


def apply_update(client: Any, activity_id: int, command: ActivityUpdateCommand) -> dict[str, Any]:
    return client.update_activity(activity_id, command)
