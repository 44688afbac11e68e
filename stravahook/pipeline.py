from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from .classification import apply_update, classify
from .models import Activity, AspectType, WebhookEvent
from .storage import is_activity_processed, mark_activity_processed
from .tokens import SessionProvider
from .weather import WeatherSource, weather_narrative_for


logger = logging.getLogger(__name__)


def process_event(
    event: WebhookEvent,
    *,
    provider: SessionProvider,
    weather_source: WeatherSource,
    processed_db: Path | None = None,
) -> dict[str, Any]:
    """Run one deferred unit: resolve the activity, classify it and apply the update.

    ``processed_db`` enables the local record of activities already updated, which
    lets redelivered events skip the activity lookup.
    """
    activity_id = event.object_id
    if event.aspect is not AspectType.CREATE:
        logger.info("Event type %s is not handled for activity %s; no action.", event.aspect_type, activity_id)
        return {"status": "ignored", "activity_id": activity_id, "aspect_type": event.aspect_type}

    if processed_db is not None and is_activity_processed(processed_db, activity_id):
        logger.info("Activity %s was already updated by this service; no action.", activity_id)
        return {"status": "already_processed", "activity_id": activity_id}

    logger.info("Processing creation of activity %s.", activity_id)
    with provider.session() as client:
        activity = client.get_activity(activity_id)

        def narrative(target: Activity) -> str:
            return weather_narrative_for(target, weather_source)

        command = classify(activity, narrative)
        if command is None:
            return {"status": "no_action", "activity_id": activity_id}

        apply_update(client, activity_id, command)

    if processed_db is not None:
        mark_activity_processed(processed_db, activity_id)
    fields = sorted(command.to_payload())
    logger.info("Updated activity %s (%s).", activity_id, ", ".join(fields))
    return {"status": "updated", "activity_id": activity_id, "fields": fields}
