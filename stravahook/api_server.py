from __future__ import annotations

import hmac
import logging
from datetime import datetime, timezone

from flask import Flask, request

from .config import Settings, configure_logging
from .dispatch import Dispatcher
from .errors import AuthorizationError, DispatchError, ValidationError
from .models import ObjectType, SubscriptionChallenge, WebhookEvent
from .storage import get_worker_heartbeat, is_worker_healthy


logger = logging.getLogger(__name__)

WEBHOOK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def verify_challenge(challenge: SubscriptionChallenge, verify_token: str) -> str:
    """Return the challenge to echo, or raise if the handshake is not ours."""
    token_ok = hmac.compare_digest(
        (challenge.verify_token or "").encode("utf-8"),
        verify_token.encode("utf-8"),
    )
    if challenge.mode != "subscribe" or not token_ok:
        raise AuthorizationError("Subscription handshake mode or verify token mismatch.")
    if not challenge.challenge:
        raise ValidationError("Subscription handshake has no challenge.")
    return challenge.challenge


def parse_event(raw: object) -> WebhookEvent:
    event = WebhookEvent.from_payload(raw)
    if event.aspect is None:
        raise ValidationError(f"Unrecognised aspect_type '{event.aspect_type}'.")
    if event.object is None:
        raise ValidationError(f"Unrecognised object_type '{event.object_type}'.")
    return event


def create_app(settings: Settings, dispatcher: Dispatcher | None = None) -> Flask:
    app = Flask(__name__)
    dispatcher = dispatcher or Dispatcher.from_settings(settings)

    def _handshake() -> tuple[dict, int]:
        challenge = SubscriptionChallenge(
            mode=request.args.get("hub.mode"),
            verify_token=request.args.get("hub.verify_token"),
            challenge=request.args.get("hub.challenge"),
        )
        try:
            echoed = verify_challenge(challenge, settings.webhook_verify_token)
        except AuthorizationError as exc:
            logger.warning("%s", exc)
            return {"status": "error", "error": "Forbidden."}, 403
        except ValidationError as exc:
            return {"status": "error", "error": str(exc)}, 400
        logger.info("Subscription handshake accepted.")
        return {"hub.challenge": echoed}, 200

    def _receive_event() -> tuple[dict, int]:
        raw = request.get_json(silent=True, force=True)
        try:
            event = parse_event(raw)
        except ValidationError as exc:
            logger.debug("Rejected webhook body: %s", request.get_data(as_text=True))
            return {"status": "error", "error": str(exc)}, 400

        if event.subscription_id != settings.webhook_subscription_id:
            logger.warning("Event for unexpected subscription %s rejected.", event.subscription_id)
            return {"status": "error", "error": "Forbidden."}, 403
        if event.owner_id != settings.strava_athlete_id:
            logger.warning("Event for unexpected owner %s ignored.", event.owner_id)
            return {"status": "ignored"}, 200
        if event.object is not ObjectType.ACTIVITY:
            logger.info("Event for object type %s ignored.", event.object_type)
            return {"status": "ignored"}, 200
        if event.aspect not in settings.handled_aspect_types:
            logger.info("Event type %s for activity %s is not handled.", event.aspect_type, event.object_id)
            return {"status": "ignored"}, 200

        try:
            job_id = dispatcher.schedule(event, event.object_id)
        except DispatchError as exc:
            logger.error("%s", exc)
            return {"status": "error", "error": "Failed to schedule event."}, 500
        return {"status": "scheduled", "job_id": job_id}, 200

    @app.route("/", methods=WEBHOOK_METHODS, provide_automatic_options=False)
    def webhook() -> tuple[dict, int]:
        if request.method == "GET":
            return _handshake()
        if request.method == "POST":
            return _receive_event()
        return {"status": "error", "error": f"Method {request.method} is not supported."}, 501

    @app.get("/health")
    def health() -> tuple[dict, int]:
        heartbeat = get_worker_heartbeat(settings.runtime_db_file)
        return (
            {
                "status": "ok",
                "time_utc": datetime.now(timezone.utc).isoformat(),
                "worker_last_heartbeat_utc": heartbeat.isoformat() if heartbeat else None,
                "worker_healthy": is_worker_healthy(
                    settings.runtime_db_file, settings.worker_health_max_age_seconds
                ),
            },
            200,
        )

    return app


def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    settings.validate()
    settings.ensure_state_paths()
    app = create_app(settings)
    app.run(host="0.0.0.0", port=settings.api_port)


if __name__ == "__main__":
    main()
