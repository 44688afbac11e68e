from __future__ import annotations

import logging
import threading
from typing import Any

import requests

from .errors import (
    DeserializationError,
    UpstreamAuthError,
    UpstreamRequestError,
    UpstreamTransientError,
)
from .models import Activity, ActivityUpdateCommand, AuthToken
from .retry import call_with_retry


logger = logging.getLogger(__name__)

BASE_URL = "https://www.strava.com"
API_URL = f"{BASE_URL}/api/v3"
TIMEOUT_SECONDS = 30

TRANSIENT_STATUS_CODES = {404, 429}


def _response_text(response: requests.Response) -> str:
    try:
        return response.text or ""
    except (UnicodeDecodeError, ValueError):
        return ""


def _raise_for_status(response: requests.Response, description: str) -> None:
    status = response.status_code
    if 200 <= status < 300:
        return
    body = _response_text(response)
    message = f"{status} error in Strava API call for {description}"
    if body:
        message += f"\nResponse content: {body}"
    if status in (401, 403):
        raise UpstreamAuthError(message)
    if status in TRANSIENT_STATUS_CODES or status >= 500:
        raise UpstreamTransientError(message, status_code=status)
    raise UpstreamRequestError(message, status_code=status)


def _json_body(response: requests.Response, description: str) -> Any:
    body = _response_text(response)
    if not body.strip():
        raise DeserializationError(
            f"Strava API call for {description} returned {response.status_code} with an empty body."
        )
    try:
        return response.json()
    except ValueError as exc:
        raise DeserializationError(
            f"Problem deserializing Strava API response for {description}: {exc}",
            raw_body=body,
        ) from exc


class StravaClient:
    """Authenticated Strava API client.

    The access token is refreshed in place when Strava answers 401; callers read
    ``token`` afterwards to detect the rotation.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token: AuthToken,
        *,
        session: requests.Session | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.token = token
        self.session = session or requests.Session()
        self._refresh_guard = threading.Lock()

    def refresh_access_token(self, stale_access_token: str | None = None) -> AuthToken:
        with self._refresh_guard:
            if stale_access_token is not None and self.token.access_token != stale_access_token:
                # Another caller already rotated it.
                return self.token
            try:
                response = self.session.post(
                    f"{BASE_URL}/oauth/token",
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "refresh_token": self.token.refresh_token,
                        "grant_type": "refresh_token",
                    },
                    timeout=TIMEOUT_SECONDS,
                )
            except requests.RequestException as exc:
                raise UpstreamTransientError(f"Strava token refresh failed: {exc}") from exc
            if response.status_code in (400, 401, 403):
                raise UpstreamAuthError(
                    f"Strava rejected the refresh token ({response.status_code}). Reseed the token store."
                )
            _raise_for_status(response, "token refresh")
            payload = _json_body(response, "token refresh")
            access_token = payload.get("access_token") if isinstance(payload, dict) else None
            if not isinstance(access_token, str) or not access_token.strip():
                raise DeserializationError(
                    "Strava token refresh succeeded without access_token.",
                    raw_body=_response_text(response),
                )
            next_refresh = payload.get("refresh_token")
            refresh_token = self.token.refresh_token
            if isinstance(next_refresh, str) and next_refresh.strip():
                refresh_token = next_refresh.strip()
            self.token = AuthToken(access_token=access_token.strip(), refresh_token=refresh_token)
            logger.info("Strava access token refreshed.")
            return self.token

    def _send(
        self,
        method: str,
        path: str,
        access_token: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> requests.Response:
        try:
            return self.session.request(
                method,
                f"{API_URL}{path}",
                headers={"Authorization": f"Bearer {access_token}"},
                params=params,
                json=json_body,
                timeout=TIMEOUT_SECONDS,
            )
        except requests.RequestException as exc:
            raise UpstreamTransientError(f"Strava API call {method} {path} failed: {exc}") from exc

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> requests.Response:
        access_token = self.token.access_token
        response = self._send(method, path, access_token, params=params, json_body=json_body)
        if response.status_code == 401:
            self.refresh_access_token(stale_access_token=access_token)
            response = self._send(method, path, self.token.access_token, params=params, json_body=json_body)
        _raise_for_status(response, f"{method} {path}")
        return response

    def get_activity(self, activity_id: int) -> Activity:
        path = f"/activities/{activity_id}"
        response = call_with_retry("strava.get_activity", self._request, "GET", path)
        return Activity.from_api(_json_body(response, f"GET {path}"))

    def update_activity(self, activity_id: int, command: ActivityUpdateCommand) -> dict[str, Any]:
        path = f"/activities/{activity_id}"
        response = call_with_retry(
            "strava.update_activity",
            self._request,
            "PUT",
            path,
            json_body=command.to_payload(),
        )
        payload = _json_body(response, f"PUT {path}")
        if not isinstance(payload, dict):
            raise DeserializationError(
                f"Strava API response for PUT {path} is not an object.",
                raw_body=_response_text(response),
            )
        return payload
