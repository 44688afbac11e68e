from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Protocol
from urllib.parse import unquote, urlparse

from .errors import UpstreamAuthError
from .models import AuthToken
from .storage import read_json, write_json
from .strava_client import StravaClient


logger = logging.getLogger(__name__)


class TokenStore(Protocol):
    def load(self) -> AuthToken: ...

    def save(self, token: AuthToken) -> None: ...


class FileTokenStore:
    """Stores the ``{access_token, refresh_token}`` record as a JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def load(self) -> AuthToken:
        if not self.path.exists():
            raise UpstreamAuthError(f"Token store {self.path} does not exist.")
        record = read_json(self.path)
        if not isinstance(record, dict) or not record:
            raise UpstreamAuthError(f"Token store {self.path} is empty or unreadable.")
        access_token = record.get("access_token")
        refresh_token = record.get("refresh_token")
        missing = [
            key
            for key, value in (("access_token", access_token), ("refresh_token", refresh_token))
            if not isinstance(value, str) or not value.strip()
        ]
        if missing:
            raise UpstreamAuthError(f"Token store {self.path} is missing {', '.join(missing)}.")
        return AuthToken(access_token=access_token.strip(), refresh_token=refresh_token.strip())

    def save(self, token: AuthToken) -> None:
        write_json(
            self.path,
            {
                "access_token": token.access_token,
                "refresh_token": token.refresh_token,
            },
        )


def token_store_from_uri(uri: str) -> TokenStore:
    text = str(uri or "").strip()
    if not text:
        raise ValueError("Token store URI is empty.")
    parsed = urlparse(text)
    if parsed.scheme == "file":
        path_text = unquote(parsed.path)
        if parsed.netloc and parsed.netloc != "localhost":
            path_text = f"//{parsed.netloc}{path_text}"
        if not path_text:
            raise ValueError(f"Token store URI '{text}' has no path.")
        return FileTokenStore(Path(path_text))
    if parsed.scheme and len(parsed.scheme) > 1:
        raise ValueError(f"Unsupported token store scheme '{parsed.scheme}'.")
    # Bare paths, including Windows drive letters.
    return FileTokenStore(Path(text))


ClientFactory = Callable[[AuthToken], StravaClient]


class SessionProvider:
    """Owns the cached Strava credential for the process.

    The stored token pair is loaded on first use only. Every unit of work runs
    inside :meth:`session`; when it exits the provider persists the client's
    token if the client rotated it.
    """

    def __init__(self, store: TokenStore, client_factory: ClientFactory) -> None:
        self._store = store
        self._client_factory = client_factory
        self._guard = threading.Lock()
        self._client: StravaClient | None = None
        self._persisted: AuthToken | None = None

    @classmethod
    def for_strava(cls, store: TokenStore, client_id: str, client_secret: str) -> "SessionProvider":
        return cls(store, lambda token: StravaClient(client_id, client_secret, token))

    @property
    def initialized(self) -> bool:
        return self._client is not None

    def client(self) -> StravaClient:
        client = self._client
        if client is not None:
            return client
        with self._guard:
            if self._client is None:
                token = self._store.load()
                self._persisted = token
                self._client = self._client_factory(token)
                logger.info("Loaded Strava credentials from token store.")
            return self._client

    def current_token(self) -> AuthToken:
        return self.client().token

    def rotate(self) -> AuthToken:
        """Force a refresh-token grant and persist the new pair."""
        client = self.client()
        client.refresh_access_token()
        self.persist_if_rotated()
        return client.token

    def persist_if_rotated(self) -> bool:
        client = self._client
        if client is None:
            return False
        with self._guard:
            current = client.token
            if current == self._persisted:
                return False
            self._store.save(current)
            self._persisted = current
        logger.info("Persisted rotated Strava credentials.")
        return True

    @contextmanager
    def session(self) -> Iterator[StravaClient]:
        client = self.client()
        try:
            yield client
        finally:
            self.persist_if_rotated()
