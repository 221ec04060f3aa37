from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

import requests

from .config import BackendConfig
from .errors import BackendError
from .models import Event

logger = logging.getLogger(__name__)

SYNC_BATCH_LIMIT = 100


class BackendClient:
    """REST calls against the attendance backend."""

    name = "backend"

    def __init__(self, config: BackendConfig, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self._session = session or requests.Session()
        self._session.headers.setdefault("Content-Type", "application/json")

    def _url(self, path: str) -> str:
        return f"{self.config.base_url}/{path.lstrip('/')}"

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        url = self._url(path)
        logger.debug("%s %s", method, url)
        try:
            response = self._session.request(method, url, timeout=self.config.timeout_sec, **kwargs)
        except requests.RequestException as exc:
            raise BackendError(f"{method} {url} failed: {exc}") from exc
        if not response.ok:
            raise BackendError(f"{method} {url} returned {response.status_code}: {response.text[:200]}")
        return response

    def create_event(self, event: Event) -> None:
        self._request("POST", "/events", json=event.to_dict())

    def publish(self, event: Event) -> None:
        self.create_event(event)

    def sync_events(self, events: Sequence[Event]) -> int:
        """Upload events in `/events/sync` batches of at most SYNC_BATCH_LIMIT; returns the count sent."""
        sent = 0
        for start in range(0, len(events), SYNC_BATCH_LIMIT):
            batch = events[start : start + SYNC_BATCH_LIMIT]
            self._request("POST", "/events/sync", json={"events": [event.to_dict() for event in batch]})
            sent += len(batch)
        if sent:
            logger.info("Synced %d events", sent)
        return sent

    def fetch_roster(self) -> List[str]:
        response = self._request("GET", "/employees/areas")
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendError(f"Roster payload is not JSON: {exc}") from exc
        if not isinstance(data, list) or not all(isinstance(item, str) for item in data):
            raise BackendError("Roster payload must be a JSON array of strings")
        roster = [item.strip() for item in data if item.strip()]
        logger.info("Fetched %d approved ids", len(roster))
        return roster

    def close(self) -> None:
        self._session.close()
