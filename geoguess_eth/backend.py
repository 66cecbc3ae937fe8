"""
Location backend HTTP client.

The backend issues target locations, keeps the creator's pre-image for the
location reveal and serves the panorama to participants only. Participant
identity travels in the X-Wallet-Address header.

Network errors, 5xx responses and the backend's "game not found" answer
(it may not have caught up with a fresh game yet) are retried with
exponential backoff. 403 is never retried.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import requests

from geoguess.commitment import parse_salt, to_hex
from geoguess.errors import AccessDeniedError, BackendUnavailableError, GuessrError
from geoguess.metrics import Metrics
from geoguess.models import Coordinate
from geoguess.polling import Clock, SystemClock
from geoguess.remote import LocationOffer

logger = logging.getLogger(__name__)

GAME_NOT_FOUND = "Game not found in database"


class _Retry(Exception):
    """Internal: the attempt failed in a retryable way."""

    def __init__(self, reason: str, cause: Optional[BaseException] = None):
        super().__init__(reason)
        self.cause = cause


class BackendClient:
    """
    Implements geoguess.remote.LocationBackend.

    Usage:
        backend = BackendClient("http://localhost:3001")
        offer = backend.random_location()
    """

    def __init__(
        self,
        base_url: str,
        *,
        max_retries: int = 5,
        retry_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        clock: Optional[Clock] = None,
        timeout: float = 8.0,
        metrics: Optional[Metrics] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.session = session or requests.Session()
        self.clock = clock or SystemClock()
        self.timeout = timeout
        self.metrics = metrics or Metrics()

    def _request(
        self,
        method: str,
        path: str,
        *,
        action: str,
        game_id: Optional[int] = None,
        player: Optional[str] = None,
        body: Optional[Dict[str, Any]] = None,
        retry_not_found: bool = False,
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if player:
            headers["X-Wallet-Address"] = player

        last: Optional[_Retry] = None
        for attempt in range(self.max_retries + 1):
            if attempt:
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.info(f"{action}: {last}, retrying in {delay:.1f}s ({attempt}/{self.max_retries})")
                self.clock.sleep(delay)
            try:
                return self._attempt(method, path, headers, body, action, game_id, retry_not_found)
            except _Retry as r:
                self.metrics.inc("backend_retries_total")
                last = r

        self.metrics.inc("backend_errors_total")
        logger.error(f"{action}: backend unavailable after {self.max_retries + 1} attempts")
        raise BackendUnavailableError(
            f"backend unavailable: {last}", game_id=game_id, action=action,
            cause=last.cause if last else None,
        )

    def _attempt(self, method, path, headers, body, action, game_id, retry_not_found) -> Dict[str, Any]:
        try:
            resp = self.session.request(
                method, f"{self.base_url}{path}", headers=headers, json=body, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise _Retry("network error", e) from e

        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            data = {}
        error = data.get("error", "") if isinstance(data, dict) else ""

        if resp.status_code == 403:
            raise AccessDeniedError(
                error or "not a participant in this game", game_id=game_id, action=action
            )
        if resp.status_code >= 500:
            raise _Retry(f"HTTP {resp.status_code}")
        if retry_not_found and GAME_NOT_FOUND in error:
            raise _Retry(GAME_NOT_FOUND)
        if resp.status_code >= 400:
            raise GuessrError(
                f"backend refused request: HTTP {resp.status_code} {error}".rstrip(),
                game_id=game_id, action=action,
            )
        if not isinstance(data, dict):
            raise GuessrError("backend returned a non-object body", game_id=game_id, action=action)
        return data

    # ---------------------------------------------------------------- creator

    def random_location(self) -> LocationOffer:
        data = self._request("GET", "/api/random-location", action="random_location")
        return LocationOffer(lat=float(data["lat"]), lng=float(data["lng"]), salt=parse_salt(data["salt"]))

    def save_game_location(self, game_id: int, lat: float, lng: float, salt: int, commitment: int) -> None:
        self._request(
            "POST",
            "/api/save-game-location",
            action="save_game_location",
            game_id=game_id,
            body={
                "gameId": int(game_id),
                "lat": lat,
                "lng": lng,
                "salt": to_hex(salt),
                "commitment": to_hex(commitment),
            },
        )
        logger.info(f"Location saved to backend for game #{game_id}")

    def secret_location(self, game_id: int, player: str) -> LocationOffer:
        data = self._request(
            "GET", f"/api/game/{int(game_id)}/secret",
            action="secret_location", game_id=game_id, player=player,
        )
        loc = data.get("secret_location")
        if not loc or not data.get("secret_salt"):
            raise GuessrError("no secret location data in backend", game_id=game_id, action="secret_location")
        return LocationOffer(lat=float(loc["lat"]), lng=float(loc["lng"]), salt=parse_salt(data["secret_salt"]))

    # ------------------------------------------------------------ participant

    def panorama(self, game_id: int, player: str) -> Coordinate:
        data = self._request(
            "GET", f"/api/panorama/{int(game_id)}",
            action="panorama", game_id=game_id, player=player, retry_not_found=True,
        )
        loc = data.get("location") or data
        return Coordinate(lat=float(loc["lat"]), lng=float(loc["lng"]))

    def revealed_location(self, game_id: int, player: str) -> Optional[Coordinate]:
        data = self._request(
            "GET", f"/api/game/{int(game_id)}",
            action="revealed_location", game_id=game_id, player=player,
        )
        loc = data.get("location")
        if not data.get("revealed") or not loc:
            return None
        return Coordinate(lat=float(loc["lat"]), lng=float(loc["lng"]))
