"""
Read-only GraphQL indexer client.

The indexer mirrors ledger models and may lag behind the ledger. Every
failure is reported as TransientError; a game the indexer has not seen yet
is None, not an error.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, List, Optional

import requests

from geoguess.errors import TransientError
from geoguess.metrics import Metrics
from geoguess.models import Game
from geoguess.remote import ORDER_ASC, ORDER_DESC
from geoguess_eth.eth.adapters import game_from_index

logger = logging.getLogger(__name__)

GAME_FIELDS = """
          game_id
          player1
          player2
          game_state
          end_time
          prize_pool
          location_commitment
          actual_location { lat lng }
          location_revealed
          winner
"""

GUESS_FIELDS = """
          game_id
          player
          commitment
          revealed_guess { lat lng }
          has_submitted
          has_revealed
          score
"""


class IndexClient:
    """
    Implements geoguess.remote.RemoteIndexClient.

    Usage:
        index = IndexClient("http://localhost:8080")
        game = index.get_game(7)
    """

    def __init__(
        self,
        base_url: str,
        *,
        model_prefix: str = "geoguess",
        session: Optional[requests.Session] = None,
        timeout: float = 8.0,
        metrics: Optional[Metrics] = None,
    ):
        self.url = base_url.rstrip("/") + "/graphql"
        self.game_model = f"{model_prefix}GameModels"
        self.guess_model = f"{model_prefix}PlayerGuessModels"
        self.session = session or requests.Session()
        self.timeout = timeout
        self.metrics = metrics or Metrics()

    def _query(self, query: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        t0 = time.time()
        body: Dict[str, Any] = {"query": query}
        if variables:
            body["variables"] = variables
        try:
            resp = self.session.post(self.url, json=body, timeout=self.timeout)
            resp.raise_for_status()
            result = resp.json()
        except (requests.exceptions.RequestException, ValueError) as e:
            self.metrics.inc("indexer_errors_total")
            raise TransientError("indexer unavailable", action="index_query", cause=e) from e

        if result.get("errors"):
            self.metrics.inc("indexer_errors_total")
            raise TransientError(
                f"indexer query failed: {result['errors'][0].get('message', 'unknown error')}",
                action="index_query",
            )
        self.metrics.observe("indexer_latency_ms", (time.time() - t0) * 1000.0)
        return result.get("data") or {}

    def _nodes(self, data: Dict[str, Any], model: str) -> List[Dict[str, Any]]:
        edges = (data.get(model) or {}).get("edges") or []
        return [e["node"] for e in edges if e.get("node")]

    def get_game(self, game_id: int) -> Optional[Game]:
        query = f"""
        query GetGame($gameId: u256) {{
          {self.game_model}(where: {{ game_id: $gameId }}) {{
            edges {{ node {{ {GAME_FIELDS} }} }}
          }}
          {self.guess_model}(where: {{ game_id: $gameId }}) {{
            edges {{ node {{ {GUESS_FIELDS} }} }}
          }}
        }}
        """
        data = self._query(query, {"gameId": str(int(game_id))})
        games = self._nodes(data, self.game_model)
        if not games:
            logger.debug(f"Game #{game_id} not indexed yet")
            return None
        try:
            return game_from_index(games[0], self._nodes(data, self.guess_model))
        except ValueError as e:
            raise TransientError(
                "indexer returned an unreadable game", game_id=game_id, action="index_query", cause=e
            ) from e

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]:
        direction = ORDER_ASC if order == ORDER_ASC else ORDER_DESC
        query = f"""
        query ListGames {{
          {self.game_model}(limit: {int(limit)}, order: {{ direction: {direction}, field: GAME_ID }}) {{
            edges {{ node {{ {GAME_FIELDS} }} }}
          }}
        }}
        """
        games = []
        for node in self._nodes(self._query(query), self.game_model):
            try:
                games.append(game_from_index(node))
            except ValueError as e:
                logger.warning(f"Skipping unreadable indexed game {node.get('game_id')}: {e}")
        return games
