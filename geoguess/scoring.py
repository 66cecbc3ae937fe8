"""
Great-circle scoring.

The ledger computes and stores the authoritative integer score on reveal.
These helpers exist for local verification and display.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

from geoguess.models import Coordinate, Game, GameState

EARTH_RADIUS_M = 6_371_000.0


def distance(a: Coordinate, b: Coordinate) -> float:
    """Haversine distance in meters."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    d_phi = math.radians(b.lat - a.lat)
    d_lambda = math.radians(b.lng - a.lng)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def winner(scores: Mapping[str, float]) -> Optional[str]:
    """
    Player with the strictly smaller distance.

    An exact tie is a draw and returns None; so does an empty mapping.
    """
    if not scores:
        return None
    best = min(scores.values())
    leaders = [p for p, s in scores.items() if s == best]
    return leaders[0] if len(leaders) == 1 else None


def format_distance(meters: float) -> str:
    if meters < 1000:
        return f"{round(meters)}m"
    if meters < 100_000:
        return f"{meters / 1000:.1f}km"
    return f"{round(meters / 1000)}km"


@dataclass(frozen=True)
class GameResult:
    """Outcome of a finished game, local recomputation next to the ledger's numbers."""

    game_id: int
    distances: Dict[str, float]
    ledger_scores: Dict[str, int]
    local_winner: Optional[str]
    ledger_winner: Optional[str]

    @property
    def is_draw(self) -> bool:
        return self.local_winner is None

    @property
    def agrees_with_ledger(self) -> bool:
        return self.local_winner == self.ledger_winner


def score_game(game: Game) -> GameResult:
    """
    Recompute distances from revealed coordinates.

    Raises:
        ValueError: If the target or either guess is not revealed yet
    """
    if not game.location_revealed or game.actual_location is None:
        raise ValueError(f"game {game.game_id}: location not revealed")
    if not game.both_revealed():
        raise ValueError(f"game {game.game_id}: guesses not revealed")

    distances: Dict[str, float] = {}
    ledger_scores: Dict[str, int] = {}
    for g in game.guesses:
        if g.revealed_guess is None:
            raise ValueError(f"game {game.game_id}: guess of {g.player} has no revealed coordinate")
        distances[g.player] = distance(g.revealed_guess, game.actual_location)
        if g.score is not None:
            ledger_scores[g.player] = g.score

    return GameResult(
        game_id=game.game_id,
        distances=distances,
        ledger_scores=ledger_scores,
        local_winner=winner(distances),
        ledger_winner=game.winner if game.state == GameState.FINISHED else None,
    )
