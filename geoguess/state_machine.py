"""
Client-side control logic of the commit-reveal protocol.

The machine never tracks an independent state. It projects the latest
ledger observation and decides which action the local player owes next:

    AwaitingPlayer -> Active -> Revealing -> Finished

Active -> Revealing is derived locally once both guesses are submitted; the
creator then owes reveal_location. Everything else is ledger-declared.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set, Tuple

from geoguess.models import Game, GameState, normalize_player

logger = logging.getLogger(__name__)


class Action(str, Enum):
    JOIN = "join_game"
    SUBMIT_GUESS = "submit_guess"
    REVEAL_LOCATION = "reveal_location"
    REVEAL_GUESS = "reveal_guess"
    WAIT = "wait"
    SPECTATE = "spectate"
    DONE = "done"


@dataclass(frozen=True)
class Decision:
    action: Action
    reason: str
    deadline_passed: bool = False
    # owed reveal whose pre-image is not stored locally; acting on it fails
    secret_missing: bool = False


def effective_phase(game: Game) -> GameState:
    """Ledger state, with Revealing derived from an Active game whose guesses are both in."""
    if game.state == GameState.ACTIVE and game.both_submitted():
        return GameState.REVEALING
    return game.state


def decide(
    game: Game,
    me: str,
    *,
    has_guess_secret: bool = True,
    now: Optional[float] = None,
) -> Decision:
    """
    Next action for `me` given the latest observation of `game`.

    Args:
        game: Latest projection
        me: Local player identifier
        has_guess_secret: Whether a GUESS secret is stored locally
        now: Epoch seconds, for deadline reporting only

    Returns:
        Decision. Submission past end_time is still requested; the ledger
        decides whether it is accepted.
    """
    me = normalize_player(me) or ""
    phase = effective_phase(game)

    if phase == GameState.FINISHED:
        return Decision(Action.DONE, "game finished")

    if not game.is_participant(me):
        if phase == GameState.AWAITING_PLAYER and game.player2 is None:
            return Decision(Action.JOIN, "open seat")
        return Decision(Action.SPECTATE, "not a participant")

    if phase == GameState.AWAITING_PLAYER:
        return Decision(Action.WAIT, "waiting for an opponent")

    mine = game.guess_of(me)
    submitted = mine is not None and mine.has_submitted

    if phase == GameState.ACTIVE:
        if submitted:
            return Decision(Action.WAIT, "waiting for the opponent's guess")
        late = now is not None and game.end_time > 0 and now >= game.end_time
        return Decision(Action.SUBMIT_GUESS, "guess not submitted", deadline_passed=late)

    # Revealing
    if not game.location_revealed:
        if game.is_creator(me):
            return Decision(Action.REVEAL_LOCATION, "both guesses submitted")
        return Decision(Action.WAIT, "waiting for the creator to reveal the location")
    if not submitted:
        return Decision(Action.WAIT, "no guess submitted; nothing to reveal")
    if mine is not None and mine.has_revealed:
        return Decision(Action.WAIT, "waiting for the opponent's reveal")
    if not has_guess_secret:
        return Decision(Action.REVEAL_GUESS, "guess secret missing", secret_missing=True)
    return Decision(Action.REVEAL_GUESS, "location revealed")


@dataclass
class GameProjection:
    """
    Cached view of one game, refreshed by each poll.

    Observations whose phase is behind the cached one come from a lagging
    replica and are discarded, so the observed sequence never regresses.
    """

    game_id: int
    game: Optional[Game] = None
    history: List[GameState] = field(default_factory=list)
    discarded: int = 0

    @property
    def phase(self) -> Optional[GameState]:
        return effective_phase(self.game) if self.game is not None else None

    def observe(self, game: Optional[Game]) -> bool:
        """Returns True if the observation replaced the cached projection."""
        if game is None:
            return False
        if game.game_id != self.game_id:
            raise ValueError(f"projection for game {self.game_id} got game {game.game_id}")

        new_phase = effective_phase(game)
        if self.game is not None:
            if _progress(game) < _progress(self.game):
                self.discarded += 1
                logger.warning(
                    f"game {self.game_id}: stale observation {new_phase.value} "
                    f"behind {self.phase.value}, discarded"
                )
                return False

        if not self.history or self.history[-1] != new_phase:
            logger.info(f"game {self.game_id}: phase {new_phase.value}")
            self.history.append(new_phase)
        self.game = game
        return True


def _progress(game: Game) -> Tuple[int, int, int, int]:
    """Monotone counters of a game record, compared lexicographically."""
    return (
        effective_phase(game).rank,
        int(game.location_revealed),
        sum(g.has_submitted for g in game.guesses),
        sum(g.has_revealed for g in game.guesses),
    )


class ActionLatch:
    """
    At-most-once emission of an action per game.

    Duplicate polls of the same condition yield a single request. A latch is
    released only when the action failed before reaching the ledger.
    """

    def __init__(self) -> None:
        self._held: Set[Tuple[int, Action]] = set()

    def acquire(self, game_id: int, action: Action) -> bool:
        key = (game_id, action)
        if key in self._held:
            return False
        self._held.add(key)
        return True

    def release(self, game_id: int, action: Action) -> None:
        self._held.discard((game_id, action))

    def held(self, game_id: int, action: Action) -> bool:
        return (game_id, action) in self._held
