"""
Shared test doubles: an in-memory game world, a scripted indexer, a location
backend and a clock that never sleeps.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import pytest

from geoguess.commitment import commit_fixed
from geoguess.errors import (
    BackendUnavailableError,
    CommitmentMismatchError,
    ConfirmationTimeoutError,
    ConflictingStateError,
    DuplicateCommitmentError,
    LedgerRejectedError,
    TransientError,
)
from geoguess.models import Coordinate, Game, GameState, PlayerGuess, normalize_player
from geoguess.remote import ORDER_DESC, LocationOffer, TxHandle, TxReceipt
from geoguess.scoring import distance
from vault.store import SecretStore

ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
CAROL = "0x" + "cc" * 20

LONDON = (51.5072, -0.1276)
PARIS = (48.8566, 2.3522)
NEW_YORK = (40.7128, -74.0060)

# haversine, R = 6 371 000 m
PARIS_LONDON_M = 343_529.87
NEW_YORK_LONDON_M = 5_570_242.31

ROUND_SECONDS = 180


class FakeClock:
    """Manual clock. sleep() advances time instantly."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += seconds


@dataclass
class _Guess:
    commitment: int = 0
    lat_fixed: int = 0
    lng_fixed: int = 0
    has_submitted: bool = False
    has_revealed: bool = False
    score: int = 0


@dataclass
class _Game:
    game_id: int
    player1: str
    location_commitment: int
    player2: Optional[str] = None
    state: GameState = GameState.AWAITING_PLAYER
    end_time: int = 0
    location_revealed: bool = False
    lat_fixed: int = 0
    lng_fixed: int = 0
    winner: Optional[str] = None
    guesses: Dict[str, _Guess] = field(default_factory=dict)


class FakeLedger:
    """
    In-memory game world enforcing the commit-reveal rules.

    State changes apply on submission; wait_for_confirmation reports them
    applied unless the action is listed in `timeout_on`.
    """

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock or FakeClock()
        self.games: Dict[int, _Game] = {}
        self.calls: List[tuple] = []
        self.timeout_on: Set[str] = set()
        self.unavailable = False
        self._tx = 0

    def as_player(self, player: str) -> "LedgerView":
        return LedgerView(self, normalize_player(player))

    def _handle(self, action: str, game_id: Optional[int]) -> TxHandle:
        self._tx += 1
        return TxHandle(action=action, tx_hash=f"0x{self._tx:064x}", game_id=game_id)

    def _game(self, game_id: int) -> _Game:
        if game_id not in self.games:
            raise LedgerRejectedError("game not found", game_id=game_id)
        return self.games[game_id]

    def _check_up(self, action: str, game_id: Optional[int] = None) -> None:
        if self.unavailable:
            raise TransientError("ledger RPC unavailable", game_id=game_id, action=action)

    # writes, called through LedgerView

    def create_game(self, me: str, location_commitment: int) -> TxHandle:
        self._check_up("create_game")
        game_id = len(self.games) + 1
        self.games[game_id] = _Game(game_id, me, location_commitment)
        return self._handle("create_game", game_id)

    def join_game(self, me: str, game_id: int) -> TxHandle:
        self._check_up("join_game", game_id)
        g = self._game(game_id)
        if g.player1 == me or g.player2 == me:
            raise ConflictingStateError("ALREADY_JOINED", game_id=game_id, action="join_game")
        if g.player2 is not None or g.state != GameState.AWAITING_PLAYER:
            raise LedgerRejectedError("GAME_FULL", game_id=game_id, action="join_game")
        g.player2 = me
        g.state = GameState.ACTIVE
        g.end_time = int(self.clock.now()) + ROUND_SECONDS
        g.guesses = {g.player1: _Guess(), me: _Guess()}
        return self._handle("join_game", game_id)

    def submit_guess(self, me: str, game_id: int, commitment: int) -> TxHandle:
        self._check_up("submit_guess", game_id)
        g = self._game(game_id)
        if me not in g.guesses:
            raise LedgerRejectedError("NOT_A_PLAYER", game_id=game_id, action="submit_guess")
        if g.state != GameState.ACTIVE:
            raise LedgerRejectedError("GAME_NOT_ACTIVE", game_id=game_id, action="submit_guess")
        guess = g.guesses[me]
        if guess.has_submitted:
            raise DuplicateCommitmentError("ALREADY_SUBMITTED", game_id=game_id, action="submit_guess")
        guess.commitment = commitment
        guess.has_submitted = True
        if all(x.has_submitted for x in g.guesses.values()):
            g.state = GameState.REVEALING
        return self._handle("submit_guess", game_id)

    def reveal_location(self, me: str, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        self._check_up("reveal_location", game_id)
        self.calls.append(("reveal_location", me, game_id))
        g = self._game(game_id)
        if me != g.player1:
            raise LedgerRejectedError("NOT_CREATOR", game_id=game_id, action="reveal_location")
        if g.location_revealed:
            raise ConflictingStateError("LOCATION_ALREADY_REVEALED", game_id=game_id, action="reveal_location")
        if commit_fixed(lat_fixed, lng_fixed, salt) != g.location_commitment:
            raise CommitmentMismatchError("INVALID_REVEAL", game_id=game_id, action="reveal_location")
        g.location_revealed = True
        g.lat_fixed, g.lng_fixed = lat_fixed, lng_fixed
        return self._handle("reveal_location", game_id)

    def reveal_guess(self, me: str, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        self._check_up("reveal_guess", game_id)
        self.calls.append(("reveal_guess", me, game_id))
        g = self._game(game_id)
        if not g.location_revealed:
            raise LedgerRejectedError("LOCATION_NOT_REVEALED", game_id=game_id, action="reveal_guess")
        guess = g.guesses.get(me)
        if guess is None or not guess.has_submitted:
            raise LedgerRejectedError("NOTHING_TO_REVEAL", game_id=game_id, action="reveal_guess")
        if guess.has_revealed:
            raise ConflictingStateError("ALREADY_REVEALED", game_id=game_id, action="reveal_guess")
        if commit_fixed(lat_fixed, lng_fixed, salt) != guess.commitment:
            raise CommitmentMismatchError("INVALID_REVEAL", game_id=game_id, action="reveal_guess")
        guess.lat_fixed, guess.lng_fixed = lat_fixed, lng_fixed
        guess.has_revealed = True
        target = Coordinate.from_fixed(g.lat_fixed, g.lng_fixed)
        guess.score = int(distance(Coordinate.from_fixed(lat_fixed, lng_fixed), target))
        if all(x.has_revealed for x in g.guesses.values()):
            g.state = GameState.FINISHED
            (p1, s1), (p2, s2) = [(p, x.score) for p, x in g.guesses.items()]
            g.winner = p1 if s1 < s2 else p2 if s2 < s1 else None
        return self._handle("reveal_guess", game_id)

    def wait_for_confirmation(self, handle: TxHandle) -> TxReceipt:
        if handle.action in self.timeout_on:
            raise ConfirmationTimeoutError(
                "transaction not confirmed", game_id=handle.game_id, action=handle.action
            )
        return TxReceipt(tx_hash=handle.tx_hash, status=1, game_id=handle.game_id)

    # reads

    def get_game(self, game_id: int) -> Game:
        self._check_up("get_game", game_id)
        g = self._game(game_id)
        guesses = [
            PlayerGuess(
                player=p,
                commitment=x.commitment,
                has_submitted=x.has_submitted,
                has_revealed=x.has_revealed,
                revealed_guess=Coordinate.from_fixed(x.lat_fixed, x.lng_fixed) if x.has_revealed else None,
                score=x.score if x.has_revealed else None,
            )
            for p, x in g.guesses.items()
        ]
        return Game(
            game_id=g.game_id,
            player1=g.player1,
            player2=g.player2,
            state=g.state,
            end_time=g.end_time,
            location_commitment=g.location_commitment,
            location_revealed=g.location_revealed,
            actual_location=Coordinate.from_fixed(g.lat_fixed, g.lng_fixed) if g.location_revealed else None,
            guesses=guesses,
            winner=g.winner,
        )

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]:
        ids = sorted(self.games, reverse=(order == ORDER_DESC))[:limit]
        return [self.get_game(i) for i in ids]


class LedgerView:
    """FakeLedger bound to one signing player."""

    def __init__(self, ledger: FakeLedger, player: Optional[str]):
        self.ledger = ledger
        self.player = player

    def create_game(self, location_commitment: int) -> TxHandle:
        return self.ledger.create_game(self.player, location_commitment)

    def join_game(self, game_id: int) -> TxHandle:
        return self.ledger.join_game(self.player, game_id)

    def submit_guess(self, game_id: int, guess_commitment: int) -> TxHandle:
        return self.ledger.submit_guess(self.player, game_id, guess_commitment)

    def reveal_location(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        return self.ledger.reveal_location(self.player, game_id, lat_fixed, lng_fixed, salt)

    def reveal_guess(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        return self.ledger.reveal_guess(self.player, game_id, lat_fixed, lng_fixed, salt)

    def wait_for_confirmation(self, handle: TxHandle) -> TxReceipt:
        return self.ledger.wait_for_confirmation(handle)

    def get_game(self, game_id: int) -> Game:
        return self.ledger.get_game(game_id)

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]:
        return self.ledger.list_games(limit, order)


class ScriptedIndex:
    """Indexer returning queued observations, then mirroring the ledger."""

    def __init__(self, ledger: Optional[FakeLedger] = None):
        self.ledger = ledger
        self.queue: List[Optional[Game]] = []
        self.fail_next = 0

    def get_game(self, game_id: int) -> Optional[Game]:
        if self.fail_next:
            self.fail_next -= 1
            raise TransientError("indexer unavailable", action="index_query")
        if self.queue:
            return self.queue.pop(0)
        return self.ledger.get_game(game_id) if self.ledger else None

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]:
        return self.ledger.list_games(limit, order) if self.ledger else []


class FakeBackend:
    """Issues one fixed location, keeps what the creator saved, reports it once marked revealed."""

    def __init__(self, lat: float = LONDON[0], lng: float = LONDON[1], salt: int = 0x5EED):
        self.offer = LocationOffer(lat=lat, lng=lng, salt=salt)
        self.saved: Dict[int, LocationOffer] = {}
        self.revealed: Set[int] = set()
        self.fail_save = False

    def random_location(self) -> LocationOffer:
        return self.offer

    def save_game_location(self, game_id: int, lat: float, lng: float, salt: int, commitment: int) -> None:
        if self.fail_save:
            raise BackendUnavailableError("backend unavailable", game_id=game_id, action="save_game_location")
        self.saved[game_id] = LocationOffer(lat=lat, lng=lng, salt=salt)

    def panorama(self, game_id: int, player: str) -> Coordinate:
        offer = self.saved[game_id]
        return Coordinate(lat=offer.lat, lng=offer.lng)

    def secret_location(self, game_id: int, player: str) -> LocationOffer:
        return self.saved[game_id]

    def revealed_location(self, game_id: int, player: str) -> Optional[Coordinate]:
        if game_id not in self.revealed:
            return None
        offer = self.saved[game_id]
        return Coordinate(lat=offer.lat, lng=offer.lng)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def ledger(clock):
    return FakeLedger(clock)


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def store_factory(tmp_path):
    def make(name: str) -> SecretStore:
        return SecretStore(str(tmp_path / name))

    return make
