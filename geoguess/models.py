from __future__ import annotations

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from geoguess import codec


class GameState(str, Enum):
    """
    Ledger-reported lifecycle of a game.

    Ordered: AwaitingPlayer < Active < Revealing < Finished. States only
    advance; raw ledger/indexer values are translated into this enum at the
    adapter boundary.
    """
    AWAITING_PLAYER = "AwaitingPlayer"
    ACTIVE = "Active"
    REVEALING = "Revealing"
    FINISHED = "Finished"

    @property
    def rank(self) -> int:
        return _STATE_ORDER.index(self)

    def __lt__(self, other):  # type: ignore[override]
        if not isinstance(other, GameState):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):  # type: ignore[override]
        if not isinstance(other, GameState):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):  # type: ignore[override]
        if not isinstance(other, GameState):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):  # type: ignore[override]
        if not isinstance(other, GameState):
            return NotImplemented
        return self.rank >= other.rank


_STATE_ORDER = [
    GameState.AWAITING_PLAYER,
    GameState.ACTIVE,
    GameState.REVEALING,
    GameState.FINISHED,
]


class SecretRole(str, Enum):
    LOCATION = "location"  # creator's target location
    GUESS = "guess"


def normalize_player(value: Union[int, str, None]) -> Optional[str]:
    """
    Canonical participant identifier: lowercase 0x-hex without padding.

    Accepts ints, decimal strings and hex strings. Zero / empty means
    "no player" and returns None.
    """
    if value is None:
        return None
    if isinstance(value, int):
        n = value
    else:
        s = str(value).strip()
        if not s:
            return None
        n = int(s, 16) if s.lower().startswith("0x") else int(s, 10)
    if n == 0:
        return None
    return hex(n)


class Coordinate(BaseModel):
    lat: float
    lng: float

    @model_validator(mode="after")
    def _in_range(self) -> "Coordinate":
        codec.validate(self.lat, self.lng)
        return self

    @classmethod
    def from_fixed(cls, lat_fixed: int, lng_fixed: int) -> "Coordinate":
        lat, lng = codec.decode(lat_fixed, lng_fixed)
        return cls(lat=lat, lng=lng)

    def to_fixed(self) -> tuple[int, int]:
        return codec.encode(self.lat, self.lng)


class PlayerGuess(BaseModel):
    player: str
    commitment: int = 0
    has_submitted: bool = False
    has_revealed: bool = False
    revealed_guess: Optional[Coordinate] = None  # only once revealed
    score: Optional[int] = None  # ledger-computed meters, only once revealed

    @field_validator("player", mode="before")
    @classmethod
    def _norm_player(cls, v):
        p = normalize_player(v)
        if p is None:
            raise ValueError("guess must belong to a player")
        return p

    @model_validator(mode="after")
    def _reveal_fields(self) -> "PlayerGuess":
        if not self.has_revealed:
            self.revealed_guess = None
            self.score = None
        if self.has_revealed and not self.has_submitted:
            raise ValueError("cannot reveal without submitting")
        return self


class Game(BaseModel):
    """Ledger-owned game record as seen through the ledger or the indexer."""

    game_id: int
    player1: str
    player2: Optional[str] = None
    state: GameState = GameState.AWAITING_PLAYER
    end_time: int = 0
    location_commitment: int = 0
    location_revealed: bool = False
    actual_location: Optional[Coordinate] = None
    guesses: List[PlayerGuess] = Field(default_factory=list)
    winner: Optional[str] = None
    prize_pool: int = 0

    @field_validator("player1", mode="before")
    @classmethod
    def _norm_player1(cls, v):
        p = normalize_player(v)
        if p is None:
            raise ValueError("game must have a creator")
        return p

    @field_validator("player2", "winner", mode="before")
    @classmethod
    def _norm_optional(cls, v):
        return normalize_player(v)

    @model_validator(mode="after")
    def _invariants(self) -> "Game":
        if len(self.guesses) > 2:
            raise ValueError("a game holds at most two guesses")
        if not self.location_revealed:
            self.actual_location = None
        if self.state != GameState.FINISHED:
            self.winner = None
        return self

    def is_participant(self, player: Union[int, str, None]) -> bool:
        p = normalize_player(player)
        return p is not None and p in (self.player1, self.player2)

    def is_creator(self, player: Union[int, str, None]) -> bool:
        return normalize_player(player) == self.player1

    def opponent_of(self, player: Union[int, str, None]) -> Optional[str]:
        p = normalize_player(player)
        if p == self.player1:
            return self.player2
        if p is not None and p == self.player2:
            return self.player1
        return None

    def guess_of(self, player: Union[int, str, None]) -> Optional[PlayerGuess]:
        p = normalize_player(player)
        for g in self.guesses:
            if g.player == p:
                return g
        return None

    def both_submitted(self) -> bool:
        return len(self.guesses) == 2 and all(g.has_submitted for g in self.guesses)

    def both_revealed(self) -> bool:
        return len(self.guesses) == 2 and all(g.has_revealed for g in self.guesses)

    def seconds_left(self, now: float) -> int:
        return max(0, int(self.end_time - now))


class Secret(BaseModel):
    """
    Local-only pre-image of a commitment.

    Created at commit time, read at reveal time, deleted right after the
    reveal is confirmed. Never sent anywhere before the reveal.
    """

    game_id: int
    role: SecretRole
    lat: float
    lng: float
    lat_encoded: int
    lng_encoded: int
    salt: int
    commitment: int

    @classmethod
    def create(cls, game_id: int, role: SecretRole, lat: float, lng: float,
               salt: int, commitment: int) -> "Secret":
        lat_encoded, lng_encoded = codec.encode(lat, lng)
        return cls(
            game_id=game_id,
            role=role,
            lat=lat,
            lng=lng,
            lat_encoded=lat_encoded,
            lng_encoded=lng_encoded,
            salt=salt,
            commitment=commitment,
        )
