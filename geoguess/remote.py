"""
Boundary contracts of the external collaborators.

The core only depends on these protocols; concrete adapters live in
geoguess_eth (web3 ledger, GraphQL indexer, HTTP backend).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol

from geoguess.models import Coordinate, Game

ORDER_DESC = "DESC"
ORDER_ASC = "ASC"


@dataclass(frozen=True)
class TxHandle:
    """Submitted, not yet confirmed, state-changing call."""

    action: str
    tx_hash: str
    game_id: Optional[int] = None


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int  # 1 = applied
    game_id: Optional[int] = None  # set from GameCreated for create_game
    block_number: Optional[int] = None

    @property
    def applied(self) -> bool:
        return self.status == 1


class RemoteLedgerClient(Protocol):
    def create_game(self, location_commitment: int) -> TxHandle: ...

    def join_game(self, game_id: int) -> TxHandle: ...

    def submit_guess(self, game_id: int, guess_commitment: int) -> TxHandle: ...

    def reveal_location(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle: ...

    def reveal_guess(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle: ...

    def wait_for_confirmation(self, handle: TxHandle) -> TxReceipt: ...

    def get_game(self, game_id: int) -> Game: ...

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]: ...


class RemoteIndexClient(Protocol):
    def get_game(self, game_id: int) -> Optional[Game]: ...

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]: ...


@dataclass(frozen=True)
class LocationOffer:
    """Fresh target location and one-time salt issued by the backend."""

    lat: float
    lng: float
    salt: int


class LocationBackend(Protocol):
    def random_location(self) -> LocationOffer: ...

    def save_game_location(self, game_id: int, lat: float, lng: float, salt: int, commitment: int) -> None: ...

    def panorama(self, game_id: int, player: str) -> Coordinate: ...

    def secret_location(self, game_id: int, player: str) -> LocationOffer: ...

    def revealed_location(self, game_id: int, player: str) -> Optional[Coordinate]: ...
