"""
Raw ledger / indexer records -> core models.

The only place that pattern-matches on raw representations. Game state
arrives as small ints from the ledger, as enum names or numeric strings from
the indexer, and as {"variant": {...}} objects from some RPC decoders; all of
them collapse into GameState here.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from eth_utils import is_0x_prefixed, to_int

from geoguess.models import Coordinate, Game, GameState, PlayerGuess, normalize_player

_STATE_BY_CODE = {
    0: GameState.AWAITING_PLAYER,
    1: GameState.ACTIVE,
    2: GameState.REVEALING,
    3: GameState.FINISHED,
}

_STATE_BY_NAME = {s.value.lower(): s for s in GameState}
_STATE_BY_NAME.update({s.name.lower(): s for s in GameState})


def parse_int(raw: Any) -> int:
    """int / bool / bytes / 0x-hex / decimal string -> int. None and "" are 0."""
    if raw is None:
        return 0
    if isinstance(raw, bool):
        return int(raw)
    if isinstance(raw, int):
        return raw
    if isinstance(raw, (bytes, bytearray)):
        return int.from_bytes(raw, "big")
    s = str(raw).strip()
    if not s:
        return 0
    if is_0x_prefixed(s):
        return to_int(hexstr=s)
    return int(s, 10)


def parse_bool(raw: Any) -> bool:
    if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
        return raw.strip().lower() == "true"
    return parse_int(raw) != 0


def parse_game_state(raw: Any) -> GameState:
    """
    Raises:
        ValueError: Unknown state representation
    """
    if isinstance(raw, GameState):
        return raw
    if isinstance(raw, Mapping):
        variant = raw.get("variant", raw)
        for name, value in variant.items():
            if value is not None:
                return parse_game_state(name)
        raise ValueError(f"empty game state variant: {raw!r}")
    if isinstance(raw, str):
        s = raw.strip()
        named = _STATE_BY_NAME.get(s.lower())
        if named is not None:
            return named
    try:
        code = parse_int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"unknown game state: {raw!r}") from None
    if code not in _STATE_BY_CODE:
        raise ValueError(f"unknown game state code: {code}")
    return _STATE_BY_CODE[code]


def parse_coordinate(lat_raw: Any, lng_raw: Any) -> Coordinate:
    return Coordinate.from_fixed(parse_int(lat_raw), parse_int(lng_raw))


# --------------------------------------------------------------------- ledger

def guess_from_ledger(player: str, raw: Sequence[Any]) -> PlayerGuess:
    """
    get_guess(gameId, player) ->
        (commitment, lat, lng, hasSubmitted, hasRevealed, score)
    """
    commitment, lat, lng, has_submitted, has_revealed, score = raw
    revealed = parse_bool(has_revealed)
    return PlayerGuess(
        player=player,
        commitment=parse_int(commitment),
        has_submitted=parse_bool(has_submitted),
        has_revealed=revealed,
        revealed_guess=parse_coordinate(lat, lng) if revealed else None,
        score=parse_int(score) if revealed else None,
    )


def game_from_ledger(raw: Sequence[Any], guesses: Iterable[PlayerGuess] = ()) -> Game:
    """
    get_game(gameId) ->
        (gameId, player1, player2, prizePool, state, endTime,
         locationCommitment, actualLat, actualLng, locationRevealed, winner)
    """
    (game_id, player1, player2, prize_pool, state, end_time,
     location_commitment, actual_lat, actual_lng, location_revealed, winner) = raw
    revealed = parse_bool(location_revealed)
    return Game(
        game_id=parse_int(game_id),
        player1=parse_int(player1),
        player2=parse_int(player2),
        prize_pool=parse_int(prize_pool),
        state=parse_game_state(state),
        end_time=parse_int(end_time),
        location_commitment=parse_int(location_commitment),
        location_revealed=revealed,
        actual_location=parse_coordinate(actual_lat, actual_lng) if revealed else None,
        guesses=list(guesses),
        winner=parse_int(winner),
    )


# -------------------------------------------------------------------- indexer

def guess_from_index(node: Mapping[str, Any]) -> PlayerGuess:
    revealed = parse_bool(node.get("has_revealed"))
    rg = node.get("revealed_guess") or {}
    return PlayerGuess(
        player=node["player"],
        commitment=parse_int(node.get("commitment")),
        has_submitted=parse_bool(node.get("has_submitted")),
        has_revealed=revealed,
        revealed_guess=parse_coordinate(rg.get("lat"), rg.get("lng")) if revealed and rg else None,
        score=parse_int(node.get("score")) if revealed else None,
    )


def game_from_index(node: Mapping[str, Any], guess_nodes: Iterable[Mapping[str, Any]] = ()) -> Game:
    revealed = parse_bool(node.get("location_revealed"))
    loc = node.get("actual_location") or {}
    game_id = parse_int(node["game_id"])
    guesses = [
        guess_from_index(g) for g in guess_nodes
        if parse_int(g.get("game_id", game_id)) == game_id
    ]
    return Game(
        game_id=game_id,
        player1=node["player1"],
        player2=node.get("player2"),
        prize_pool=parse_int(node.get("prize_pool")),
        state=parse_game_state(node.get("game_state", 0)),
        end_time=parse_int(node.get("end_time")),
        location_commitment=parse_int(node.get("location_commitment")),
        location_revealed=revealed,
        actual_location=parse_coordinate(loc.get("lat"), loc.get("lng")) if revealed and loc else None,
        guesses=_order_guesses(guesses, node),
        winner=node.get("winner"),
    )


def _order_guesses(guesses: List[PlayerGuess], node: Mapping[str, Any]) -> List[PlayerGuess]:
    """player1's guess first; drop guesses of non-participants."""
    order: Dict[Optional[str], int] = {
        normalize_player(node.get("player1")): 0,
        normalize_player(node.get("player2")): 1,
    }
    order.pop(None, None)
    return sorted((g for g in guesses if g.player in order), key=lambda g: order[g.player])
