from __future__ import annotations

import argparse
import logging
import sys
import time
from dataclasses import dataclass
from typing import Optional

from geoguess.commitment import to_hex
from geoguess.errors import GuessrError
from geoguess.metrics import Metrics
from geoguess.models import Coordinate, Game, SecretRole
from geoguess.scoring import format_distance
from geoguess.session import GameSession, Lobby
from geoguess.state_machine import Action, Decision
from geoguess_eth.backend import BackendClient
from geoguess_eth.eth.chain_client import LedgerClient
from geoguess_eth.eth.settings import Settings
from geoguess_eth.indexer import IndexClient
from vault.store import SecretStore

logger = logging.getLogger("geoguess.cli")

STREET_VIEW_URL = "https://www.google.com/maps/@?api=1&map_action=pano&viewpoint={lat:.6f},{lng:.6f}"


@dataclass
class Context:
    settings: Settings
    ledger: LedgerClient
    index: IndexClient
    backend: BackendClient
    secrets: SecretStore
    metrics: Metrics

    @property
    def me(self) -> Optional[str]:
        return self.ledger.player

    def require_me(self) -> str:
        if self.me is None:
            raise SystemExit("❌ GUESSR_PRIVATE_KEY is required for this command")
        return self.me

    def session(self, game_id: int) -> GameSession:
        return GameSession(
            game_id,
            self.require_me(),
            self.ledger,
            self.secrets,
            index=self.index,
            backend=self.backend,
            metrics=self.metrics,
            poll_interval=self.settings.GAME_POLL_INTERVAL,
        )


def build_context() -> Context:
    settings = Settings.load()
    metrics = Metrics()
    ledger = LedgerClient.from_settings(settings)
    ledger.metrics = metrics
    return Context(
        settings=settings,
        ledger=ledger,
        index=IndexClient(settings.INDEXER_URL, model_prefix=settings.INDEXER_MODEL_PREFIX, metrics=metrics),
        backend=BackendClient(
            settings.BACKEND_URL,
            max_retries=settings.BACKEND_MAX_RETRIES,
            retry_delay=settings.BACKEND_RETRY_DELAY,
            metrics=metrics,
        ),
        secrets=SecretStore(settings.secrets_dir),
        metrics=metrics,
    )


def _state_label(game: Game) -> str:
    return game.state.value


def print_game(game: Game, now: Optional[float] = None) -> None:
    now = time.time() if now is None else now
    print(f"🎯 Game #{game.game_id} [{_state_label(game)}]")
    print(f"   player1   : {game.player1}")
    print(f"   player2   : {game.player2 or '-'}")
    if game.end_time:
        print(f"   time left : {game.seconds_left(now)}s")
    print(f"   commitment: {to_hex(game.location_commitment)}")
    if game.actual_location is not None:
        print(f"   location  : {game.actual_location.lat:.6f}, {game.actual_location.lng:.6f}")
    for g in game.guesses:
        line = f"   guess {g.player}: submitted={g.has_submitted} revealed={g.has_revealed}"
        if g.score is not None:
            line += f" distance={format_distance(g.score)}"
        print(line)
    if game.winner:
        print(f"🏆 winner    : {game.winner}")


def street_view_url(position: Coordinate) -> str:
    return STREET_VIEW_URL.format(lat=position.lat, lng=position.lng)


def print_decision(decision: Decision) -> None:
    marker = "⏰ " if decision.deadline_passed else ""
    if decision.secret_missing:
        marker += "🔓 no local secret, cannot reveal: "
    print(f"➡️  next: {decision.action.value} ({marker}{decision.reason})")


def cmd_create(args, ctx: Context):
    session = GameSession.create_game(
        ctx.require_me(), ctx.ledger, ctx.secrets, ctx.backend,
        index=ctx.index, metrics=ctx.metrics,
        poll_interval=ctx.settings.GAME_POLL_INTERVAL,
    )
    print("✅ Game created")
    print_game(session.game)


def cmd_join(args, ctx: Context):
    session = ctx.session(args.game_id)
    receipt = session.join()
    print(f"✅ Joined game #{args.game_id} (tx {receipt.tx_hash})")
    print_game(session.game)


def cmd_guess(args, ctx: Context):
    session = ctx.session(args.game_id)
    session.refresh_from_ledger()
    receipt = session.submit_guess(args.lat, args.lng)
    print(f"✅ Guess committed for game #{args.game_id} (tx {receipt.tx_hash})")
    print("   secret kept locally until reveal")


def cmd_view(args, ctx: Context):
    session = ctx.session(args.game_id)
    position = session.panorama()
    print(f"🌍 Game #{args.game_id} panorama")
    print(f"   {street_view_url(position)}")


def cmd_reveal(args, ctx: Context):
    session = ctx.session(args.game_id)
    session.refresh_from_ledger()
    decision = session.decide()
    if decision.action == Action.REVEAL_LOCATION:
        receipt = session.reveal_location()
        print("✅ Location revealed" if receipt else "ℹ️  Location was already revealed")
    elif decision.action == Action.REVEAL_GUESS:
        session.reveal_guess()
        print("✅ Guess revealed")
    else:
        print("ℹ️  Nothing to reveal right now")
        print_decision(decision)


def cmd_watch(args, ctx: Context):
    session = ctx.session(args.game_id)

    def on_update(game: Game, decision: Decision) -> None:
        print_game(game)
        print_decision(decision)

    try:
        session.watch(on_update=on_update)
    except KeyboardInterrupt:
        session.close()
        print("\n👋 Stopped watching")
        return
    print_result(session)


def print_result(session: GameSession) -> None:
    result = session.result()
    print(f"🏁 Game #{result.game_id} finished")
    for player, meters in result.distances.items():
        print(f"   {player}: {format_distance(meters)}")
    if result.is_draw:
        print("🤝 Draw")
    else:
        print(f"🏆 Winner: {result.local_winner}")
    if not result.agrees_with_ledger:
        print("⚠️  Local scoring disagrees with the ledger")


def cmd_list(args, ctx: Context):
    lobby = Lobby(ctx.me or "", ctx.index, limit=args.limit, metrics=ctx.metrics)
    games = lobby.refresh()
    if not games:
        print("No games yet")
        return
    joinable = {g.game_id for g in lobby.joinable()}
    mine = {g.game_id for g in lobby.mine()}
    for g in games:
        tag = "🟢 open" if g.game_id in joinable else ("👤 mine" if g.game_id in mine else "")
        print(f"#{g.game_id:<6} {_state_label(g):<15} {g.player1}  {tag}")


def cmd_status(args, ctx: Context):
    if ctx.me is None:
        game = ctx.index.get_game(args.game_id) or ctx.ledger.get_game(args.game_id)
        print_game(game)
        return
    session = ctx.session(args.game_id)
    session.refresh_from_ledger()
    game = session.game
    print_game(game)
    if game.actual_location is None and game.is_participant(session.me):
        try:
            target = session.target()
        except GuessrError as e:
            logger.warning(f"Backend location lookup failed: {e.user_message()}")
            target = None
        if target is not None:
            print(f"   location  : {target.lat:.6f}, {target.lng:.6f} (backend)")
    decision = session.decide()
    print_decision(decision)
    if decision.action == Action.DONE and session.game.both_revealed():
        print_result(session)


def cmd_pending(args, ctx: Context):
    pending = ctx.secrets.list_pending()
    if not pending:
        print("No pending secrets")
        return
    for s in pending:
        what = "location" if s.role == SecretRole.LOCATION else "guess"
        where = f"game #{s.game_id}" if s.game_id else "unconfirmed game"
        print(f"🔐 {where} {what} commitment={to_hex(s.commitment)}")


def main() -> None:
    p = argparse.ArgumentParser(prog="geoguess")
    p.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    sub = p.add_subparsers(dest="cmd", required=True)

    # create
    c = sub.add_parser("create", help="Create a game around a backend-issued location")
    c.set_defaults(func=cmd_create)

    # join
    j = sub.add_parser("join", help="Join an open game")
    j.add_argument("--game-id", type=int, required=True)
    j.set_defaults(func=cmd_join)

    # guess
    g = sub.add_parser("guess", help="Commit to a guess")
    g.add_argument("--game-id", type=int, required=True)
    g.add_argument("--lat", type=float, required=True)
    g.add_argument("--lng", type=float, required=True)
    g.set_defaults(func=cmd_guess)

    # view
    v = sub.add_parser("view", help="Print the Street View link of a game's location")
    v.add_argument("--game-id", type=int, required=True)
    v.set_defaults(func=cmd_view)

    # reveal
    r = sub.add_parser("reveal", help="Reveal whatever this player owes (location or guess)")
    r.add_argument("--game-id", type=int, required=True)
    r.set_defaults(func=cmd_reveal)

    # watch
    w = sub.add_parser("watch", help="Poll a game and reveal automatically until finished")
    w.add_argument("--game-id", type=int, required=True)
    w.set_defaults(func=cmd_watch)

    # list
    ls = sub.add_parser("list", help="List recent games")
    ls.add_argument("--limit", type=int, default=20)
    ls.set_defaults(func=cmd_list)

    # status
    s = sub.add_parser("status", help="Show a game and the next action")
    s.add_argument("--game-id", type=int, required=True)
    s.set_defaults(func=cmd_status)

    # pending
    pd = sub.add_parser("pending", help="List local secrets not yet revealed")
    pd.set_defaults(func=cmd_pending)

    args = p.parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        ctx = build_context()
        args.func(args, ctx)
    except GuessrError as e:
        logger.debug("command failed", exc_info=True)
        print(f"❌ {e.user_message()}", file=sys.stderr)
        sys.exit(1)
    except RuntimeError as e:
        print(f"❌ {e}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
