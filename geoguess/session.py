"""
Commit-reveal session for one game, seen from the local player.

Data flow:
    pick location -> encode -> commit -> persist secret -> submit
    poll until both commitments exist -> creator reveals location
    -> each player reveals guess -> ledger scores -> Finished

Indexer data is advisory: before any automatic reveal the session re-reads
the game from the ledger and only acts if the action is still owed.
"""

from __future__ import annotations

import logging
from typing import Callable, List, Optional

from geoguess import codec
from geoguess.commitment import commit, generate_salt, parse_salt, verify_fixed
from geoguess.errors import (
    CommitmentMismatchError,
    ConflictingStateError,
    DuplicateCommitmentError,
    GuessrError,
    LedgerRejectedError,
    SecretNotFoundError,
    SecretStoreError,
    TransientError,
)
from geoguess.metrics import Metrics
from geoguess.models import Coordinate, Game, Secret, SecretRole, normalize_player
from geoguess.polling import (
    GAME_POLL_INTERVAL,
    LOBBY_POLL_INTERVAL,
    Clock,
    PollScheduler,
    SystemClock,
)
from geoguess.remote import (
    ORDER_DESC,
    LocationBackend,
    RemoteIndexClient,
    RemoteLedgerClient,
    TxHandle,
    TxReceipt,
)
from geoguess.scoring import GameResult, score_game
from geoguess.state_machine import (
    Action,
    ActionLatch,
    Decision,
    GameProjection,
    decide,
)
from vault.store import SecretStore

logger = logging.getLogger(__name__)

AUTO_ACTIONS = (Action.REVEAL_LOCATION, Action.REVEAL_GUESS)


class GameSession:
    """
    Usage:
        session = GameSession(7, me, ledger, SecretStore("./state/secrets"), index=index)
        session.refresh()
        session.submit_guess(48.8566, 2.3522)
        session.watch()       # reveals automatically, returns when Finished
        print(session.result())
    """

    def __init__(
        self,
        game_id: int,
        me: str,
        ledger: RemoteLedgerClient,
        secrets: SecretStore,
        *,
        index: Optional[RemoteIndexClient] = None,
        backend: Optional[LocationBackend] = None,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
        poll_interval: float = GAME_POLL_INTERVAL,
    ):
        player = normalize_player(me)
        if player is None:
            raise ValueError("local player identifier required")
        self.game_id = int(game_id)
        self.me = player
        self.ledger = ledger
        self.secrets = secrets
        self.index = index
        self.backend = backend
        self.clock = clock or SystemClock()
        self.metrics = metrics or Metrics()
        self.poll_interval = poll_interval
        self.projection = GameProjection(self.game_id)
        self.latch = ActionLatch()
        self._poller: Optional[PollScheduler[Optional[Game]]] = None

    # ------------------------------------------------------------------ lobby

    @classmethod
    def create_game(
        cls,
        me: str,
        ledger: RemoteLedgerClient,
        secrets: SecretStore,
        backend: LocationBackend,
        **kwargs,
    ) -> "GameSession":
        """
        Create a game around a backend-issued secret location.

        The location is stored locally under its commitment before the
        ledger call, and moved to the game's slot once the game id is known.
        If the outcome is unknown the record stays put; reveal_location()
        picks it up by the commitment the ledger shows.

        Raises:
            SecretStoreError: Location could not be persisted; nothing was sent
            OutcomeUnknownError: The game may exist; the location is kept
        """
        offer = backend.random_location()
        salt = parse_salt(offer.salt)
        commitment = commit(offer.lat, offer.lng, salt)
        secrets.save_unassigned(Secret.create(0, SecretRole.LOCATION, offer.lat, offer.lng, salt, commitment))

        try:
            handle = ledger.create_game(commitment)
            logger.info(f"create_game submitted: {handle.tx_hash}")
            receipt = _confirm(ledger, handle)
        except LedgerRejectedError:
            secrets.discard_unassigned(commitment)
            raise
        if receipt.game_id is None:
            raise LedgerRejectedError(
                "confirmed create_game carried no GameCreated event", action="create_game"
            )
        game_id = receipt.game_id
        logger.info(f"Game #{game_id} created")

        try:
            secrets.assign(commitment, game_id)
        except SecretStoreError as e:
            logger.warning(f"Game #{game_id}: location left unassigned: {e.user_message()}")

        try:
            backend.save_game_location(game_id, offer.lat, offer.lng, salt, commitment)
        except GuessrError as e:
            logger.warning(f"Game #{game_id}: backend did not store the location: {e.user_message()}")

        session = cls(game_id, me, ledger, secrets, backend=backend, **kwargs)
        session.refresh()
        return session

    def join(self) -> TxReceipt:
        handle = self.ledger.join_game(self.game_id)
        logger.info(f"join_game #{self.game_id} submitted: {handle.tx_hash}")
        receipt = _confirm(self.ledger, handle)
        self.refresh_from_ledger()
        return receipt

    # -------------------------------------------------------------- projection

    @property
    def game(self) -> Game:
        if self.projection.game is None:
            self.refresh()
        if self.projection.game is None:
            raise TransientError("game not visible yet", game_id=self.game_id, action="refresh")
        return self.projection.game

    def fetch(self) -> Optional[Game]:
        """One read: indexer first, ledger point query when the indexer has nothing."""
        if self.index is not None:
            try:
                game = self.index.get_game(self.game_id)
            except TransientError as e:
                logger.warning(f"Indexer read failed, falling back to ledger: {e.user_message()}")
                self.metrics.inc("indexer_errors_total")
            else:
                if game is not None:
                    return game
        return self.ledger.get_game(self.game_id)

    def refresh(self) -> Optional[Game]:
        self.projection.observe(self.fetch())
        return self.projection.game

    def refresh_from_ledger(self) -> Game:
        """Authoritative point read."""
        self.projection.observe(self.ledger.get_game(self.game_id))
        return self.game

    def decide(self) -> Decision:
        return decide(
            self.game,
            self.me,
            has_guess_secret=self.secrets.exists(self.game_id, SecretRole.GUESS),
            now=self.clock.now(),
        )

    def seconds_left(self) -> int:
        return self.game.seconds_left(self.clock.now())

    # ----------------------------------------------------------------- commit

    def submit_guess(self, lat: float, lng: float) -> TxReceipt:
        """
        Commit to a guess.

        The secret is persisted before the ledger call; if that fails no
        transaction is sent. Only a definitive ledger rejection clears it:
        after a network error or a timeout the guess may still land.

        A pending secret left by such an attempt is resent with the same
        commitment when the ledger shows no guess and the coordinates match.

        Raises:
            DuplicateCommitmentError: A guess is on the ledger, or a different one is pending
            SecretStoreError: Secret could not be persisted
        """
        codec.validate(lat, lng)
        game = self.game
        if not game.is_participant(self.me):
            raise LedgerRejectedError("not a participant", game_id=self.game_id, action="submit_guess")

        pending = self.secrets.load(self.game_id, SecretRole.GUESS)
        if pending is not None:
            game = self.refresh_from_ledger()
        mine = game.guess_of(self.me)
        if mine is not None and mine.has_submitted:
            raise DuplicateCommitmentError(
                "guess already on the ledger", game_id=self.game_id, action="submit_guess"
            )

        decision = self.decide()
        if decision.deadline_passed:
            logger.warning(f"Game #{self.game_id}: deadline passed, submitting anyway")

        if pending is not None:
            if (pending.lat_encoded, pending.lng_encoded) != codec.encode(lat, lng):
                raise DuplicateCommitmentError(
                    "a different guess is already pending for this game",
                    game_id=self.game_id,
                    action="submit_guess",
                )
            logger.warning(f"Game #{self.game_id}: resending pending guess commitment")
            commitment = pending.commitment
        else:
            salt = generate_salt()
            commitment = commit(lat, lng, salt)
            secret = Secret.create(self.game_id, SecretRole.GUESS, lat, lng, salt, commitment)
            self.secrets.save(self.game_id, SecretRole.GUESS, secret)

        try:
            handle = self.ledger.submit_guess(self.game_id, commitment)
            logger.info(f"submit_guess #{self.game_id} submitted: {handle.tx_hash}")
            receipt = _confirm(self.ledger, handle)
        except LedgerRejectedError:
            self.secrets.clear(self.game_id, SecretRole.GUESS)
            raise
        self._invalidate()
        return receipt

    # ----------------------------------------------------------------- reveal

    def reveal_location(self) -> Optional[TxReceipt]:
        """
        Reveal the target location (creator).

        Returns:
            Receipt, or None if the ledger already had the location revealed
        """
        game = self.game
        secret = self.secrets.load(self.game_id, SecretRole.LOCATION)
        if secret is None and game.location_commitment:
            # create_game whose confirmation never arrived
            secret = self.secrets.assign(game.location_commitment, self.game_id)
            if secret is not None:
                logger.info(f"Game #{self.game_id}: recovered location stored before creation")
        if secret is not None:
            lat_fixed, lng_fixed, salt = secret.lat_encoded, secret.lng_encoded, secret.salt
        elif self.backend is not None:
            offer = self.backend.secret_location(self.game_id, self.me)
            lat_fixed, lng_fixed = codec.encode(offer.lat, offer.lng)
            salt = parse_salt(offer.salt)
        else:
            raise SecretNotFoundError(
                "no location secret available", game_id=self.game_id, action="reveal_location"
            )

        if game.location_commitment and not verify_fixed(game.location_commitment, lat_fixed, lng_fixed, salt):
            logger.error(f"Game #{self.game_id}: location pre-image does not match its commitment")
            raise CommitmentMismatchError(
                "location does not match the stored commitment",
                game_id=self.game_id,
                action="reveal_location",
            )

        try:
            handle = self.ledger.reveal_location(self.game_id, lat_fixed, lng_fixed, salt)
            logger.info(f"reveal_location #{self.game_id} submitted: {handle.tx_hash}")
            receipt = _confirm(self.ledger, handle)
        except ConflictingStateError:
            logger.info(f"Game #{self.game_id}: location already revealed")
            self.secrets.clear(self.game_id, SecretRole.LOCATION)
            return None
        self.secrets.clear(self.game_id, SecretRole.LOCATION)
        self._invalidate()
        return receipt

    def reveal_guess(self) -> TxReceipt:
        """
        Reveal the local player's guess and clear its secret once confirmed.

        Raises:
            SecretNotFoundError: Nothing stored locally; no ledger call is made
            CommitmentMismatchError: Stored pre-image does not match the commitment
        """
        secret = self.secrets.load(self.game_id, SecretRole.GUESS)
        if secret is None:
            logger.error(f"Game #{self.game_id}: guess secret not found")
            raise SecretNotFoundError(
                "secret not found; the guess cannot be revealed",
                game_id=self.game_id,
                action="reveal_guess",
            )

        mine = self.game.guess_of(self.me)
        expected = mine.commitment if mine is not None and mine.commitment else secret.commitment
        if not verify_fixed(expected, secret.lat_encoded, secret.lng_encoded, secret.salt):
            logger.error(f"Game #{self.game_id}: guess pre-image does not match its commitment")
            raise CommitmentMismatchError(
                "guess does not match the stored commitment",
                game_id=self.game_id,
                action="reveal_guess",
            )

        handle = self.ledger.reveal_guess(self.game_id, secret.lat_encoded, secret.lng_encoded, secret.salt)
        logger.info(f"reveal_guess #{self.game_id} submitted: {handle.tx_hash}")
        receipt = _confirm(self.ledger, handle)
        self.secrets.clear(self.game_id, SecretRole.GUESS)
        self._invalidate()
        return receipt

    # ---------------------------------------------------------------- driving

    def advance(self) -> Decision:
        """
        Act on the current projection.

        Automatic actions (both reveals) are emitted at most once per session
        and only after a ledger read confirms they are still owed.
        """
        decision = self.decide()
        if decision.action not in AUTO_ACTIONS:
            return decision
        if not self.latch.acquire(self.game_id, decision.action):
            return decision

        try:
            self.refresh_from_ledger()
            confirmed = self.decide()
            if confirmed.action != decision.action:
                self.latch.release(self.game_id, decision.action)
                return confirmed
            if decision.action == Action.REVEAL_LOCATION:
                self.reveal_location()
            else:
                self.reveal_guess()
        except TransientError:
            self.latch.release(self.game_id, decision.action)
            raise
        return decision

    def step(self) -> Decision:
        self.refresh()
        return self.advance()

    def watch(self, on_update: Optional[Callable[[Game, Decision], None]] = None,
              max_ticks: Optional[int] = None) -> Optional[Game]:
        """Poll every poll_interval seconds, acting as needed, until Finished or closed."""

        def handle(game: Optional[Game]) -> None:
            self.projection.observe(game)
            if self.projection.game is None:
                return
            decision = self.advance()
            if on_update is not None:
                on_update(self.projection.game, decision)
            if decision.action == Action.DONE and self._poller is not None:
                self._poller.cancel()

        self._poller = PollScheduler(
            self.fetch,
            handle,
            self.poll_interval,
            clock=self.clock,
            metrics=self.metrics,
            name=f"game-{self.game_id}",
        )
        try:
            self._poller.run(max_ticks=max_ticks)
        finally:
            self._poller.cancel()
        return self.projection.game

    def close(self) -> None:
        """Stop polling; in-flight results are discarded."""
        if self._poller is not None:
            self._poller.cancel()

    def result(self) -> GameResult:
        return score_game(self.refresh_from_ledger())

    # ---------------------------------------------------------------- backend

    def panorama(self) -> Coordinate:
        """Street View position for this game; the backend only serves participants."""
        if self.backend is None:
            raise RuntimeError("panorama requires a location backend")
        return self.backend.panorama(self.game_id, self.me)

    def target(self) -> Optional[Coordinate]:
        """Revealed target location: the ledger's copy, else the backend's once it reports the reveal."""
        game = self.game
        if game.actual_location is not None:
            return game.actual_location
        if self.backend is None:
            return None
        return self.backend.revealed_location(self.game_id, self.me)

    def _invalidate(self) -> None:
        if self._poller is not None:
            self._poller.invalidate()


def _confirm(ledger: RemoteLedgerClient, handle: TxHandle) -> TxReceipt:
    receipt = ledger.wait_for_confirmation(handle)
    if not receipt.applied:
        logger.error(f"{handle.action} reverted: {handle.tx_hash}")
        raise LedgerRejectedError("transaction reverted", game_id=handle.game_id, action=handle.action)
    logger.info(f"{handle.action} confirmed: {handle.tx_hash}")
    return receipt


class Lobby:
    """Open and own games, refreshed every LOBBY_POLL_INTERVAL seconds."""

    def __init__(
        self,
        me: str,
        source: RemoteIndexClient,
        *,
        limit: int = 20,
        clock: Optional[Clock] = None,
        metrics: Optional[Metrics] = None,
        poll_interval: float = LOBBY_POLL_INTERVAL,
    ):
        self.me = normalize_player(me)
        self.source = source
        self.limit = limit
        self.clock = clock or SystemClock()
        self.metrics = metrics or Metrics()
        self.poll_interval = poll_interval
        self.games: List[Game] = []
        self._poller: Optional[PollScheduler[List[Game]]] = None

    def fetch(self) -> List[Game]:
        return self.source.list_games(self.limit, ORDER_DESC)

    def observe(self, games: List[Game]) -> None:
        self.games = list(games)

    def refresh(self) -> List[Game]:
        self.observe(self.fetch())
        return self.games

    def joinable(self) -> List[Game]:
        return [g for g in self.games if decide(g, self.me or "").action == Action.JOIN]

    def mine(self) -> List[Game]:
        return [g for g in self.games if g.is_participant(self.me)]

    def watch(self, on_update: Optional[Callable[[List[Game]], None]] = None,
              max_ticks: Optional[int] = None) -> None:
        def handle(games: List[Game]) -> None:
            self.observe(games)
            if on_update is not None:
                on_update(self.games)

        self._poller = PollScheduler(
            self.fetch, handle, self.poll_interval,
            clock=self.clock, metrics=self.metrics, name="lobby",
        )
        try:
            self._poller.run(max_ticks=max_ticks)
        finally:
            self._poller.cancel()

    def close(self) -> None:
        if self._poller is not None:
            self._poller.cancel()
