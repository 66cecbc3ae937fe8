"""
End-to-end commit-reveal sessions against the in-memory game world.

Scenarios:
- Happy path: create, join, both commit, reveals, ledger scores, Finished
- Mismatched reveal is rejected before and by the ledger
- Missing secret aborts the reveal without a ledger call
- Confirmation timeout keeps the secret and never re-submits
- A location committed before a lost create_game receipt is still revealed
- Network errors keep the guess secret; only a ledger rejection drops it
- Duplicate polls trigger exactly one reveal_location
"""

from __future__ import annotations

import pytest

from geoguess import codec
from geoguess.commitment import commit
from geoguess.errors import (
    CommitmentMismatchError,
    ConfirmationTimeoutError,
    DuplicateCommitmentError,
    LedgerRejectedError,
    OutcomeUnknownError,
    SecretNotFoundError,
    SecretStoreError,
    TransientError,
)
from geoguess.models import Coordinate, GameState, Secret, SecretRole
from geoguess.session import GameSession, Lobby
from geoguess.state_machine import Action

from conftest import (
    ALICE,
    BOB,
    CAROL,
    LONDON,
    NEW_YORK,
    NEW_YORK_LONDON_M,
    PARIS,
    PARIS_LONDON_M,
    ScriptedIndex,
)


@pytest.fixture
def players(ledger, backend, clock, store_factory):
    """Alice creates a game around London, Bob joins. Nobody has guessed yet."""
    store_a, store_b = store_factory("alice"), store_factory("bob")
    alice = GameSession.create_game(ALICE, ledger.as_player(ALICE), store_a, backend, clock=clock)
    bob = GameSession(alice.game_id, BOB, ledger.as_player(BOB), store_b, clock=clock)
    bob.join()
    alice.refresh()
    return alice, bob


def _both_guess(alice, bob):
    alice.submit_guess(*PARIS)
    bob.submit_guess(*NEW_YORK)


class TestHappyPath:
    def test_create_game_commits_backend_location(self, players, ledger, backend):
        alice, _ = players
        g = alice.game

        assert g.state == GameState.ACTIVE
        assert g.location_commitment == commit(*LONDON, backend.offer.salt)
        assert backend.saved[alice.game_id].lat == LONDON[0]
        assert alice.secrets.exists(alice.game_id, SecretRole.LOCATION)

    def test_full_game(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)

        assert alice.step().action == Action.REVEAL_LOCATION
        assert bob.step().action == Action.REVEAL_GUESS
        assert alice.step().action == Action.REVEAL_GUESS
        assert alice.step().action == Action.DONE

        game = alice.game
        assert game.state == GameState.FINISHED
        assert game.winner == ALICE

        result = alice.result()
        assert result.local_winner == ALICE
        assert result.agrees_with_ledger
        assert result.distances[ALICE] == pytest.approx(PARIS_LONDON_M, abs=1)
        assert result.distances[BOB] == pytest.approx(NEW_YORK_LONDON_M, abs=1)
        assert result.ledger_scores == {ALICE: 343_529, BOB: 5_570_242}

    def test_secrets_cleared_after_reveal(self, players):
        alice, bob = players
        _both_guess(alice, bob)
        assert bob.secrets.exists(bob.game_id, SecretRole.GUESS)

        alice.step()
        bob.step()
        alice.step()

        assert alice.secrets.list_pending() == []
        assert bob.secrets.list_pending() == []

    def test_watch_runs_to_finish(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        updates = []

        def on_update(game, decision):
            updates.append(decision.action)
            bob.step()

        final = alice.watch(on_update=on_update, max_ticks=10)

        assert final.state == GameState.FINISHED
        assert updates[-1] == Action.DONE
        assert [c[0] for c in ledger.calls].count("reveal_location") == 1


class TestExactlyOnceReveal:
    def test_duplicate_stale_polls_single_reveal_location(self, players, ledger):
        """Stale indexer snapshots keep showing the reveal as owed; it is sent once."""
        alice, bob = players
        _both_guess(alice, bob)

        stale = ledger.get_game(alice.game_id)
        index = ScriptedIndex(ledger)
        index.queue = [stale, stale, stale]
        alice.index = index

        final = alice.watch(on_update=lambda g, d: bob.step(), max_ticks=10)

        assert final.state == GameState.FINISHED
        reveals = [c for c in ledger.calls if c[0] == "reveal_location"]
        assert reveals == [("reveal_location", ALICE, alice.game_id)]

    def test_only_creator_reveals_location(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)

        assert bob.step().action == Action.WAIT
        assert ledger.calls == []

    def test_already_revealed_location_tolerated(self, players, ledger, backend):
        alice, bob = players
        _both_guess(alice, bob)
        loc = alice.secrets.load(alice.game_id, SecretRole.LOCATION)
        ledger.as_player(ALICE).reveal_location(alice.game_id, loc.lat_encoded, loc.lng_encoded, loc.salt)

        assert alice.reveal_location() is None
        assert not alice.secrets.exists(alice.game_id, SecretRole.LOCATION)

    def test_location_reveal_falls_back_to_backend(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        alice.secrets.clear(alice.game_id, SecretRole.LOCATION)

        assert alice.reveal_location() is not None
        assert ledger.get_game(alice.game_id).location_revealed


class TestMismatchedReveal:
    def test_tampered_secret_rejected_before_ledger(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        alice.step()

        real = bob.secrets.load(bob.game_id, SecretRole.GUESS)
        forged = Secret.create(bob.game_id, SecretRole.GUESS, *LONDON, real.salt, real.commitment)
        bob.secrets.save(bob.game_id, SecretRole.GUESS, forged, replace=True)
        bob.refresh()

        with pytest.raises(CommitmentMismatchError):
            bob.reveal_guess()
        assert ("reveal_guess", BOB, bob.game_id) not in ledger.calls
        # secret kept, the game is not finished
        assert bob.secrets.exists(bob.game_id, SecretRole.GUESS)
        assert ledger.get_game(bob.game_id).state == GameState.REVEALING

    def test_ledger_rejects_wrong_preimage(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        alice.step()

        real = bob.secrets.load(bob.game_id, SecretRole.GUESS)
        with pytest.raises(CommitmentMismatchError):
            ledger.as_player(BOB).reveal_guess(bob.game_id, real.lat_encoded + 1, real.lng_encoded, real.salt)
        assert not ledger.get_game(bob.game_id).guess_of(BOB).has_revealed

    def test_reveal_of_other_coordinates_under_same_salt(self, players, ledger, monkeypatch):
        """Bob committed to Paris with salt S1; revealing (48.0, 2.0) with S1 must fail."""
        s1 = 0x5A17
        monkeypatch.setattr("geoguess.session.generate_salt", lambda: s1)
        alice, bob = players
        alice.submit_guess(*NEW_YORK)
        bob.submit_guess(*PARIS)
        alice.step()

        real = bob.secrets.load(bob.game_id, SecretRole.GUESS)
        assert real.salt == s1
        assert real.commitment == commit(*PARIS, s1)
        forged = Secret.create(bob.game_id, SecretRole.GUESS, 48.0, 2.0, s1, real.commitment)
        bob.secrets.save(bob.game_id, SecretRole.GUESS, forged, replace=True)
        bob.refresh()

        with pytest.raises(CommitmentMismatchError):
            bob.reveal_guess()
        assert ("reveal_guess", BOB, bob.game_id) not in ledger.calls

        # and sent straight to the ledger, bypassing the local check
        with pytest.raises(CommitmentMismatchError):
            ledger.as_player(BOB).reveal_guess(bob.game_id, *codec.encode(48.0, 2.0), s1)
        assert not ledger.get_game(bob.game_id).guess_of(BOB).has_revealed


class TestMissingSecret:
    def test_reveal_guess_without_secret(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        alice.step()
        bob.secrets.clear(bob.game_id, SecretRole.GUESS)
        bob.refresh()
        assert bob.decide().secret_missing

        with pytest.raises(SecretNotFoundError):
            bob.reveal_guess()
        assert [c for c in ledger.calls if c[1] == bob.me] == []

    def test_step_surfaces_missing_secret(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        alice.step()
        bob.secrets.clear(bob.game_id, SecretRole.GUESS)

        with pytest.raises(SecretNotFoundError):
            bob.step()
        assert [c for c in ledger.calls if c[1] == bob.me] == []


class TestCommitSafety:
    def test_secret_persisted_before_submission(self, players, ledger, monkeypatch):
        """If the secret cannot be stored, nothing is sent to the ledger."""
        _, bob = players

        def fail(*_args, **_kwargs):
            raise SecretStoreError("could not persist secret")

        monkeypatch.setattr(bob.secrets, "save", fail)
        with pytest.raises(SecretStoreError):
            bob.submit_guess(*NEW_YORK)
        assert not ledger.get_game(bob.game_id).guess_of(BOB).has_submitted

    def test_duplicate_guess_refused(self, players):
        alice, _ = players
        alice.submit_guess(*PARIS)
        with pytest.raises(DuplicateCommitmentError):
            alice.submit_guess(*NEW_YORK)

    def test_rejected_submission_clears_secret(self, players, ledger, monkeypatch):
        _, bob = players

        def reject(game_id, commitment):
            raise LedgerRejectedError("GAME_NOT_ACTIVE", game_id=game_id, action="submit_guess")

        monkeypatch.setattr(bob.ledger, "submit_guess", reject)
        with pytest.raises(LedgerRejectedError):
            bob.submit_guess(*NEW_YORK)
        assert not bob.secrets.exists(bob.game_id, SecretRole.GUESS)

    def test_network_error_keeps_secret_and_resends(self, players, ledger):
        _, bob = players
        bob.refresh()
        ledger.unavailable = True

        with pytest.raises(TransientError):
            bob.submit_guess(*NEW_YORK)
        pending = bob.secrets.load(bob.game_id, SecretRole.GUESS)
        assert pending is not None

        ledger.unavailable = False
        with pytest.raises(DuplicateCommitmentError, match="different guess"):
            bob.submit_guess(*PARIS)
        bob.submit_guess(*NEW_YORK)
        assert ledger.get_game(bob.game_id).guess_of(BOB).commitment == pending.commitment

    @pytest.mark.parametrize("lost", [TransientError, OutcomeUnknownError])
    def test_error_after_broadcast_keeps_secret(self, players, ledger, monkeypatch, lost):
        """The guess landed but the client saw an error; the reveal must still be possible."""
        alice, bob = players
        send = bob.ledger.submit_guess

        def land_then_fail(game_id, commitment):
            send(game_id, commitment)
            raise lost("connection reset", game_id=game_id, action="submit_guess")

        monkeypatch.setattr(bob.ledger, "submit_guess", land_then_fail)
        alice.submit_guess(*PARIS)
        with pytest.raises(lost):
            bob.submit_guess(*NEW_YORK)
        assert bob.secrets.exists(bob.game_id, SecretRole.GUESS)

        assert alice.step().action == Action.REVEAL_LOCATION
        assert bob.step().action == Action.REVEAL_GUESS
        alice.step()
        assert ledger.get_game(bob.game_id).state == GameState.FINISHED
        assert ledger.get_game(bob.game_id).winner == ALICE

    def test_out_of_range_guess(self, players):
        alice, _ = players
        with pytest.raises(ValueError):
            alice.submit_guess(91.0, 0.0)


class TestConfirmationTimeout:
    def test_timeout_keeps_secret_and_blocks_resubmit(self, players, ledger):
        _, bob = players
        ledger.timeout_on = {"submit_guess"}

        with pytest.raises(ConfirmationTimeoutError):
            bob.submit_guess(*NEW_YORK)
        assert bob.secrets.exists(bob.game_id, SecretRole.GUESS)

        # re-poll instead of re-submitting: the guess did land
        with pytest.raises(DuplicateCommitmentError):
            bob.submit_guess(*NEW_YORK)
        assert bob.refresh_from_ledger().guess_of(BOB).has_submitted

    def test_reveal_location_not_retried_after_timeout(self, players, ledger):
        alice, bob = players
        _both_guess(alice, bob)
        ledger.timeout_on = {"reveal_location"}

        with pytest.raises(ConfirmationTimeoutError):
            alice.step()
        alice.step()

        assert [c[0] for c in ledger.calls].count("reveal_location") == 1


class TestCreateRecovery:
    def test_create_timeout_keeps_location_for_reveal(self, ledger, backend, clock, store_factory):
        store_a = store_factory("alice")
        ledger.timeout_on = {"create_game"}

        with pytest.raises(ConfirmationTimeoutError):
            GameSession.create_game(ALICE, ledger.as_player(ALICE), store_a, backend, clock=clock)
        [kept] = store_a.list_pending()
        assert kept.role == SecretRole.LOCATION
        assert kept.game_id == 0
        assert kept.commitment == ledger.get_game(1).location_commitment
        assert backend.saved == {}

        # the game did land: play it with a session that has no backend copy
        ledger.timeout_on = set()
        alice = GameSession(1, ALICE, ledger.as_player(ALICE), store_a, clock=clock)
        bob = GameSession(1, BOB, ledger.as_player(BOB), store_factory("bob"), clock=clock)
        bob.join()
        _both_guess(alice, bob)

        assert alice.step().action == Action.REVEAL_LOCATION
        game = ledger.get_game(1)
        assert game.location_revealed
        assert game.actual_location.lat == pytest.approx(LONDON[0], abs=1e-6)
        assert [s.role for s in store_a.list_pending()] == [SecretRole.GUESS]

    def test_rejected_create_discards_location(self, ledger, backend, clock, store_factory, monkeypatch):
        store_a = store_factory("alice")
        view = ledger.as_player(ALICE)

        def reject(commitment):
            raise LedgerRejectedError("transaction reverted", action="create_game")

        monkeypatch.setattr(view, "create_game", reject)
        with pytest.raises(LedgerRejectedError):
            GameSession.create_game(ALICE, view, store_a, backend, clock=clock)
        assert store_a.list_pending() == []

    def test_location_persisted_before_create(self, ledger, backend, clock, store_factory, monkeypatch):
        store_a = store_factory("alice")

        def fail(_secret):
            raise SecretStoreError("could not persist secret")

        monkeypatch.setattr(store_a, "save_unassigned", fail)
        with pytest.raises(SecretStoreError):
            GameSession.create_game(ALICE, ledger.as_player(ALICE), store_a, backend, clock=clock)
        assert ledger.games == {}


class TestBackendViews:
    def test_panorama(self, players):
        alice, bob = players
        assert alice.panorama() == Coordinate(lat=LONDON[0], lng=LONDON[1])
        with pytest.raises(RuntimeError, match="location backend"):
            bob.panorama()

    def test_target_from_backend_then_ledger(self, players, backend):
        alice, bob = players
        _both_guess(alice, bob)
        assert alice.target() is None

        backend.revealed.add(alice.game_id)
        assert alice.target().lat == LONDON[0]

        alice.step()
        alice.refresh()
        bob.refresh()
        # ledger copy is the decoded fixed-point value
        assert alice.target() == alice.game.actual_location
        assert bob.target().lng == pytest.approx(LONDON[1], abs=1e-6)


class TestReads:
    def test_indexer_failure_falls_back_to_ledger(self, players, ledger):
        alice, _ = players
        index = ScriptedIndex(ledger)
        index.fail_next = 1
        alice.index = index

        assert alice.fetch().game_id == alice.game_id
        assert alice.metrics.counters["indexer_errors_total"] == 1

    def test_unindexed_game_read_from_ledger(self, players):
        alice, _ = players
        alice.index = ScriptedIndex(None)
        assert alice.fetch().state == GameState.ACTIVE

    def test_seconds_left(self, players, clock):
        alice, _ = players
        assert alice.seconds_left() == 180
        clock.sleep(200)
        assert alice.seconds_left() == 0


class TestLobby:
    def test_joinable_and_mine(self, ledger, backend, clock, store_factory):
        first = GameSession.create_game(ALICE, ledger.as_player(ALICE), store_factory("a"), backend, clock=clock)
        GameSession.create_game(BOB, ledger.as_player(BOB), store_factory("b"), backend, clock=clock)
        GameSession(first.game_id, CAROL, ledger.as_player(CAROL), store_factory("c"), clock=clock).join()

        lobby = Lobby(CAROL, ScriptedIndex(ledger), clock=clock)
        games = lobby.refresh()

        assert [g.game_id for g in games] == [2, 1]
        assert [g.game_id for g in lobby.joinable()] == [2]
        assert [g.game_id for g in lobby.mine()] == [1]

    def test_watch_polls_every_interval(self, ledger, clock):
        lobby = Lobby(CAROL, ScriptedIndex(ledger), clock=clock)
        lobby.watch(max_ticks=3)
        assert clock.sleeps == [10.0, 10.0]
