"""
Error taxonomy for the commit-reveal client.

Transient errors are absorbed by polling and retried on the next tick.
Everything else is fatal for the action that raised it and carries enough
context (game id, action, cause) to render a user-facing message.
"""

from __future__ import annotations

from typing import Optional


class GuessrError(Exception):
    """Base class. Fatal unless a subclass says otherwise."""

    transient = False

    def __init__(
        self,
        message: str,
        *,
        game_id: Optional[int] = None,
        action: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.game_id = game_id
        self.action = action
        self.cause = cause

    def user_message(self) -> str:
        parts = []
        if self.action:
            parts.append(self.action)
        if self.game_id is not None:
            parts.append(f"game #{self.game_id}")
        prefix = " / ".join(parts)
        text = f"{prefix}: {self.message}" if prefix else self.message
        if self.cause is not None:
            text += f" ({self.cause})"
        return text


class TransientError(GuessrError):
    """Poll failure, RPC or network unavailability."""

    transient = True


class BackendUnavailableError(TransientError):
    """Backend retries exhausted. Surfaced to the user."""

    transient = False


class CommitmentMismatchError(GuessrError):
    """Revealed pre-image does not hash to the stored commitment."""


class SecretNotFoundError(GuessrError):
    """No local secret for (game, role); the reveal cannot be rebuilt."""


class SecretStoreError(GuessrError):
    """Secret could not be persisted; committing would forfeit the game."""


class DuplicateCommitmentError(GuessrError):
    """A commitment for this (game, role) is already pending or on the ledger."""


class OutcomeUnknownError(GuessrError):
    """The transaction may or may not have landed. Re-poll, don't re-submit."""


class ConfirmationTimeoutError(OutcomeUnknownError):
    """No receipt within the confirmation bound."""


class ConflictingStateError(GuessrError):
    """Ledger reports the action was already applied."""


class LedgerRejectedError(GuessrError):
    """Ledger rejected the call for any other reason."""


class AccessDeniedError(GuessrError):
    """Backend refused a participant-only resource. Never retried."""
