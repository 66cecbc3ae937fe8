from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from typing import List, Optional

from cryptography.exceptions import InvalidTag
from pydantic import ValidationError

from geoguess.errors import DuplicateCommitmentError, SecretStoreError
from geoguess.models import Secret, SecretRole

from .crypto import load_or_create_key, open_bytes, seal_bytes

logger = logging.getLogger(__name__)

_RECORD_RE = re.compile(r"^game_(\d+)_(location|guess)\.sealed$")
_UNASSIGNED_RE = re.compile(r"^unassigned_([0-9a-f]{64})\.sealed$")


def record_key(game_id: int, role: SecretRole) -> str:
    """Stable composite key of a (game, role) slot."""
    return f"game_{int(game_id)}_{SecretRole(role).value}"


def unassigned_key(commitment: int) -> str:
    """Slot of a location secret committed before its game id is known."""
    return f"unassigned_{int(commitment):064x}"


def _canonical(obj: dict) -> bytes:
    return json.dumps(obj, sort_keys=True, separators=(",", ":")).encode("utf-8")


class SecretStore:
    """
    One sealed file per (game_id, role), surviving process restarts.

    Layout:
        <dirpath>/store.key                     sealing key (hex, 0600)
        <dirpath>/game_<id>_<role>.sealed       nonce || ChaCha20-Poly1305(record)
        <dirpath>/unassigned_<commitment>.sealed
            creator's location while create_game is in flight; moved to
            game_<id>_location once the game id is known

    Each key has a single writer (the local player), so no locking.
    """

    KEY_FILE = "store.key"

    def __init__(self, dirpath: str):
        self.dirpath = dirpath
        os.makedirs(dirpath, exist_ok=True)
        self._key = load_or_create_key(os.path.join(dirpath, self.KEY_FILE))

    def _path(self, key: str) -> str:
        return os.path.join(self.dirpath, f"{key}.sealed")

    def _write(self, key: str, secret: Secret, game_id: int) -> str:
        path = self._path(key)
        blob = seal_bytes(self._key, _canonical(secret.model_dump(mode="json")), key.encode("utf-8"))
        try:
            fd, tmp = tempfile.mkstemp(dir=self.dirpath, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.remove(tmp)
                raise
        except OSError as e:
            logger.error(f"Failed to persist secret {key}: {e}")
            raise SecretStoreError(
                "could not persist secret", game_id=game_id, action="save_secret", cause=e
            ) from e

        logger.info(f"Secret saved: {key}")
        return path

    def _read(self, key: str, game_id: int) -> Optional[Secret]:
        try:
            with open(self._path(key), "rb") as f:
                blob = f.read()
        except FileNotFoundError:
            return None

        try:
            return Secret.model_validate(json.loads(open_bytes(self._key, blob, key.encode("utf-8"))))
        except (InvalidTag, ValueError, ValidationError) as e:
            logger.error(f"Secret record unreadable: {key}")
            raise SecretStoreError(
                "stored secret is corrupted", game_id=game_id, action="load_secret", cause=e
            ) from e

    def _remove(self, key: str) -> bool:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(f"Failed to clear secret {key}: {e}")
            return False
        logger.info(f"Secret cleared: {key}")
        return True

    def exists(self, game_id: int, role: SecretRole) -> bool:
        return os.path.exists(self._path(record_key(game_id, role)))

    def save(self, game_id: int, role: SecretRole, secret: Secret, *, replace: bool = False) -> str:
        """
        Persist a secret before its commitment is submitted.

        Raises:
            DuplicateCommitmentError: A live secret already occupies the slot
            SecretStoreError: The record could not be written durably
        """
        if secret.game_id != game_id or secret.role != SecretRole(role):
            raise ValueError("secret does not belong to this (game, role) slot")
        if not replace and self.exists(game_id, role):
            raise DuplicateCommitmentError(
                "a pending secret already exists; reveal it before committing again",
                game_id=game_id,
                action="save_secret",
            )
        return self._write(record_key(game_id, role), secret, game_id)

    def load(self, game_id: int, role: SecretRole) -> Optional[Secret]:
        """
        Returns:
            The stored Secret, or None if the slot is empty

        Raises:
            SecretStoreError: Record exists but cannot be opened or parsed
        """
        return self._read(record_key(game_id, role), game_id)

    def clear(self, game_id: int, role: SecretRole) -> bool:
        """Delete after a confirmed reveal. Missing record is a no-op; failure is logged, not raised."""
        return self._remove(record_key(game_id, role))

    # ------------------------------------------------------ unassigned slots

    def save_unassigned(self, secret: Secret) -> str:
        """
        Persist the creator's location before create_game is sent.

        The record is keyed by its commitment, which is all the ledger will
        show until the game id is known.
        """
        if secret.role != SecretRole.LOCATION or secret.game_id != 0:
            raise ValueError("only a location secret without a game id can be unassigned")
        return self._write(unassigned_key(secret.commitment), secret, 0)

    def load_unassigned(self, commitment: int) -> Optional[Secret]:
        return self._read(unassigned_key(commitment), 0)

    def discard_unassigned(self, commitment: int) -> bool:
        """Drop a location whose create_game the ledger definitively rejected."""
        return self._remove(unassigned_key(commitment))

    def assign(self, commitment: int, game_id: int) -> Optional[Secret]:
        """
        Move an unassigned location into game_<id>_location.

        Returns:
            The assigned Secret, or None if no unassigned record has this commitment

        Raises:
            DuplicateCommitmentError: The game slot holds a different location
        """
        secret = self.load_unassigned(commitment)
        if secret is None:
            return None
        current = self.load(game_id, SecretRole.LOCATION)
        if current is not None and current.commitment != secret.commitment:
            raise DuplicateCommitmentError(
                "game already holds a different location secret", game_id=game_id, action="assign_secret"
            )
        assigned = secret.model_copy(update={"game_id": int(game_id)})
        if current is None:
            self.save(game_id, SecretRole.LOCATION, assigned)
        self._remove(unassigned_key(commitment))
        return assigned

    def list_pending(self) -> List[Secret]:
        """All live secrets, i.e. commitments not yet revealed. Unassigned ones have game_id 0."""
        out = []
        for name in sorted(os.listdir(self.dirpath)):
            m = _RECORD_RE.match(name)
            if m:
                secret = self.load(int(m.group(1)), SecretRole(m.group(2)))
            else:
                u = _UNASSIGNED_RE.match(name)
                if not u:
                    continue
                secret = self.load_unassigned(int(u.group(1), 16))
            if secret is not None:
                out.append(secret)
        return out
