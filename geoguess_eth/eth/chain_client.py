"""
Game world ledger client over JSON-RPC.

Provides:
- The five state-changing entrypoints, signed locally
- Bounded confirmation wait
- get_game / list_games point and list reads
- RPC health and the world contract check
- Non-behavioral metrics
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Type

import requests
from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.contract import Contract
from web3.exceptions import ContractLogicError, TransactionNotFound
from web3.logs import DISCARD

from geoguess.errors import (
    CommitmentMismatchError,
    ConfirmationTimeoutError,
    ConflictingStateError,
    DuplicateCommitmentError,
    GuessrError,
    LedgerRejectedError,
    OutcomeUnknownError,
    TransientError,
)
from geoguess.metrics import Metrics
from geoguess.models import Game
from geoguess.polling import Clock, SystemClock
from geoguess.remote import ORDER_DESC, TxHandle, TxReceipt
from geoguess_eth.eth.adapters import game_from_ledger, guess_from_ledger, parse_int
from geoguess_eth.eth.world_check import WorldCheck, abi_signatures
from geoguess_eth.eth.settings import Settings

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: list, outputs: Optional[list] = None, view: bool = False) -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view" if view else "nonpayable",
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
    }


# Minimal world ABI (only what the client uses)
WORLD_ABI = [
    _fn("create_game", [("location_commitment", "uint256")]),
    _fn("join_game", [("game_id", "uint256")]),
    _fn("submit_guess", [("game_id", "uint256"), ("guess_commitment", "uint256")]),
    _fn("reveal_location", [("game_id", "uint256"), ("lat", "uint256"), ("lng", "uint256"), ("salt", "uint256")]),
    _fn("reveal_guess", [("game_id", "uint256"), ("lat", "uint256"), ("lng", "uint256"), ("salt", "uint256")]),
    _fn(
        "get_game",
        [("game_id", "uint256")],
        [
            ("game_id", "uint256"),
            ("player1", "address"),
            ("player2", "address"),
            ("prize_pool", "uint256"),
            ("game_state", "uint8"),
            ("end_time", "uint64"),
            ("location_commitment", "uint256"),
            ("actual_lat", "uint256"),
            ("actual_lng", "uint256"),
            ("location_revealed", "bool"),
            ("winner", "address"),
        ],
        view=True,
    ),
    _fn(
        "get_guess",
        [("game_id", "uint256"), ("player", "address")],
        [
            ("commitment", "uint256"),
            ("lat", "uint256"),
            ("lng", "uint256"),
            ("has_submitted", "bool"),
            ("has_revealed", "bool"),
            ("score", "uint256"),
        ],
        view=True,
    ),
    _fn("game_count", [], [("", "uint256")], view=True),
    {
        "type": "event",
        "name": "GameCreated",
        "anonymous": False,
        "inputs": [
            {"name": "game_id", "type": "uint256", "indexed": True},
            {"name": "creator", "type": "address", "indexed": True},
            {"name": "location_commitment", "type": "uint256", "indexed": False},
        ],
    },
]

# Revert reason -> error class. Matched as substrings of the revert message.
REVERT_ERRORS: List[tuple[str, Type[GuessrError]]] = [
    ("INVALID_REVEAL", CommitmentMismatchError),
    ("COMMITMENT_MISMATCH", CommitmentMismatchError),
    ("LOCATION_ALREADY_REVEALED", ConflictingStateError),
    ("ALREADY_REVEALED", ConflictingStateError),
    ("ALREADY_JOINED", ConflictingStateError),
    ("ALREADY_SUBMITTED", DuplicateCommitmentError),
]

WORLD_ENTRYPOINTS = abi_signatures(WORLD_ABI)

_NETWORK_ERRORS = (requests.exceptions.RequestException, ConnectionError, TimeoutError)


def classify_revert(message: str) -> Type[GuessrError]:
    upper = (message or "").upper()
    for reason, cls in REVERT_ERRORS:
        if reason in upper:
            return cls
    return LedgerRejectedError


@dataclass
class LedgerClient:
    """
    Game world client. Implements geoguess.remote.RemoteLedgerClient.

    Game ids are 1-based; game_count() is the id of the newest game.
    """

    w3: Web3
    world: Contract
    account: Optional[LocalAccount] = None
    metrics: Metrics = field(default_factory=Metrics)
    clock: Clock = field(default_factory=SystemClock)
    confirm_retries: int = 60
    confirm_interval: float = 5.0

    @staticmethod
    def from_env(
        rpc_url: str,
        world_addr: str,
        *,
        private_key: Optional[str] = None,
        metrics: Optional[Metrics] = None,
        clock: Optional[Clock] = None,
        confirm_retries: int = 60,
        confirm_interval: float = 5.0,
    ) -> LedgerClient:
        """
        Args:
            rpc_url: JSON-RPC endpoint URL
            world_addr: Game world contract address
            private_key: Signing key; reads work without it
        """
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": 8}))
        world = w3.eth.contract(address=Web3.to_checksum_address(world_addr), abi=WORLD_ABI)
        return LedgerClient(
            w3=w3,
            world=world,
            account=Account.from_key(private_key) if private_key else None,
            metrics=metrics or Metrics(),
            clock=clock or SystemClock(),
            confirm_retries=confirm_retries,
            confirm_interval=confirm_interval,
        )

    @staticmethod
    def from_settings(settings: Settings, *, clock: Optional[Clock] = None) -> LedgerClient:
        """Build and run startup checks (STRICT_CHAIN, world contract check)."""
        client = LedgerClient.from_env(
            settings.RPC_URL,
            settings.WORLD_ADDRESS,
            private_key=settings.PRIVATE_KEY,
            clock=clock,
            confirm_retries=settings.CONFIRM_RETRIES,
            confirm_interval=settings.CONFIRM_INTERVAL,
        )
        if settings.STRICT_CHAIN and not client.ping():
            raise RuntimeError("Chain unreachable at startup (STRICT_CHAIN=true)")
        if settings.WORLD_CHECK_ENABLED:
            client.check_world(settings.WORLD_CODEHASH)
        return client

    @property
    def player(self) -> Optional[str]:
        return self.account.address if self.account else None

    def check_world(self, world_codehash: str = "") -> None:
        """
        Raises:
            RuntimeError: If WORLD_ADDRESS does not host the game world
        """
        WorldCheck(self.w3, self.world.address, WORLD_ENTRYPOINTS, world_codehash).verify_or_raise()

    def ping(self) -> bool:
        t0 = time.time()
        try:
            _ = self.w3.eth.block_number
            self.metrics.observe("rpc_latency_ms", (time.time() - t0) * 1000.0)
            return True
        except Exception:
            self.metrics.inc("rpc_errors_total")
            return False

    # ----------------------------------------------------------------- writes

    def create_game(self, location_commitment: int) -> TxHandle:
        return self._send("create_game", None, location_commitment)

    def join_game(self, game_id: int) -> TxHandle:
        return self._send("join_game", game_id, game_id)

    def submit_guess(self, game_id: int, guess_commitment: int) -> TxHandle:
        return self._send("submit_guess", game_id, game_id, guess_commitment)

    def reveal_location(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        return self._send("reveal_location", game_id, game_id, lat_fixed, lng_fixed, salt)

    def reveal_guess(self, game_id: int, lat_fixed: int, lng_fixed: int, salt: int) -> TxHandle:
        return self._send("reveal_guess", game_id, game_id, lat_fixed, lng_fixed, salt)

    def _send(self, action: str, game_id: Optional[int], *args: Any) -> TxHandle:
        if self.account is None:
            raise RuntimeError(f"{action} requires a signing key (GUESSR_PRIVATE_KEY)")
        fn = getattr(self.world.functions, action)(*args)
        try:
            # gas estimation replays the call, so reverts surface here with their reason
            tx = fn.build_transaction(
                {
                    "from": self.account.address,
                    "nonce": self.w3.eth.get_transaction_count(self.account.address, "pending"),
                    "chainId": self.w3.eth.chain_id,
                }
            )
        except ContractLogicError as e:
            self.metrics.inc("tx_rejected_total")
            cls = classify_revert(str(e.message or e))
            logger.error(f"{action} rejected by ledger: {e.message or e}")
            raise cls(
                f"ledger rejected {action}", game_id=game_id, action=action, cause=e
            ) from e
        except _NETWORK_ERRORS as e:
            self.metrics.inc("rpc_errors_total")
            raise TransientError(
                "ledger RPC unavailable", game_id=game_id, action=action, cause=e
            ) from e

        signed = self.account.sign_transaction(tx)
        local_hash = Web3.to_hex(signed.hash)
        try:
            tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except _NETWORK_ERRORS as e:
            # the node may have accepted the transaction before the connection dropped
            self.metrics.inc("rpc_errors_total")
            logger.warning(f"{action} broadcast interrupted, outcome unknown: {local_hash}")
            raise OutcomeUnknownError(
                f"broadcast of {local_hash} interrupted; re-read the game before retrying",
                game_id=game_id,
                action=action,
                cause=e,
            ) from e

        handle = TxHandle(action=action, tx_hash=Web3.to_hex(tx_hash), game_id=game_id)
        self.metrics.inc("tx_submitted_total")
        return handle

    def wait_for_confirmation(self, handle: TxHandle) -> TxReceipt:
        """
        Poll for the receipt up to confirm_retries times, confirm_interval apart.

        Raises:
            ConfirmationTimeoutError: Outcome unknown after the bound
        """
        for attempt in range(self.confirm_retries):
            try:
                receipt = self.w3.eth.get_transaction_receipt(handle.tx_hash)
            except TransactionNotFound:
                receipt = None
            except _NETWORK_ERRORS as e:
                self.metrics.inc("rpc_errors_total")
                logger.warning(f"{handle.action}: receipt poll failed ({e}), retrying")
                receipt = None

            if receipt is not None:
                self.metrics.inc("tx_confirmed_total")
                return TxReceipt(
                    tx_hash=handle.tx_hash,
                    status=int(receipt["status"]),
                    game_id=self._created_game_id(receipt) if handle.action == "create_game" else handle.game_id,
                    block_number=receipt.get("blockNumber"),
                )
            if attempt + 1 < self.confirm_retries:
                self.clock.sleep(self.confirm_interval)

        self.metrics.inc("tx_timeouts_total")
        logger.error(
            f"{handle.action} {handle.tx_hash} unconfirmed after "
            f"{self.confirm_retries} x {self.confirm_interval}s"
        )
        raise ConfirmationTimeoutError(
            f"transaction {handle.tx_hash} not confirmed; outcome unknown, re-poll the game before retrying",
            game_id=handle.game_id,
            action=handle.action,
        )

    def _created_game_id(self, receipt: Any) -> Optional[int]:
        events = self.world.events.GameCreated().process_receipt(receipt, errors=DISCARD)
        if not events:
            return None
        return int(events[0]["args"]["game_id"])

    # ------------------------------------------------------------------ reads

    def _read(self, name: str, call: Callable[[], Any], game_id: Optional[int] = None) -> Any:
        t0 = time.time()
        try:
            out = call()
        except ContractLogicError as e:
            raise LedgerRejectedError(
                f"{name} reverted", game_id=game_id, action=name, cause=e
            ) from e
        except _NETWORK_ERRORS as e:
            self.metrics.inc("rpc_errors_total")
            raise TransientError("ledger RPC unavailable", game_id=game_id, action=name, cause=e) from e
        self.metrics.observe(f"{name}_ms", (time.time() - t0) * 1000.0)
        return out

    def game_count(self) -> int:
        return int(self._read("game_count", lambda: self.world.functions.game_count().call()))

    def get_game(self, game_id: int) -> Game:
        raw = self._read("get_game", lambda: self.world.functions.get_game(game_id).call(), game_id)
        if parse_int(raw[1]) == 0:
            raise LedgerRejectedError("game not found", game_id=game_id, action="get_game")
        guesses = []
        for player in (raw[1], raw[2]):
            if parse_int(player) == 0:
                continue
            g = self._read(
                "get_guess", lambda p=player: self.world.functions.get_guess(game_id, p).call(), game_id
            )
            guesses.append(guess_from_ledger(player, g))
        return game_from_ledger(raw, guesses)

    def list_games(self, limit: int = 20, order: str = ORDER_DESC) -> List[Game]:
        count = self.game_count()
        if order == ORDER_DESC:
            ids = range(count, max(0, count - limit), -1)
        else:
            ids = range(1, min(count, limit) + 1)
        return [self.get_game(i) for i in ids]
