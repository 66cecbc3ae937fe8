"""
Startup check that WORLD_ADDRESS really hosts the game world.

A mistyped address or a wrong network silently turns every commitment into a
transaction against the wrong contract. Before signing anything the client
can confirm that:
- code is deployed at the address
- every entrypoint it calls appears in the contract's dispatch table
- optionally, the code hash equals a pinned WORLD_CODEHASH
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Sequence

from eth_utils import function_signature_to_4byte_selector
from web3 import Web3

PUSH4 = b"\x63"


def abi_signatures(abi: Sequence[dict], *, mutating_only: bool = True) -> List[str]:
    """Canonical signatures, e.g. "submit_guess(uint256,uint256)"."""
    out = []
    for item in abi:
        if item.get("type") != "function":
            continue
        if mutating_only and item.get("stateMutability") in ("view", "pure"):
            continue
        types = ",".join(i["type"] for i in item.get("inputs", []))
        out.append(f"{item['name']}({types})")
    return out


@dataclass(frozen=True)
class WorldCheck:
    w3: Web3
    world_address: str
    entrypoints: Sequence[str]
    expected_codehash: str = ""

    def fetch_code(self) -> bytes:
        return bytes(self.w3.eth.get_code(Web3.to_checksum_address(self.world_address)))

    def missing_entrypoints(self, code: bytes) -> List[str]:
        # solc dispatchers compare calldata selectors against PUSH4 immediates
        return [
            sig for sig in self.entrypoints
            if PUSH4 + function_signature_to_4byte_selector(sig) not in code
        ]

    def verify_or_raise(self) -> None:
        """
        Raises:
            RuntimeError: No code, a missing entrypoint, or a codehash mismatch
        """
        code = self.fetch_code()
        if not code:
            raise RuntimeError(f"NO_WORLD_CONTRACT at {self.world_address}")

        if self.expected_codehash:
            got = "0x" + bytes(Web3.keccak(code)).hex()
            exp = self.expected_codehash.strip().lower()
            if not exp.startswith("0x"):
                exp = "0x" + exp
            if got != exp:
                raise RuntimeError(f"BYTECODE_MISMATCH {self.world_address} expected={exp} got={got}")

        missing = self.missing_entrypoints(code)
        if missing:
            raise RuntimeError(f"NOT_A_GAME_WORLD {self.world_address} missing: {', '.join(missing)}")
