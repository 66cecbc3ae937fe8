"""
Poseidon commitments over encoded coordinates.

    commitment = Poseidon([lat.low, lat.high, lng.low, lng.high, salt])

Element order is version-locked: the world contract recomputes exactly this
sequence on reveal. Hash is the Starknet-field Poseidon permutation, not a
byte hash.
"""

from __future__ import annotations

import secrets
from typing import Final, Tuple, Union

from poseidon_py.poseidon_hash import poseidon_hash_many

from geoguess import codec

# Starknet field prime: 2**251 + 17 * 2**192 + 1
FIELD_PRIME: Final[int] = 0x800000000000011000000000000000000000000000000000000000000000001

COMMITMENT_LAYOUT: Final[Tuple[str, ...]] = (
    "lat_low",
    "lat_high",
    "lng_low",
    "lng_high",
    "salt",
)


def generate_salt() -> int:
    """Draw 256 random bits and reduce them into the field."""
    return int.from_bytes(secrets.token_bytes(32), "big") % FIELD_PRIME


def parse_salt(value: Union[int, str]) -> int:
    """
    Parse a salt supplied as int, decimal string or 0x-hex string.

    Raises:
        ValueError: If the value is not a field element
    """
    if isinstance(value, bool):
        raise ValueError("salt must be an integer")
    if isinstance(value, str):
        s = value.strip()
        salt = int(s, 16) if s.lower().startswith("0x") else int(s, 10)
    else:
        salt = int(value)
    if not 0 <= salt < FIELD_PRIME:
        raise ValueError("salt outside the field")
    return salt


def commitment_elements(lat_fixed: int, lng_fixed: int, salt: int) -> list[int]:
    """Hash input in wire order."""
    lat_low, lat_high = codec.split_u256(lat_fixed)
    lng_low, lng_high = codec.split_u256(lng_fixed)
    return [lat_low, lat_high, lng_low, lng_high, parse_salt(salt)]


def commit_fixed(lat_fixed: int, lng_fixed: int, salt: int) -> int:
    """Commitment over already-encoded coordinates, as the ledger recomputes it."""
    return poseidon_hash_many(commitment_elements(lat_fixed, lng_fixed, salt))


def commit(lat: float, lng: float, salt: int) -> int:
    """
    Compute the commitment a player submits before revealing.

    Args:
        lat: Latitude in degrees
        lng: Longitude in degrees
        salt: Field element, see generate_salt

    Returns:
        Commitment as a field element
    """
    return commit_fixed(*codec.encode(lat, lng), salt)


def verify(commitment: int, lat: float, lng: float, salt: int) -> bool:
    """Recompute and compare. The ledger performs the authoritative check."""
    try:
        return commit(lat, lng, salt) == int(commitment)
    except ValueError:
        return False


def verify_fixed(commitment: int, lat_fixed: int, lng_fixed: int, salt: int) -> bool:
    try:
        return commit_fixed(lat_fixed, lng_fixed, salt) == int(commitment)
    except ValueError:
        return False


def to_hex(commitment: int) -> str:
    """0x-prefixed hex form used by the indexer and backend."""
    return hex(int(commitment))


def from_hex(value: Union[int, str]) -> int:
    """Parse a commitment from int or hex/decimal string."""
    if isinstance(value, int):
        return value
    s = value.strip()
    return int(s, 16) if s.lower().startswith("0x") else int(s, 10)
