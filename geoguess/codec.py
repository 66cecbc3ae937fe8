"""
Canonical fixed-point coordinate encoding.

    lat_fixed = floor((lat + 90)  * 10**6)
    lng_fixed = floor((lng + 180) * 10**6)

The ledger recomputes commitments from these integers, so the scale factor
and the truncation direction are part of the wire format. Round trip is
lossy by at most 1e-6 degree per axis.
"""

from __future__ import annotations

import math
from typing import Final, Tuple

SCALE: Final[int] = 1_000_000
LAT_OFFSET: Final[int] = 90
LNG_OFFSET: Final[int] = 180

U128_MASK: Final[int] = (1 << 128) - 1
U256_MAX: Final[int] = (1 << 256) - 1


def validate(lat: float, lng: float) -> None:
    """Raise ValueError unless (lat, lng) is a finite in-range coordinate."""
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise ValueError("coordinates must be finite")
    if not -LAT_OFFSET <= lat <= LAT_OFFSET:
        raise ValueError(f"latitude out of range: {lat}")
    if not -LNG_OFFSET <= lng <= LNG_OFFSET:
        raise ValueError(f"longitude out of range: {lng}")


def encode(lat: float, lng: float) -> Tuple[int, int]:
    """
    Encode a coordinate pair into non-negative fixed-point integers.

    Args:
        lat: Latitude in [-90, 90]
        lng: Longitude in [-180, 180]

    Returns:
        (lat_fixed, lng_fixed)

    Raises:
        ValueError: If either axis is out of range or not finite
    """
    validate(lat, lng)
    return (
        math.floor((lat + LAT_OFFSET) * SCALE),
        math.floor((lng + LNG_OFFSET) * SCALE),
    )


def decode(lat_fixed: int, lng_fixed: int) -> Tuple[float, float]:
    """Inverse of encode (up to the truncation step)."""
    for v in (lat_fixed, lng_fixed):
        if isinstance(v, bool) or not isinstance(v, int) or v < 0:
            raise ValueError(f"fixed-point value must be a non-negative int: {v!r}")
    return lat_fixed / SCALE - LAT_OFFSET, lng_fixed / SCALE - LNG_OFFSET


def split_u256(value: int) -> Tuple[int, int]:
    """Split a 256-bit unsigned integer into (low, high) 128-bit halves."""
    if not 0 <= value <= U256_MAX:
        raise ValueError("value does not fit in u256")
    return value & U128_MASK, value >> 128


def join_u256(low: int, high: int) -> int:
    """Rebuild a u256 from its 128-bit halves."""
    if not (0 <= low <= U128_MASK and 0 <= high <= U128_MASK):
        raise ValueError("u256 halves must fit in 128 bits")
    return (high << 128) | low


def encode_split(lat: float, lng: float) -> Tuple[int, int, int, int]:
    """Encode and split into (lat_low, lat_high, lng_low, lng_high)."""
    lat_fixed, lng_fixed = encode(lat, lng)
    return (*split_u256(lat_fixed), *split_u256(lng_fixed))
