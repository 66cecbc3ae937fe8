"""
GeoGuess Ledger - commit-reveal geolocation guessing client.

Protocol core: coordinate codec, Poseidon commitments, scoring and the
client-side state machine that follows an append-only game ledger.
"""

__version__ = "0.3.0"
__protocol__ = "geoguess-ledger/commit-reveal.v1"
