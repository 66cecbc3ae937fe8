"""
GeoGuess world ledger integration.

Commitments and reveals only. Locations stay local until revealed.
"""

from geoguess_eth.eth.chain_client import LedgerClient
from geoguess_eth.eth.settings import Settings
from geoguess_eth.eth.world_check import WorldCheck

__all__ = [
    "LedgerClient",
    "Settings",
    "WorldCheck",
]
