"""
GeoGuess chain bridge

Concrete adapters for the commit-reveal client: game world ledger over
JSON-RPC, GraphQL indexer and the location backend.
"""

from geoguess_eth.backend import BackendClient
from geoguess_eth.indexer import IndexClient

__all__ = [
    "BackendClient",
    "IndexClient",
]
