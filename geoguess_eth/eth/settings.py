"""
Client configuration with fail-closed defaults.

Environment variables control behavior:
- STRICT_CHAIN: Fail at startup if RPC unreachable (default: true)
- WORLD_CHECK_ENABLED: Confirm WORLD_ADDRESS hosts the game world (default: false)
- CONFIRM_RETRIES / CONFIRM_INTERVAL: Confirmation wait bound (default: 60 x 5s)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _req(name: str) -> str:
    """Get required environment variable or raise."""
    v = os.getenv(name)
    if not v:
        raise RuntimeError(f"Missing required env var: {name}")
    return v


def _opt(name: str, default: str) -> str:
    """Get optional environment variable with default."""
    return os.getenv(name, default)


def _opt_bool(name: str, default: bool) -> bool:
    """Parse boolean environment variable."""
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")


def _opt_int(name: str, default: int) -> int:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return int(v)
    except ValueError:
        raise RuntimeError(f"Env var {name} must be an integer, got {v!r}") from None


def _opt_float(name: str, default: float) -> float:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    try:
        return float(v)
    except ValueError:
        raise RuntimeError(f"Env var {name} must be a number, got {v!r}") from None


@dataclass(frozen=True)
class Settings:
    """Client configuration for the game world, indexer and backend."""

    RPC_URL: str
    WORLD_ADDRESS: str

    INDEXER_URL: str = "http://localhost:8080"
    INDEXER_MODEL_PREFIX: str = "geoguess"
    BACKEND_URL: str = "http://localhost:3001"
    PRIVATE_KEY: Optional[str] = None
    STATE_DIR: str = "./state"

    # Polling (seconds)
    GAME_POLL_INTERVAL: float = 5.0
    LOBBY_POLL_INTERVAL: float = 10.0

    # Confirmation wait: CONFIRM_RETRIES x CONFIRM_INTERVAL
    CONFIRM_RETRIES: int = 60
    CONFIRM_INTERVAL: float = 5.0

    # Backend retry with exponential backoff
    BACKEND_MAX_RETRIES: int = 5
    BACKEND_RETRY_DELAY: float = 1.0

    # Fail-closed behaviors
    STRICT_CHAIN: bool = True
    WORLD_CHECK_ENABLED: bool = False
    WORLD_CODEHASH: str = ""

    @property
    def secrets_dir(self) -> str:
        return os.path.join(self.STATE_DIR, "secrets")

    @staticmethod
    def load() -> Settings:
        """Load settings from environment variables."""
        return Settings(
            RPC_URL=_req("GUESSR_RPC_URL"),
            WORLD_ADDRESS=_req("GUESSR_WORLD_ADDRESS"),
            INDEXER_URL=_opt("GUESSR_INDEXER_URL", "http://localhost:8080"),
            INDEXER_MODEL_PREFIX=_opt("GUESSR_INDEXER_MODEL_PREFIX", "geoguess"),
            BACKEND_URL=_opt("GUESSR_BACKEND_URL", "http://localhost:3001"),
            PRIVATE_KEY=os.getenv("GUESSR_PRIVATE_KEY") or None,
            STATE_DIR=_opt("GUESSR_STATE_DIR", "./state"),
            GAME_POLL_INTERVAL=_opt_float("GAME_POLL_INTERVAL", 5.0),
            LOBBY_POLL_INTERVAL=_opt_float("LOBBY_POLL_INTERVAL", 10.0),
            CONFIRM_RETRIES=_opt_int("CONFIRM_RETRIES", 60),
            CONFIRM_INTERVAL=_opt_float("CONFIRM_INTERVAL", 5.0),
            BACKEND_MAX_RETRIES=_opt_int("BACKEND_MAX_RETRIES", 5),
            BACKEND_RETRY_DELAY=_opt_float("BACKEND_RETRY_DELAY", 1.0),
            STRICT_CHAIN=_opt_bool("STRICT_CHAIN", True),
            WORLD_CHECK_ENABLED=_opt_bool("WORLD_CHECK_ENABLED", False),
            WORLD_CODEHASH=_opt("WORLD_CODEHASH", ""),
        )
