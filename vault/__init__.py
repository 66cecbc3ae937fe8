"""Durable local storage for commitment pre-images."""

from vault.store import SecretStore, record_key, unassigned_key

__all__ = ["SecretStore", "record_key", "unassigned_key"]
