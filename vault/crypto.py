from __future__ import annotations

import binascii
import os

from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305

NONCE_LEN = 12  # 96-bit nonce


def new_key() -> bytes:
    return os.urandom(32)

def key_to_hex(k: bytes) -> str:
    return binascii.hexlify(k).decode()

def key_from_hex(s: str) -> bytes:
    return binascii.unhexlify(s.strip())

def load_or_create_key(path: str) -> bytes:
    """
    Per-store sealing key, created on first use with owner-only permissions.

    Losing this file makes every sealed secret in the store unreadable.
    """
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            return key_from_hex(f.read())
    k = new_key()
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(key_to_hex(k))
    return k

def seal_bytes(key: bytes, plaintext: bytes, aad: bytes) -> bytes:
    """
    Encrypt with ChaCha20-Poly1305 AEAD.

    AAD binds the ciphertext to its record key so a sealed secret cannot be
    moved to another (game, role) slot.
    """
    aead = ChaCha20Poly1305(key)
    nonce = os.urandom(NONCE_LEN)
    ct = aead.encrypt(nonce, plaintext, aad)
    return nonce + ct

def open_bytes(key: bytes, blob: bytes, aad: bytes) -> bytes:
    """Decrypt with ChaCha20-Poly1305 AEAD."""
    aead = ChaCha20Poly1305(key)
    nonce, ct = blob[:NONCE_LEN], blob[NONCE_LEN:]
    return aead.decrypt(nonce, ct, aad)
