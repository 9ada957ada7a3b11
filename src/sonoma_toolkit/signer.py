"""Ed25519 signers.

Anything exposing a base58 ``public_key`` and ``sign(message) -> bytes``
(64-byte detached signature) can authorize commands. ``Keypair`` is the
PyNaCl-backed default, also used for freshly allocated agent accounts.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

import base58
from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from .exceptions import InvalidParameters


@runtime_checkable
class Signer(Protocol):
    @property
    def public_key(self) -> str: ...

    def sign(self, message: bytes) -> bytes: ...


class Keypair:
    """Ed25519 keypair."""

    def __init__(self, signing_key: Optional[SigningKey] = None) -> None:
        self._signing_key = signing_key or SigningKey.generate()
        self._public_key = base58.b58encode(bytes(self._signing_key.verify_key)).decode()

    @classmethod
    def generate(cls) -> "Keypair":
        return cls(SigningKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "Keypair":
        if len(seed) != 32:
            raise InvalidParameters("Ed25519 seed must be 32 bytes", field="seed")
        return cls(SigningKey(seed))

    @classmethod
    def from_secret_key(cls, secret_key: bytes | str) -> "Keypair":
        """Load a 64-byte secret key (seed + public key), raw or base58."""
        raw = base58.b58decode(secret_key) if isinstance(secret_key, str) else bytes(secret_key)
        if len(raw) != 64:
            raise InvalidParameters("Secret key must be 64 bytes", field="secret_key")
        keypair = cls.from_seed(raw[:32])
        if bytes(keypair._signing_key.verify_key) != raw[32:]:
            raise InvalidParameters("Secret key does not match its public key", field="secret_key")
        return keypair

    @property
    def public_key(self) -> str:
        return self._public_key

    @property
    def public_key_bytes(self) -> bytes:
        return bytes(self._signing_key.verify_key)

    def sign(self, message: bytes) -> bytes:
        return self._signing_key.sign(message).signature

    def __repr__(self) -> str:
        return f"Keypair(public_key={self._public_key!r})"


def verify_signature(public_key: str, message: bytes, signature: bytes) -> bool:
    """Check a detached signature against a base58 public key."""
    try:
        VerifyKey(base58.b58decode(public_key)).verify(message, signature)
        return True
    except (BadSignatureError, ValueError):
        return False


__all__ = ["Signer", "Keypair", "verify_signature"]
