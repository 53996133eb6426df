"""Encryption and blind-index capability consumed by the engine.

The engine never decrypts identifier values. Matching compares blind-index
tokens only, and tokens are scoped per identifier type through the context
string (``identifier_email``, ``identifier_phone``...).
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Protocol, runtime_checkable

from .config import DedupSettings, get_settings


@runtime_checkable
class Vault(Protocol):
    def encrypt(self, plaintext: str) -> bytes:
        ...

    def blind_index(self, plaintext: str, context: str) -> str:
        ...


def identifier_context(identifier_type: str) -> str:
    return f"identifier_{identifier_type}"


class HmacBlindIndex:
    """Deterministic HMAC-SHA256 tokens with a key derived per context.

    Only the blind-index half of the vault; encryption stays with the
    key-management service.
    """

    def __init__(self, secret: str | bytes) -> None:
        if not secret:
            raise ValueError("blind index secret must not be empty")
        key = secret.encode("utf-8") if isinstance(secret, str) else secret
        if len(key) != 32:
            key = hashlib.sha256(key).digest()
        self._key = key

    @classmethod
    def from_settings(cls, settings: DedupSettings | None = None) -> "HmacBlindIndex":
        settings = settings or get_settings()
        if not settings.blind_index_secret:
            raise ValueError("VAULT_BLIND_INDEX_SECRET is not set")
        return cls(settings.blind_index_secret)

    def _derive_key(self, context: str) -> bytes:
        return hmac.new(self._key, f"blind_index:{context}".encode("utf-8"), hashlib.sha256).digest()

    def blind_index(self, plaintext: str | None, context: str) -> str | None:
        if plaintext is None:
            return None
        if plaintext == "":
            return ""
        key = self._derive_key(context)
        return hmac.new(key, plaintext.encode("utf-8"), hashlib.sha256).hexdigest()


__all__ = ["HmacBlindIndex", "Vault", "identifier_context"]
