import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if SRC.exists() and str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import pytest

from conezia.config import DedupSettings, get_settings
from conezia.models import IdentifierKind
from conezia.repository.memory import MemoryEntityStore
from conezia.vault import HmacBlindIndex, identifier_context

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeVault:
    """Reversible stand-in for the key-management service."""

    def __init__(self, secret: str = "test-blind-index-secret"):
        self._index = HmacBlindIndex(secret)

    def encrypt(self, plaintext: str) -> bytes:
        return b"enc:" + plaintext.encode("utf-8")

    def decrypt(self, ciphertext: bytes) -> str:
        return ciphertext.removeprefix(b"enc:").decode("utf-8")

    def blind_index(self, plaintext: str, context: str) -> str:
        return self._index.blind_index(plaintext, context)

    def token(self, identifier_type: str, value: str) -> str:
        return self.blind_index(value, identifier_context(identifier_type))


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def vault():
    return FakeVault()


@pytest.fixture
def store():
    return MemoryEntityStore()


@pytest.fixture
def owner(store):
    return store.add_user("owner@example.com")


@pytest.fixture
def settings():
    return DedupSettings(
        database_url="postgresql://unused",
        name_similarity_threshold=90,
        merge_workers=1,
        storage_failure_limit=2,
        statement_timeout_ms=0,
    )


@pytest.fixture
def seed_person(store, vault):
    """Create a person with optional blind-indexed email/phone identifiers.

    ``age`` orders creation time: larger values are older.
    """
    counter = {"n": 0}

    def _seed(owner_id, name, *, email=None, phone=None, age=None, **fields):
        counter["n"] += 1
        offset = age if age is not None else -counter["n"]
        fields.setdefault("created_at", BASE_TIME - timedelta(days=offset))
        entity = store.add_entity(owner_id, name, **fields)
        for kind, value in ((IdentifierKind.EMAIL, email), (IdentifierKind.PHONE, phone)):
            if value is None:
                continue
            store.add_identifier(
                entity.id,
                kind.value,
                vault.token(kind.value, value),
                value_encrypted=vault.encrypt(value),
                is_primary=True,
            )
        return entity

    return _seed
