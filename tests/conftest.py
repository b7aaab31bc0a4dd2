"""
Pytest fixtures and test configuration for labbook tests.
"""

import itertools

import pytest

from labbook.session import UserSession
from labbook.storage import IdentifierMappingStore, InMemoryDocumentStore, SQLiteStorage
from labbook.sync import SyncEngine

USER = "user-1"
OTHER_USER = "user-2"


def sequential_ids(prefix: str = "r"):
    """Remote id factory producing r1, r2, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.labbook and any LABBOOK_* settings."""
    for key in (
        "LABBOOK_BACKEND_URL",
        "LABBOOK_AUTH_TOKEN",
        "LABBOOK_USER_ID",
        "LABBOOK_DB_PATH",
        "LABBOOK_MERGE_DEDUP_KEY",
        "LABBOOK_LOG_LEVEL",
        "LABBOOK_REMOTE_TIMEOUT",
    ):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("LABBOOK_DATA_DIR", str(tmp_path / "home"))


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def storage(temp_db):
    """Create a SQLiteStorage instance for testing."""
    storage = SQLiteStorage(db_path=temp_db)
    yield storage
    storage.close()


@pytest.fixture
def mappings(temp_db):
    return IdentifierMappingStore(temp_db)


@pytest.fixture
def remote():
    """In-memory remote store handing out r1, r2, ... as document ids."""
    return InMemoryDocumentStore(id_factory=sequential_ids())


@pytest.fixture
def session():
    return UserSession(USER)


@pytest.fixture
def engine(storage, remote, mappings, session):
    return SyncEngine(storage, remote, mappings, session)
