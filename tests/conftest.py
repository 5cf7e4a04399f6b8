"""Pytest configuration and shared fixtures."""

import uuid

import pytest

from chatcore.auth import AuthSession
from chatcore.config import Settings
from chatcore.database import create_db_engine, create_session_factory, init_db
from chatcore.events import EventBus
from chatcore.models import Profile
from chatcore.services.conversation_manager import ConversationManager
from chatcore.services.encryption_service import MessageEncryptionService
from chatcore.services.message_repository import MessageRepository
from chatcore.utils.keystore import MemoryKeyStore


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line("markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')")


@pytest.fixture(scope="function")
def settings(tmp_path):
    """Settings pointing at a throwaway database and key directory."""
    return Settings(
        DATABASE_URL=f"sqlite:///{tmp_path / 'test.db'}",
        KEY_STORE_DIR=str(tmp_path / "keys"),
        UNREAD_POLL_INTERVAL_SECONDS=0.05,
    )


@pytest.fixture(scope="function")
def engine(settings):
    """Create a test database engine with all tables."""
    engine = create_db_engine(settings.DATABASE_URL)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    """Session for inspecting stored rows directly."""
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="function")
def users(session_factory):
    """Seed three profiles and return their ids by username."""
    session = session_factory()
    ids = {}
    for username in ("alice", "bob", "carol"):
        profile = Profile(id=str(uuid.uuid4()), username=username, display_name=username.capitalize())
        session.add(profile)
        ids[username] = profile.id
    session.commit()
    session.close()
    return ids


@pytest.fixture(scope="function")
def key_store():
    return MemoryKeyStore()


@pytest.fixture(scope="function")
def auth():
    return AuthSession()


@pytest.fixture(scope="function")
def events():
    return EventBus()


@pytest.fixture(scope="function")
def repository(session_factory, auth):
    return MessageRepository(session_factory, auth)


@pytest.fixture(scope="function")
def encryption(key_store):
    return MessageEncryptionService(key_store)


@pytest.fixture(scope="function")
def manager(repository, encryption, events, settings):
    return ConversationManager(repository, encryption, events, settings)
