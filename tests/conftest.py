"""Shared test fixtures."""

import os

os.environ.setdefault("SECRET_KEY", "finsync-test-secret-key-0123456789")
os.environ["DATABASE_URL"] = "sqlite:///:memory:"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from finsync.database import Base
from finsync.app import models
from finsync.app.open_finance import service as service_module
from finsync.app.open_finance.credentials import CredentialStore

from tests.fakes import CLIENT_ID, CLIENT_SECRET, FakePluggyAPI, build_provider


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture(autouse=True)
def _clear_connection_locks():
    service_module._connection_locks.clear()
    service_module._lock_users.clear()
    yield
    service_module._connection_locks.clear()
    service_module._lock_users.clear()


@pytest.fixture
def user(db):
    user = models.User(email="ana@example.com", full_name="Ana Souza")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def credentials(db, user):
    CredentialStore(db).save_credentials(user.id, CLIENT_ID, CLIENT_SECRET)
    return user


@pytest.fixture
def fake_api():
    return FakePluggyAPI()


@pytest.fixture
def provider(fake_api):
    return build_provider(fake_api.handler)


@pytest.fixture
def provider_factory(fake_api):
    """Factory wired to the fake API, in the shape SyncService expects."""
    built = []

    def factory(stored):
        provider = build_provider(fake_api.handler, stored.client_id, stored.client_secret)
        built.append(provider)
        return provider

    factory.built = built
    return factory


@pytest.fixture
def connection(db, user):
    connection = models.Connection(user_id=user.id, item_id="item-1", institution_name="Banco Teste")
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection
