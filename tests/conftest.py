"""
Pytest configuration for the audionotary test suite.

Builds the app over a temporary SQLite file with fake notarization, storage
and lookup providers. Identity uses the real header adapter with a freshly
generated Algorand address.
"""
import pytest
from algosdk import account
from fastapi.testclient import TestClient

from audionotary.config import Settings
from audionotary.db import Store
from audionotary.main import create_app
from audionotary.providers import (
    AcousticLookupClient,
    Notarization,
    NotarizationProvider,
    StorageUploader,
)

FIXED_NOW = 1_700_000_000


class FakeNotary(NotarizationProvider):
    def __init__(self, now_value=FIXED_NOW, commitment=None, error=None):
        self.now_value = now_value
        self.commitment = commitment
        self.error = error
        self.calls = 0

    def now(self):
        if self.error:
            raise self.error
        return self.now_value

    def notarize(self, build):
        self.calls += 1
        return Notarization(value=build(), commitment=self.commitment)


class FakeUploader(StorageUploader):
    def __init__(self, cid="bafyfakecid"):
        self.cid = cid
        self.uploads = []

    def upload(self, data, filename):
        self.uploads.append((filename, data))
        return self.cid


class FakeLookup(AcousticLookupClient):
    def __init__(self, status=200, body=None):
        self.status = status
        self.body = body if body is not None else {"status": "ok", "results": []}
        self.calls = []

    def lookup(self, fingerprint, duration):
        self.calls.append((fingerprint, duration))
        return self.status, self.body


@pytest.fixture
def address():
    """A valid Algorand address."""
    _, addr = account.generate_account()
    return addr


@pytest.fixture
def settings(tmp_path):
    return Settings(database_url=f"sqlite:///{tmp_path / 'works.db'}", log_level="WARNING")


@pytest.fixture
def store(settings):
    store = Store(settings.database_url)
    store.migrate()
    yield store
    store.dispose()


@pytest.fixture
def notary():
    return FakeNotary()


@pytest.fixture
def uploader():
    return FakeUploader()


@pytest.fixture
def lookup():
    return FakeLookup()


@pytest.fixture
def app(settings, store, notary, uploader, lookup):
    return create_app(settings, store=store, notary=notary, uploader=uploader, lookup=lookup)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def content_hash():
    return "ab" * 32


@pytest.fixture
def other_hash():
    return "cd" * 32
