import pytest
import requests

from key_store import InMemoryKeyStore
from signer import TransactionSigner
from wallet import KeyManager, generate_key_pair


class FakeResponse:
    def __init__(self, status_code=200, data=None, text=None):
        self.status_code = status_code
        self._data = data
        self.text = text if text is not None else ("" if data is None else str(data))

    def json(self):
        if self._data is None:
            raise ValueError("no JSON body")
        return self._data

    def raise_for_status(self):
        if not (200 <= self.status_code < 300):
            err = requests.HTTPError(f"{self.status_code} HTTP error")
            err.response = self
            raise err


class FakeSession:
    """Routes ``post`` calls to a handler and records them."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def post(self, url, json=None, headers=None, timeout=None):
        self.calls.append({"url": url, "json": json, "headers": headers or {}, "timeout": timeout})
        return self.handler(url, json)


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def fake_response():
    return FakeResponse


@pytest.fixture
def key_manager():
    return KeyManager(InMemoryKeyStore())


@pytest.fixture
def stored_key_manager():
    key_manager = KeyManager(InMemoryKeyStore())
    info, created = key_manager.ensure_key_pair()
    assert info is not None and created
    return key_manager


@pytest.fixture
def signer(stored_key_manager):
    return TransactionSigner(stored_key_manager)


@pytest.fixture
def authority_keys():
    info = generate_key_pair()
    return info.public_key.hex(), info.private_key.hex()
