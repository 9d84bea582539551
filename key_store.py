import base64
import json
import logging
import os
import tempfile
import threading

from cryptography.fernet import Fernet, InvalidToken

from errors import KeyStoreCorruptedError, SecurityError

logger = logging.getLogger(__name__)


# --- STORE INTERFACE ---

class SecureKeyStore:
    """Exclusive storage for one identity's raw key material.

    The slot is read and replaced as a whole so that a partially written
    identity is never observable.
    """

    def get(self, name):
        raise NotImplementedError

    def contains(self, name):
        return self.get(name) is not None

    def put_all(self, entries):
        raise NotImplementedError

    def delete_all(self):
        raise NotImplementedError


class InMemoryKeyStore(SecureKeyStore):
    """Process-local slot, used by tests and throwaway sessions."""

    def __init__(self):
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, name):
        with self._lock:
            return self._entries.get(name)

    def put_all(self, entries):
        with self._lock:
            self._entries = {name: bytes(value) for name, value in entries.items()}

    def delete_all(self):
        with self._lock:
            self._entries = {}


# --- ENCRYPTED FILE STORE ---

class EncryptedFileKeyStore(SecureKeyStore):
    """Keeps the slot as a single Fernet token on disk.

    ``secret`` is a urlsafe base64 Fernet key. When it is not supplied, a key
    is generated on first use and written next to the slot as ``<path>.key``.
    """

    def __init__(self, path, secret=None):
        self.path = path
        self.key_path = path + ".key"
        self._secret = secret.encode() if isinstance(secret, str) else secret
        self._lock = threading.Lock()

    def _fernet(self):
        if self._secret is None:
            self._secret = self._load_or_create_secret()
        try:
            return Fernet(self._secret)
        except (ValueError, TypeError) as e:
            raise SecurityError("Configured key store secret is not a valid Fernet key") from e

    def _load_or_create_secret(self):
        # Anyone able to read the slot can read this file too.
        if os.path.exists(self.key_path):
            logger.warning("Using key store secret from %s beside the slot; "
                           "set VOTECHAIN_KEYSTORE_SECRET to keep them apart", self.key_path)
            with open(self.key_path, "rb") as f:
                return f.read().strip()
        secret = Fernet.generate_key()
        _write_private_file(self.key_path, secret)
        logger.warning("Created key store secret at %s beside the slot; "
                       "set VOTECHAIN_KEYSTORE_SECRET to keep them apart", self.key_path)
        return secret

    def _read_slot(self):
        if not os.path.exists(self.path) or os.path.getsize(self.path) == 0:
            return {}
        with open(self.path, "rb") as f:
            token = f.read()
        try:
            document = json.loads(self._fernet().decrypt(token).decode("utf-8"))
            return {name: base64.b64decode(value) for name, value in document.items()}
        except InvalidToken as e:
            raise KeyStoreCorruptedError(f"Key slot {self.path} cannot be decrypted") from e
        except (ValueError, TypeError, AttributeError) as e:
            raise KeyStoreCorruptedError(f"Key slot {self.path} is not a valid key document") from e

    def get(self, name):
        with self._lock:
            return self._read_slot().get(name)

    def put_all(self, entries):
        document = {name: base64.b64encode(bytes(value)).decode("ascii") for name, value in entries.items()}
        token = self._fernet().encrypt(json.dumps(document).encode("utf-8"))
        with self._lock:
            _write_private_file(self.path, token)

    def delete_all(self):
        with self._lock:
            if os.path.exists(self.path):
                os.remove(self.path)


def _write_private_file(path, data):
    """Writes ``data`` to ``path`` atomically with owner-only permissions."""
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".slot-")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    except OSError:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
