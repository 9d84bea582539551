import hashlib
import json
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field

from Crypto.Hash import keccak
from cryptography.fernet import Fernet, InvalidToken
from ecdsa import BadSignatureError, SigningKey, VerifyingKey, SECP256k1
from ecdsa.der import UnexpectedDER
from ecdsa.util import sigencode_der, sigdecode_der

from errors import SecurityError

logger = logging.getLogger(__name__)

# --- CONSTANTS ---
SIGNATURE_ALGORITHM = "ECDSA"
ZERO_ADDRESS = "0x" + "0" * 40
GENERATION_METHOD = "ecdsa_secp256k1"
BACKUP_VERSION = 1

# Names of the entries kept in the secure key slot.
PRIVATE_KEY_ENTRY = "private_key"
PUBLIC_KEY_ENTRY = "public_key"
VOTER_ADDRESS_ENTRY = "voter_address"
CREATION_TIME_ENTRY = "creation_time"
GENERATION_METHOD_ENTRY = "generation_method"
REQUIRED_ENTRIES = (PRIVATE_KEY_ENTRY, PUBLIC_KEY_ENTRY, VOTER_ADDRESS_ENTRY)


@dataclass(frozen=True)
class KeyPairInfo:
    private_key: bytes = field(repr=False)
    public_key: bytes
    voter_address: str
    creation_time: int = 0
    generation_method: str = GENERATION_METHOD

    @property
    def is_valid(self):
        """False for the sentinel returned when generation fails."""
        return self.voter_address != ZERO_ADDRESS and bool(self.private_key) and bool(self.public_key)

    @property
    def public_key_hex(self):
        return self.public_key.hex()


SENTINEL_KEY_PAIR = KeyPairInfo(private_key=b"", public_key=b"", voter_address=ZERO_ADDRESS,
                                generation_method="failed")


# --- PURE HELPERS ---

def keccak256(data):
    """Ethereum-style Keccak-256 digest (not NIST SHA3-256)."""
    return keccak.new(digest_bits=256, data=data).digest()


def _to_checksum_address(address_hex):
    """EIP-55 mixed-case rendering of a 40-character hex address."""
    address_hex = address_hex.lower()
    digest = keccak256(address_hex.encode("ascii")).hex()
    return "0x" + "".join(
        ch.upper() if ch.isalpha() and int(digest[i], 16) >= 8 else ch
        for i, ch in enumerate(address_hex)
    )


def _coerce_public_key(public_key):
    if isinstance(public_key, str):
        text = public_key[2:] if public_key.startswith("0x") else public_key
        return bytes.fromhex(text)
    return bytes(public_key)


def derive_voter_address(public_key):
    """Derives the voter address: last 20 bytes of Keccak-256 over the X||Y point."""
    raw = _coerce_public_key(public_key)
    if len(raw) == 65 and raw[0] == 0x04:
        raw = raw[1:]
    if len(raw) != 64:
        # Compressed keys are expanded through the curve first.
        raw = VerifyingKey.from_string(raw, curve=SECP256k1).to_string()
    return _to_checksum_address(keccak256(raw)[-20:].hex())


def _as_bytes(data):
    return data.encode("utf-8") if isinstance(data, str) else bytes(data)


def verify_signature(data, signature, public_key):
    """Checks a DER hex signature over SHA-256(data). Never raises."""
    try:
        vk = VerifyingKey.from_string(_coerce_public_key(public_key), curve=SECP256k1)
        digest = hashlib.sha256(_as_bytes(data)).digest()
        sig_bytes = bytes.fromhex(signature) if isinstance(signature, str) else bytes(signature)
        return vk.verify_digest(sig_bytes, digest, sigdecode=sigdecode_der)
    except (BadSignatureError, UnexpectedDER):
        return False
    except (ValueError, TypeError, AssertionError) as e:
        logger.debug("Signature verification rejected malformed input: %s", type(e).__name__)
        return False


def sign_message(private_key, data):
    """Signs SHA-256(data) with a raw 32-byte private key; DER hex."""
    sk = SigningKey.from_string(private_key, curve=SECP256k1)
    digest = hashlib.sha256(_as_bytes(data)).digest()
    return sk.sign_digest(digest, sigencode=sigencode_der).hex()


# --- KEY GENERATION ---

def generate_key_pair():
    """Creates a fresh secp256k1 identity, or the sentinel if generation fails."""
    try:
        sk = SigningKey.generate(curve=SECP256k1)
        public_key = sk.get_verifying_key().to_string()
        return KeyPairInfo(
            private_key=sk.to_string(),
            public_key=public_key,
            voter_address=derive_voter_address(public_key),
            creation_time=int(time.time() * 1000),
        )
    except Exception as e:
        # Entropy or curve failures; callers check is_valid.
        logger.error("Key pair generation failed: %s", type(e).__name__)
        return SENTINEL_KEY_PAIR


# --- SLOT LOCKING ---

class ReadWriteLock:
    """Many concurrent readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def reading(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def writing(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


# --- KEY MANAGER ---

class KeyManager:
    """Custody of the device identity held in an injected ``SecureKeyStore``.

    Accessors return ``None`` for missing or unreadable material. Corruption
    of the slot (``KeyStoreCorruptedError``) is never hidden.
    """

    signature_algorithm = SIGNATURE_ALGORITHM

    def __init__(self, store):
        self.store = store
        self._lock = ReadWriteLock()

    # Unlocked helpers; callers hold the appropriate side of the lock.

    def _has_keys(self):
        return all(self.store.contains(name) for name in REQUIRED_ENTRIES)

    def _read(self, name):
        try:
            return self.store.get(name)
        except SecurityError:
            raise
        except OSError as e:
            logger.error("Key slot read failed for %s: %s", name, e)
            return None

    def _write(self, info):
        if not info.is_valid:
            raise ValueError("Refusing to store an invalid key pair")
        derived = SigningKey.from_string(info.private_key, curve=SECP256k1).get_verifying_key().to_string()
        if derived != info.public_key or derive_voter_address(derived) != info.voter_address:
            raise ValueError("Key pair components do not belong together")
        try:
            self.store.put_all({
                PRIVATE_KEY_ENTRY: info.private_key,
                PUBLIC_KEY_ENTRY: info.public_key,
                VOTER_ADDRESS_ENTRY: info.voter_address.encode("ascii"),
                CREATION_TIME_ENTRY: str(info.creation_time).encode("ascii"),
                GENERATION_METHOD_ENTRY: info.generation_method.encode("ascii"),
            })
        except SecurityError:
            raise
        except Exception as e:
            logger.error("Failed to store key pair: %s", type(e).__name__)
            raise SecurityError("Failed to store cryptographic key pair") from e
        logger.info("Key pair stored for %s", info.voter_address)

    def _key_info(self):
        private_key = self._read(PRIVATE_KEY_ENTRY)
        public_key = self._read(PUBLIC_KEY_ENTRY)
        address = self._read(VOTER_ADDRESS_ENTRY)
        if not private_key or not public_key or not address:
            return None
        created = self._read(CREATION_TIME_ENTRY) or b"0"
        method = self._read(GENERATION_METHOD_ENTRY) or GENERATION_METHOD.encode("ascii")
        return KeyPairInfo(
            private_key=private_key,
            public_key=public_key,
            voter_address=address.decode("ascii"),
            creation_time=int(created.decode("ascii")),
            generation_method=method.decode("ascii"),
        )

    # Public API.

    def generate_key_pair(self):
        """Returns a new, not yet active identity. Call ``store_key_pair`` to activate it."""
        return generate_key_pair()

    def store_key_pair(self, info):
        """Activates ``info``, replacing any stored identity."""
        with self._lock.writing():
            self._write(info)

    def ensure_key_pair(self):
        """Generates and stores an identity unless one is already active.

        Returns ``(info, created)``. ``info`` is ``None`` when generation
        produced the sentinel; nothing is stored in that case.
        """
        with self._lock.writing():
            if self._has_keys():
                logger.info("Key pair already present, skipping generation")
                return self._key_info(), False
            info = generate_key_pair()
            if not info.is_valid:
                return None, False
            self._write(info)
            return info, True

    def has_stored_key_pair(self):
        """True when every required entry is present in the slot."""
        with self._lock.reading():
            try:
                return self._has_keys()
            except SecurityError:
                raise
            except OSError as e:
                logger.error("Key slot check failed: %s", e)
                return False

    def get_private_key(self):
        """Raw private key bytes, or ``None`` without a complete identity."""
        with self._lock.reading():
            if not self._has_keys():
                logger.warning("No stored key pair found")
                return None
            return self._read(PRIVATE_KEY_ENTRY)

    def get_public_key(self):
        """64-byte public key, or ``None``."""
        with self._lock.reading():
            return self._read(PUBLIC_KEY_ENTRY)

    def get_voter_address(self):
        """Checksummed voter address, or ``None``."""
        with self._lock.reading():
            address = self._read(VOTER_ADDRESS_ENTRY)
            return address.decode("ascii") if address else None

    def get_key_info(self):
        """The stored identity as a ``KeyPairInfo``, or ``None``."""
        with self._lock.reading():
            return self._key_info()

    def sign_data(self, data):
        """Signs ``data`` with the stored private key; DER hex or ``None``."""
        if not data:
            logger.warning("Cannot sign empty data")
            return None
        with self._lock.reading():
            if not self._has_keys():
                logger.error("No private key available for signing")
                return None
            private_key = self._read(PRIVATE_KEY_ENTRY)
            if not private_key:
                return None
            try:
                return sign_message(private_key, data)
            except Exception as e:
                # The exception text may echo key bytes; only the type is logged.
                logger.error("Signing failed: %s", type(e).__name__)
                return None

    @staticmethod
    def verify_signature(data, signature, public_key):
        """See ``wallet.verify_signature``."""
        return verify_signature(data, signature, public_key)

    def can_sign_data(self):
        """True when a private key is available for signing."""
        return self.get_private_key() is not None

    def validate_stored_keys(self):
        """Re-derives the public key and address and runs a sign/verify check."""
        info = self.get_key_info()
        if info is None:
            logger.warning("One or more keys are missing")
            return False
        try:
            derived = SigningKey.from_string(info.private_key, curve=SECP256k1).get_verifying_key().to_string()
        except Exception as e:
            logger.error("Stored private key is unusable: %s", type(e).__name__)
            return False
        public_ok = derived == info.public_key
        address_ok = derive_voter_address(derived) == info.voter_address
        sample = f"VoteChain validation {int(time.time() * 1000)}"
        signature = self.sign_data(sample)
        signature_ok = bool(signature) and verify_signature(sample, signature, info.public_key)
        logger.debug("Key validation - public: %s, address: %s, signature: %s", public_ok, address_ok, signature_ok)
        return public_ok and address_ok and signature_ok

    def clear_stored_keys(self):
        """Irreversibly wipes the key slot. Safe to call when already empty."""
        with self._lock.writing():
            try:
                self.store.delete_all()
            except Exception as e:
                logger.error("Error during key wipe: %s", type(e).__name__)
                raise SecurityError("Failed to clear stored keys") from e
        logger.info("Stored keys cleared")

    # Backup.

    def export_keys_for_backup(self, user_consent, backup_secret):
        """Fernet-encrypted JSON copy of the identity, or ``None``.

        Nothing is exported without explicit ``user_consent`` or when no
        identity is stored. ``backup_secret`` is a urlsafe base64 Fernet key
        chosen by the user; it is never written alongside the backup.
        """
        if not user_consent:
            logger.warning("Key export denied - no user consent")
            return None
        info = self.get_key_info()
        if info is None:
            logger.warning("No stored key pair to export")
            return None
        document = {
            "version": BACKUP_VERSION,
            "timestamp": int(time.time() * 1000),
            "public_key": info.public_key.hex(),
            "private_key": info.private_key.hex(),
            "voter_address": info.voter_address,
            "creation_time": info.creation_time,
            "generation_method": info.generation_method,
        }
        token = _backup_fernet(backup_secret).encrypt(json.dumps(document).encode("utf-8"))
        logger.info("Key backup exported for %s", info.voter_address)
        return token.decode("ascii")

    def restore_keys_from_backup(self, backup, backup_secret, replace=False):
        """Activates the identity held in ``backup``.

        Returns the restored ``KeyPairInfo``, or ``None`` when an identity is
        already stored and ``replace`` is false. A backup that cannot be
        decrypted or read raises ``SecurityError``; one whose keys do not
        belong together raises ``ValueError``.
        """
        try:
            raw = _backup_fernet(backup_secret).decrypt(backup.encode("ascii") if isinstance(backup, str) else backup)
            document = json.loads(raw.decode("utf-8"))
            info = KeyPairInfo(
                private_key=bytes.fromhex(document["private_key"]),
                public_key=bytes.fromhex(document["public_key"]),
                voter_address=document["voter_address"],
                creation_time=int(document.get("creation_time", 0)),
                generation_method=document.get("generation_method", GENERATION_METHOD),
            )
        except InvalidToken as e:
            raise SecurityError("Key backup cannot be decrypted with this secret") from e
        except (KeyError, ValueError, TypeError, AttributeError, UnicodeError) as e:
            raise SecurityError("Key backup is not a valid backup document") from e

        with self._lock.writing():
            if self._has_keys() and not replace:
                logger.warning("Key pair already present, backup not restored")
                return None
            self._write(info)
        logger.info("Key pair restored from backup for %s", info.voter_address)
        return info


def _backup_fernet(backup_secret):
    try:
        return Fernet(backup_secret)
    except (ValueError, TypeError) as e:
        raise SecurityError("Backup secret is not a valid Fernet key") from e
