import hashlib
import json
import logging
import secrets
from dataclasses import dataclass
from enum import Enum

import codec
from errors import EncodingError

logger = logging.getLogger(__name__)

# --- WIRE CONSTANTS ---
TRANSACTION_VERSION = "1.0"
ENVELOPE_VERSION = "2.0"
TRANSACTION_TYPE = "vote"
ENVELOPE_TYPE = "signed_transaction"
CHAIN_ID = "votechain-mainnet"
GAS_LIMIT = "21000"
GAS_PRICE = "1000000000"

LEGACY_PREFIX = "signed_tx:"
LEGACY_DELIMITER = "|"

MAX_ID_LENGTH = 100
MAX_REGION_LENGTH = 50
MAX_NONCE_RANDOM = 999999

# Advisory labels produced by the signature length heuristic.
ALGORITHM_ECDSA = "ECDSA"
ALGORITHM_SHA256 = "SHA-256"
ALGORITHM_UNKNOWN = "UNKNOWN"


class PayloadSchema(Enum):
    ENHANCED = "enhanced"
    LEGACY = "legacy"


@dataclass(frozen=True)
class VoteTransactionData:
    election_pair_id: str
    voter_id: str
    region: str
    timestamp: int
    nonce: str
    version: str = TRANSACTION_VERSION
    type: str = TRANSACTION_TYPE
    chain_id: str = CHAIN_ID
    gas_limit: str = GAS_LIMIT
    gas_price: str = GAS_PRICE

    def to_document(self):
        """Fields in canonical order; the order is part of the hashed bytes."""
        return {
            "version": self.version,
            "type": self.type,
            "election_pair_id": self.election_pair_id,
            "voter_id": self.voter_id,
            "region": self.region,
            "timestamp": self.timestamp,
            "nonce": self.nonce,
            "chain_id": self.chain_id,
            "gas_limit": self.gas_limit,
            "gas_price": self.gas_price,
        }


# --- INPUTS ---

def validate_vote_inputs(election_pair_id, voter_id, region):
    """Returns a reason string for the first invalid input, or ``None``."""
    fields = (
        ("election_pair_id", election_pair_id, MAX_ID_LENGTH),
        ("voter_id", voter_id, MAX_ID_LENGTH),
        ("region", region, MAX_REGION_LENGTH),
    )
    for name, value, limit in fields:
        if not isinstance(value, str) or not value.strip():
            return f"{name} is empty"
        if len(value) > limit:
            return f"{name} exceeds {limit} characters"
    return None


def generate_nonce(timestamp_ms):
    """Builds a replay nonce: the timestamp plus a random suffix in 1..999999."""
    return f"{timestamp_ms}_{secrets.randbelow(MAX_NONCE_RANDOM) + 1}"


# --- SERIALIZATION ---

def _serialize_enhanced(data):
    try:
        payload = json.dumps(data.to_document(), separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise EncodingError(f"structured payload could not be serialized: {e}") from e
    if codec.decode(codec.encode(payload)) != payload:
        raise EncodingError("structured payload did not survive the codec round trip")
    return payload


def _serialize_legacy(data):
    document = data.to_document()
    parts = []
    # The legacy layout never carried the chain metadata.
    for key in ("version", "type", "election_pair_id", "voter_id", "region", "timestamp", "nonce"):
        value = str(document[key])
        if LEGACY_DELIMITER in value:
            raise EncodingError(f"{key} contains the legacy delimiter")
        parts.append(f"{key}:{value}")
    return LEGACY_DELIMITER.join(parts).encode("utf-8")


_SERIALIZERS = {
    PayloadSchema.ENHANCED: _serialize_enhanced,
    PayloadSchema.LEGACY: _serialize_legacy,
}


def serialize_transaction(data, schema=PayloadSchema.ENHANCED):
    """Deterministic bytes for ``data``; the same input always yields the same output."""
    return _SERIALIZERS[schema](data)


def parse_payload(payload):
    """Reads a serialized payload of either schema back into a field mapping."""
    try:
        text = payload.decode("utf-8")
    except (UnicodeDecodeError, AttributeError):
        return None
    try:
        document = json.loads(text)
        if isinstance(document, dict):
            return document
    except ValueError:
        pass
    fields = {}
    for part in text.split(LEGACY_DELIMITER):
        key, sep, value = part.partition(":")
        if not sep:
            return None
        fields[key] = value
    return fields if fields.get("type") == TRANSACTION_TYPE else None


# --- HASHING ---

def hash_payload(payload):
    """SHA-256 of the serialized payload as lowercase hex."""
    return hashlib.sha256(payload).hexdigest()


def detect_signature_algorithm(signature):
    """Length heuristic kept for envelopes that do not declare their algorithm."""
    length = len(signature or "")
    if length >= 130:
        return ALGORITHM_ECDSA
    if length == 64:
        return ALGORITHM_SHA256
    return ALGORITHM_UNKNOWN
