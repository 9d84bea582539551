import json
import logging
import re
from dataclasses import asdict, dataclass
from enum import Enum
from typing import ClassVar, Optional

import codec
from transaction import (
    ALGORITHM_ECDSA,
    LEGACY_DELIMITER,
    LEGACY_PREFIX,
    PayloadSchema,
    detect_signature_algorithm,
    hash_payload,
)
from wallet import derive_voter_address, verify_signature

logger = logging.getLogger(__name__)

MIN_ENVELOPE_LENGTH = 32
ENHANCED_REQUIRED_FIELDS = ("version", "type", "transaction_data", "signature")
LEGACY_MARKERS = (":", "|", "signed_tx", "data", "signature")
LEGACY_CHARSET = re.compile(r"^[A-Za-z0-9+/=:_|.-]+$")


class Confidence(Enum):
    FULL = "full"
    STRUCTURAL = "structural"
    NONE = "none"


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    confidence: Confidence
    reason: str = ""

    def __bool__(self):
        return self.valid

    @property
    def fully_verified(self):
        return self.valid and self.confidence is Confidence.FULL


def _rejected(reason):
    logger.warning("Signed transaction rejected: %s", reason)
    return VerificationResult(False, Confidence.NONE, reason)


# --- ENVELOPE TYPES ---

@dataclass(frozen=True)
class EnhancedEnvelope:
    version: str
    type: str
    transaction_data: str
    signature: str
    signature_algorithm: str = ""
    timestamp: Optional[int] = None
    nonce: str = ""
    public_key: str = ""
    voter_address: str = ""

    schema: ClassVar[PayloadSchema] = PayloadSchema.ENHANCED

    @property
    def payload(self):
        return codec.decode(self.transaction_data)

    @property
    def algorithm(self):
        return self.signature_algorithm or detect_signature_algorithm(self.signature)

    def to_dict(self):
        return asdict(self)


@dataclass(frozen=True)
class LegacyEnvelope:
    """Deprecated ``signed_tx:data:...|signature:...`` layout, read-only support."""

    transaction_data: str
    signature: str
    timestamp: str = ""
    nonce: str = ""
    version: str = ""
    public_key: ClassVar[str] = ""

    schema: ClassVar[PayloadSchema] = PayloadSchema.LEGACY

    @property
    def payload(self):
        return codec.decode(self.transaction_data)

    @property
    def algorithm(self):
        return detect_signature_algorithm(self.signature)

    def to_dict(self):
        return asdict(self)


# --- PARSER CHAIN ---

def parse_enhanced(text):
    document_text = codec.decode_text(text)
    if document_text is None:
        return None
    try:
        document = json.loads(document_text)
    except ValueError:
        return None
    if not isinstance(document, dict):
        return None
    if any(name not in document for name in ENHANCED_REQUIRED_FIELDS):
        return None
    signature = document.get("signature")
    if not isinstance(signature, str) or not signature:
        return None
    try:
        return EnhancedEnvelope(
            version=str(document["version"]),
            type=str(document["type"]),
            transaction_data=str(document["transaction_data"]),
            signature=signature,
            signature_algorithm=str(document.get("signature_algorithm") or ""),
            timestamp=document.get("timestamp"),
            nonce=str(document.get("nonce") or ""),
            public_key=str(document.get("public_key") or ""),
            voter_address=str(document.get("voter_address") or ""),
        )
    except (TypeError, ValueError):
        return None


def parse_legacy(text):
    """Deprecated: reads the pipe-delimited envelope of older clients."""
    if not isinstance(text, str) or not text.startswith(LEGACY_PREFIX):
        return None
    fields = {}
    for part in text[len(LEGACY_PREFIX):].split(LEGACY_DELIMITER):
        key, sep, value = part.partition(":")
        if not sep:
            return None
        fields[key] = value
    if not fields.get("data") or not fields.get("signature"):
        return None
    signature = codec.decode_text(fields["signature"])
    if not signature:
        return None
    return LegacyEnvelope(
        transaction_data=fields["data"],
        signature=signature,
        timestamp=fields.get("timestamp", ""),
        nonce=fields.get("nonce", ""),
        version=fields.get("version", ""),
    )


ENVELOPE_PARSERS = (parse_enhanced, parse_legacy)


def parse_envelope(text):
    if not text:
        return None
    for parser in ENVELOPE_PARSERS:
        envelope = parser(text)
        if envelope is not None:
            return envelope
    return None


def _matches_legacy_layout(text):
    return all(marker in text for marker in LEGACY_MARKERS) and bool(LEGACY_CHARSET.match(text))


def _same_public_key(a, b):
    def norm(value):
        value = value.hex() if isinstance(value, (bytes, bytearray)) else str(value)
        value = value.lower()
        return value[2:] if value.startswith("0x") else value
    return norm(a) == norm(b)


# --- VALIDATOR ---

class TransactionValidator:
    """Checks signed-transaction envelopes without access to any private key."""

    def validate_signed_transaction(self, signed_transaction):
        if not signed_transaction or not isinstance(signed_transaction, str):
            logger.debug("Signed transaction is null or empty")
            return False
        if len(signed_transaction) < MIN_ENVELOPE_LENGTH:
            logger.debug("Signed transaction too short: %d chars", len(signed_transaction))
            return False
        if parse_enhanced(signed_transaction) is not None:
            return True
        if _matches_legacy_layout(signed_transaction):
            logger.debug("Signed transaction accepted by the legacy layout check")
            return True
        logger.debug("Signed transaction matches neither envelope format")
        return False

    def verify_transaction_integrity(self, signed_transaction, public_key=None):
        """Structural check plus, when possible, signature verification.

        ``public_key`` is needed for legacy envelopes, which do not carry one.
        Without a key or an ECDSA-length signature the result is valid with
        ``Confidence.STRUCTURAL`` only.
        """
        if not self.validate_signed_transaction(signed_transaction):
            return _rejected("envelope failed structural validation")

        envelope = parse_envelope(signed_transaction)
        if envelope is None:
            return VerificationResult(True, Confidence.STRUCTURAL, "legacy layout without parseable fields")

        if public_key is not None and envelope.public_key and not _same_public_key(public_key, envelope.public_key):
            return _rejected("embedded public key does not match the expected signer")
        key = public_key if public_key is not None else envelope.public_key

        if not key or detect_signature_algorithm(envelope.signature) != ALGORITHM_ECDSA:
            logger.info("Signature not checkable, structural validation only")
            return VerificationResult(True, Confidence.STRUCTURAL, "no public key or non-ECDSA signature")

        payload = envelope.payload
        if payload is None:
            return _rejected("transaction data is not decodable")
        if not verify_signature(hash_payload(payload), envelope.signature, key):
            return _rejected("signature does not match transaction data")

        if isinstance(envelope, EnhancedEnvelope) and envelope.voter_address:
            try:
                derived = derive_voter_address(key)
            except (ValueError, TypeError, AssertionError):
                return _rejected("public key is malformed")
            if derived.lower() != envelope.voter_address.lower():
                return _rejected("voter address does not belong to the public key")

        return VerificationResult(True, Confidence.FULL)


# --- DEBUG HELPERS ---

def describe_transaction(signed_transaction):
    """Summary of an envelope for logs and troubleshooting. Never includes key material."""
    text = signed_transaction or ""
    info = {
        "length": len(text),
        "preview": text[:32] + "..." if len(text) > 32 else text,
    }
    envelope = parse_envelope(text)
    if envelope is None:
        info["schema"] = "unknown"
        return info
    info["schema"] = envelope.schema.value
    info["algorithm"] = envelope.algorithm
    info.update({k: v for k, v in envelope.to_dict().items() if k not in ("transaction_data", "signature")})
    info["signature_length"] = len(envelope.signature)
    return info
