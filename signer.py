import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import codec
from errors import EncodingError, FailureKind
from transaction import (
    ENVELOPE_TYPE,
    ENVELOPE_VERSION,
    LEGACY_PREFIX,
    TRANSACTION_VERSION,
    PayloadSchema,
    VoteTransactionData,
    detect_signature_algorithm,
    generate_nonce,
    hash_payload,
    serialize_transaction,
    validate_vote_inputs,
)
from validator import TransactionValidator, VerificationResult, Confidence, parse_enhanced

logger = logging.getLogger(__name__)

# Tried in order; legacy is only reached when the structured form cannot be produced.
SCHEMA_PRIORITY = (PayloadSchema.ENHANCED, PayloadSchema.LEGACY)


@dataclass(frozen=True)
class SigningResult:
    envelope: Optional[str] = None
    failure: Optional[FailureKind] = None
    detail: str = ""
    schema: Optional[PayloadSchema] = None

    @property
    def ok(self):
        return self.envelope is not None

    @classmethod
    def failed(cls, failure, detail):
        logger.error("Signed transaction generation failed at %s: %s", failure.value, detail)
        return cls(failure=failure, detail=detail)


class TransactionSigner:
    """Builds, signs and self-verifies vote envelopes for the stored identity."""

    def __init__(self, key_manager, validator=None, clock=time.time):
        self.key_manager = key_manager
        self.validator = validator or TransactionValidator()
        self._clock = clock

    def generate_vote_signed_transaction(self, election_pair_id, voter_id, region):
        return self.sign_vote(election_pair_id, voter_id, region).envelope

    def sign_vote(self, election_pair_id, voter_id, region):
        logger.info("Starting signed transaction generation for election pair %s", election_pair_id)

        problem = validate_vote_inputs(election_pair_id, voter_id, region)
        if problem:
            return SigningResult.failed(FailureKind.INPUT_VALIDATION, problem)

        if not self.key_manager.has_stored_key_pair():
            return SigningResult.failed(FailureKind.KEY_UNAVAILABLE, "no stored key pair")
        public_key = self.key_manager.get_public_key()
        voter_address = self.key_manager.get_voter_address()
        if not public_key or not voter_address:
            return SigningResult.failed(FailureKind.KEY_UNAVAILABLE, "public key or voter address missing")

        timestamp = int(self._clock() * 1000)
        data = VoteTransactionData(
            election_pair_id=election_pair_id,
            voter_id=voter_id,
            region=region,
            timestamp=timestamp,
            nonce=generate_nonce(timestamp),
        )

        for schema in SCHEMA_PRIORITY:
            try:
                payload = serialize_transaction(data, schema)
            except EncodingError as e:
                logger.warning("%s payload unavailable: %s", schema.value, e)
                continue

            digest = hash_payload(payload)
            logger.debug("Payload hash %s...", digest[:16])
            signature = self.key_manager.sign_data(digest)
            if not signature:
                return SigningResult.failed(FailureKind.SIGNING_FAILURE, "key manager returned no signature")

            try:
                envelope = self._assemble(schema, payload, signature, data, public_key, voter_address)
            except EncodingError as e:
                logger.warning("%s envelope unavailable: %s", schema.value, e)
                continue

            verdict = self._self_verify(envelope, schema, public_key, voter_address)
            if not verdict.fully_verified:
                return SigningResult.failed(FailureKind.SELF_VERIFICATION_FAILURE, verdict.reason or "not fully verified")

            logger.info("Signed transaction generated (%s, %d chars)", schema.value, len(envelope))
            return SigningResult(envelope=envelope, schema=schema)

        return SigningResult.failed(FailureKind.ENCODING_FAILURE, "no payload schema could be encoded")

    def _assemble(self, schema, payload, signature, data, public_key, voter_address):
        if schema is PayloadSchema.LEGACY:
            return (
                f"{LEGACY_PREFIX}data:{codec.encode(payload)}"
                f"|signature:{codec.encode_text(signature)}"
                f"|timestamp:{data.timestamp}"
                f"|nonce:{data.nonce}"
                f"|version:{TRANSACTION_VERSION}"
            )

        algorithm = self.key_manager.signature_algorithm
        if detect_signature_algorithm(signature) != algorithm:
            logger.warning("Signature length does not match the declared %s algorithm", algorithm)
        document = {
            "version": ENVELOPE_VERSION,
            "type": ENVELOPE_TYPE,
            "transaction_data": codec.encode(payload),
            "signature": signature,
            "signature_algorithm": algorithm,
            "timestamp": data.timestamp,
            "nonce": data.nonce,
            "public_key": public_key.hex(),
            "voter_address": voter_address,
        }
        try:
            text = json.dumps(document, separators=(",", ":"))
        except (TypeError, ValueError) as e:
            raise EncodingError(f"envelope could not be serialized: {e}") from e
        envelope = codec.encode_text(text)
        if codec.decode_text(envelope) != text:
            raise EncodingError("envelope did not survive the codec round trip")
        return envelope

    def _self_verify(self, envelope, schema, public_key, voter_address):
        if not self.validator.validate_signed_transaction(envelope):
            return VerificationResult(False, Confidence.NONE, "envelope failed its own structural check")
        result = self.validator.verify_transaction_integrity(envelope, public_key=public_key)
        if not result.fully_verified:
            return result
        if schema is PayloadSchema.ENHANCED:
            parsed = parse_enhanced(envelope)
            if parsed is None or parsed.voter_address != voter_address:
                return VerificationResult(False, Confidence.NONE, "embedded voter address differs from the stored one")
        return result
