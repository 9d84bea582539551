import json
import random
import string

import pytest

import codec
from transaction import PayloadSchema, serialize_transaction, VoteTransactionData, hash_payload
from validator import (
    Confidence,
    EnhancedEnvelope,
    LegacyEnvelope,
    TransactionValidator,
    describe_transaction,
    parse_envelope,
)
from wallet import generate_key_pair, sign_message


@pytest.fixture
def validator():
    return TransactionValidator()


@pytest.fixture
def envelope(signer):
    return signer.generate_vote_signed_transaction("pair-7", "voter-42", "JKT")


def _rewrite(envelope, **changes):
    document = json.loads(codec.decode_text(envelope))
    document.update(changes)
    return codec.encode_text(json.dumps(document, separators=(",", ":")))


def _legacy_envelope(private_key):
    data = VoteTransactionData("pair-7", "voter-42", "JKT", 1700000000000, "1700000000000_9")
    payload = serialize_transaction(data, PayloadSchema.LEGACY)
    signature = sign_message(private_key, hash_payload(payload))
    return (
        f"signed_tx:data:{codec.encode(payload)}|signature:{codec.encode_text(signature)}"
        f"|timestamp:1700000000000|nonce:1700000000000_9|version:1.0"
    )


@pytest.mark.parametrize("value", [None, "", "short", "x" * 31])
def test_rejects_empty_and_short_input(validator, value):
    assert not validator.validate_signed_transaction(value)


def test_rejects_random_strings(validator):
    rng = random.Random(7)
    for _ in range(50):
        text = "".join(rng.choice(string.ascii_letters + string.digits) for _ in range(20))
        assert not validator.validate_signed_transaction(text)


def test_accepts_own_envelope_repeatedly(validator, envelope):
    assert all(validator.validate_signed_transaction(envelope) for _ in range(3))
    result = validator.verify_transaction_integrity(envelope)
    assert result.valid and result.confidence is Confidence.FULL


def test_enhanced_envelope_fields(envelope, stored_key_manager):
    parsed = parse_envelope(envelope)
    assert isinstance(parsed, EnhancedEnvelope)
    assert parsed.version == "2.0"
    assert parsed.type == "signed_transaction"
    assert parsed.signature_algorithm == "ECDSA"
    assert parsed.public_key == stored_key_manager.get_public_key().hex()
    assert parsed.voter_address == stored_key_manager.get_voter_address()


@pytest.mark.parametrize("missing", ["version", "type", "transaction_data", "signature"])
def test_enhanced_requires_core_fields(validator, envelope, missing):
    document = json.loads(codec.decode_text(envelope))
    del document[missing]
    assert not validator.validate_signed_transaction(codec.encode_text(json.dumps(document)))


def test_enhanced_rejects_empty_signature(validator, envelope):
    assert not validator.validate_signed_transaction(_rewrite(envelope, signature=""))


def test_tampered_payload_fails_integrity(validator, envelope):
    document = json.loads(codec.decode_text(envelope))
    payload = json.loads(codec.decode(document["transaction_data"]))
    payload["election_pair_id"] = "pair-8"
    forged = _rewrite(envelope, transaction_data=codec.encode(json.dumps(payload).encode()))
    assert validator.validate_signed_transaction(forged)
    result = validator.verify_transaction_integrity(forged)
    assert not result.valid
    assert result.confidence is Confidence.NONE


def test_swapped_voter_address_fails_integrity(validator, envelope):
    other = generate_key_pair()
    forged = _rewrite(envelope, voter_address=other.voter_address)
    assert not validator.verify_transaction_integrity(forged).valid


def test_expected_key_must_match_embedded_key(validator, envelope):
    other = generate_key_pair()
    assert not validator.verify_transaction_integrity(envelope, public_key=other.public_key).valid


def test_without_public_key_only_structural(validator, envelope):
    stripped = _rewrite(envelope, public_key="")
    result = validator.verify_transaction_integrity(stripped)
    assert result.valid
    assert result.confidence is Confidence.STRUCTURAL
    assert not result.fully_verified


def test_legacy_envelope_accepted_and_verified_with_key(validator):
    info = generate_key_pair()
    legacy = _legacy_envelope(info.private_key)
    assert validator.validate_signed_transaction(legacy)
    assert isinstance(parse_envelope(legacy), LegacyEnvelope)

    structural = validator.verify_transaction_integrity(legacy)
    assert structural.valid and structural.confidence is Confidence.STRUCTURAL

    full = validator.verify_transaction_integrity(legacy, public_key=info.public_key)
    assert full.fully_verified
    assert not validator.verify_transaction_integrity(legacy, public_key=generate_key_pair().public_key).valid


def test_legacy_layout_check_rejects_foreign_characters(validator):
    text = "signed_tx:data:abc def|signature:xyz|timestamp:1|nonce:1_1|version:1.0"
    assert not validator.validate_signed_transaction(text)


def test_legacy_layout_check_needs_every_marker(validator):
    assert not validator.validate_signed_transaction("signed_tx:data:" + "A" * 40)
    assert validator.validate_signed_transaction("signed_tx:data:QUJD|signature:QUJD|version:1.0")


def test_describe_transaction_has_no_key_material(envelope, stored_key_manager):
    info = describe_transaction(envelope)
    assert info["schema"] == "enhanced"
    assert info["algorithm"] == "ECDSA"
    assert info["voter_address"] == stored_key_manager.get_voter_address()
    assert stored_key_manager.get_private_key().hex() not in json.dumps(info, default=str)
    assert describe_transaction("garbage")["schema"] == "unknown"
