import os

import pytest

import codec


@pytest.mark.parametrize("data", [b"", b"\x00", b"vote", bytes(range(256)), os.urandom(97)])
def test_decode_reverses_encode(data):
    assert codec.decode(codec.encode(data)) == data


def test_substitutes_transport_unsafe_characters():
    # b"\xfb\xff" is "+/8=" in standard base64.
    assert codec.encode(b"\xfb\xff") == "-_8."
    assert codec.decode("-_8.") == b"\xfb\xff"


def test_encoded_output_uses_safe_alphabet_only():
    encoded = codec.encode(os.urandom(300))
    assert not set(encoded) & set("+/=")


@pytest.mark.parametrize("malformed", ["abc", "@@@@", "ab cd", "ü", None, b"QUJD"])
def test_decode_malformed_returns_none(malformed):
    assert codec.decode(malformed) is None


@pytest.mark.parametrize("standard", ["+/8=", "QUJD+w==", "QU/D"])
def test_decode_rejects_standard_alphabet(standard):
    assert codec.decode(standard) is None
    assert codec.decode_text(standard) is None


def test_text_helpers():
    encoded = codec.encode_text("région:JKT|ok")
    assert codec.decode_text(encoded) == "région:JKT|ok"
    assert codec.decode_text(codec.encode(b"\xff\xfe")) is None
