"""Transport-safe base64 used for payloads and whole envelopes.

Standard base64 output with ``+`` -> ``-``, ``/`` -> ``_`` and ``=`` -> ``.``
so the result survives query strings and the ``key:value|...`` legacy layout.
"""

import base64
import binascii
import logging

logger = logging.getLogger(__name__)

_TO_SAFE = str.maketrans({"+": "-", "/": "_", "=": "."})
_FROM_SAFE = str.maketrans({"-": "+", "_": "/", ".": "="})
_STANDARD_ONLY = frozenset("+/=")


def encode(data):
    """Encodes raw bytes into the transport-safe alphabet."""
    return base64.b64encode(bytes(data)).decode("ascii").translate(_TO_SAFE)


def decode(text):
    """Reverses ``encode``. Returns ``None`` for anything that is not a valid encoding."""
    if not isinstance(text, str):
        return None
    if _STANDARD_ONLY.intersection(text):
        logger.debug("Rejected encoded value containing standard base64 characters")
        return None
    try:
        standard = text.translate(_FROM_SAFE)
        return base64.b64decode(standard.encode("ascii"), validate=True)
    except (binascii.Error, ValueError, TypeError, AttributeError):
        logger.debug("Rejected malformed encoded value of length %d", len(text))
        return None


def encode_text(text):
    """Encodes a string as UTF-8, then into the safe alphabet."""
    return encode(text.encode("utf-8"))


def decode_text(text):
    """Reverses ``encode_text``; ``None`` for malformed or non-UTF-8 input."""
    raw = decode(text)
    if raw is None:
        return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None
