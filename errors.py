"""Failure taxonomy shared by the signing, validation and registration layers.

Recoverable outcomes are reported through result objects carrying a
``FailureKind``. Only ``SecurityError`` and its subclasses are raised across
module boundaries; callers must handle them explicitly.
"""

from enum import Enum


class FailureKind(Enum):
    INPUT_VALIDATION = "input_validation"
    KEY_UNAVAILABLE = "key_unavailable"
    SIGNING_FAILURE = "signing_failure"
    ENCODING_FAILURE = "encoding_failure"
    SELF_VERIFICATION_FAILURE = "self_verification_failure"
    COLLABORATOR_FAILURE = "collaborator_failure"


class SecurityError(Exception):
    """Unrecoverable failure of the secure key layer."""


class KeyStoreCorruptedError(SecurityError):
    """The key slot exists but its content cannot be decrypted or parsed."""


class EncodingError(ValueError):
    """A payload or envelope could not be serialized or round-tripped."""
