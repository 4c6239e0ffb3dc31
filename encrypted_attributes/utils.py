"""
Utility functions for the encrypted attributes engine.
"""

import base64
import binascii
import os
from typing import Any, Optional

from django.utils.encoding import force_bytes

from .exceptions import EncodingError

# Marks a salt written as base64; unprefixed salts are legacy raw text.
SALT_PREFIX = '_'


def is_empty(value: Any) -> bool:
    """
    Check whether a value counts as "no value".

    Only None and zero-length strings are empty; 0, False and empty
    containers are real values.
    """
    if value is None:
        return True
    return isinstance(value, (str, bytes)) and len(value) == 0


def random_bytes(length: int) -> bytes:
    """Return cryptographically secure random bytes."""
    return os.urandom(length)


def encode_binary(data: bytes) -> str:
    """Encode bytes as single-line base64 text."""
    return base64.b64encode(data).decode('ascii')


def decode_binary(text: str, slot: str = 'value') -> bytes:
    """
    Decode base64 text back to bytes.

    Line breaks left by older writers are ignored; any other character
    outside the base64 alphabet is an error.

    Raises:
        EncodingError: If the text is not valid base64
    """
    if isinstance(text, bytes):
        try:
            text = text.decode('ascii')
        except UnicodeDecodeError as e:
            raise EncodingError(f"Stored {slot} is not base64 text") from e

    compact = ''.join(text.split())
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise EncodingError(f"Stored {slot} is not valid base64: {e}") from e


def encode_salt(salt: bytes) -> str:
    """Encode a salt for storage, prefixed so it can be told from legacy salts."""
    return SALT_PREFIX + encode_binary(salt)


def decode_salt(text: Optional[str]) -> Optional[bytes]:
    """
    Decode a stored salt.

    Salts written by this engine carry the ``_`` prefix and are base64.
    Anything else is a legacy salt used verbatim.
    """
    if is_empty(text):
        return None
    if isinstance(text, str) and text.startswith(SALT_PREFIX):
        return decode_binary(text[len(SALT_PREFIX):], slot='salt')
    return force_bytes(text)
