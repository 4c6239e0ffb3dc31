"""
Attribute codec.

Turns a plaintext value into the stored ``EncryptedField`` triple and back,
given already-resolved key material.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from cryptography.exceptions import InvalidTag

from . import marshalling
from .exceptions import (
    DecryptionError,
    EncryptionConfigurationError,
    EncryptionError,
    SerializationError,
)
from .utils import decode_binary, encode_binary, encode_salt, is_empty, random_bytes

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptedField:
    """The three stored slots of an encrypted attribute."""

    encrypted_value: Optional[str] = None
    encrypted_iv: Optional[str] = None
    encrypted_salt: Optional[str] = None

    @classmethod
    def empty(cls) -> 'EncryptedField':
        return cls()

    @property
    def is_empty(self) -> bool:
        return is_empty(self.encrypted_value)


class AttributeCodec:
    """Serializes, encrypts and encodes attribute values."""

    def serialize(self, config, plaintext: Any) -> bytes:
        if config.marshal:
            return marshalling.dumps(plaintext)
        if isinstance(plaintext, str):
            return plaintext.encode('utf-8')
        if isinstance(plaintext, bytes):
            return plaintext
        raise SerializationError(
            f"Attribute {config.name} stores text only; got {type(plaintext).__name__}. "
            f"Declare it with marshal=True to store other types"
        )

    def deserialize(self, config, data: bytes) -> Any:
        if config.marshal:
            return marshalling.loads(data)
        try:
            return data.decode('utf-8')
        except UnicodeDecodeError as e:
            logger.error(f"Decrypted {config.name} is not valid text")
            raise DecryptionError(f"Failed to decrypt {config.name}") from e

    def encrypt(self, config, plaintext: Any, key: bytes,
                iv: Optional[bytes] = None, salt: Optional[bytes] = None) -> EncryptedField:
        """
        Encrypt a value into a stored triple.

        Args:
            config: Attribute configuration
            plaintext: Value to encrypt
            key: Cipher key from the deriver
            iv: IV to use; generated for per-attribute modes when omitted,
                required (the implicit IV) for ``single_iv_and_salt``
            salt: Salt used to derive ``key``, required for salted modes

        Returns:
            EncryptedField
        """
        if is_empty(plaintext):
            return EncryptedField.empty()

        mode = config.mode
        backend = config.backend

        if mode.uses_stored_iv:
            iv = iv or random_bytes(backend.iv_length)
        elif not iv:
            raise EncryptionConfigurationError(f"No implicit IV derived for {config.name}")
        if mode.uses_salt and not salt:
            raise EncryptionConfigurationError(f"No salt supplied for {config.name}")

        data = self.serialize(config, plaintext)
        try:
            ciphertext = backend.encrypt(data, key, iv, config.auth_data)
        except ValueError as e:
            logger.error(f"Encryption of {config.name} failed: {type(e).__name__}")
            raise EncryptionError(f"Failed to encrypt {config.name}: {str(e)}") from e

        return EncryptedField(
            encrypted_value=encode_binary(ciphertext),
            encrypted_iv=encode_binary(iv) if mode.uses_stored_iv else None,
            encrypted_salt=encode_salt(salt) if mode.uses_salt else None,
        )

    def validate_field(self, config, field: EncryptedField) -> None:
        """
        Check that the stored slots are exactly those the mode writes.

        Raises:
            DecryptionError: If a slot is missing or unexpected
        """
        mode = config.mode
        has_iv = not is_empty(field.encrypted_iv)
        has_salt = not is_empty(field.encrypted_salt)

        if mode.uses_stored_iv and not has_iv:
            raise DecryptionError(f"{config.name} has no stored IV")
        if not mode.uses_stored_iv and has_iv:
            raise DecryptionError(f"{config.name} has a stored IV but mode {mode.value} uses none")
        if mode.uses_salt and not has_salt:
            raise DecryptionError(f"{config.name} has no stored salt")
        if not mode.uses_salt and has_salt:
            raise DecryptionError(f"{config.name} has a stored salt but mode {mode.value} uses none")

    def decrypt(self, config, field: EncryptedField, key: bytes,
                iv: Optional[bytes] = None) -> Any:
        """
        Decrypt a stored triple back to its value.

        Args:
            config: Attribute configuration
            field: Stored slots
            key: Cipher key from the deriver
            iv: Implicit IV for ``single_iv_and_salt``; ignored otherwise

        Returns:
            The decrypted value, or None for an empty field

        Raises:
            EncodingError: If a slot is not valid base64
            DecryptionError: If the slots, IV, padding or tag are wrong
            SerializationError: If marshalled data cannot be loaded
        """
        if field.is_empty:
            return None

        self.validate_field(config, field)

        ciphertext = decode_binary(field.encrypted_value, slot='value')
        if config.mode.uses_stored_iv:
            iv = decode_binary(field.encrypted_iv, slot='iv')
        elif not iv:
            raise EncryptionConfigurationError(f"No implicit IV derived for {config.name}")

        try:
            data = config.backend.decrypt(ciphertext, key, iv, config.auth_data)
        except (ValueError, InvalidTag) as e:
            logger.error(f"Decryption of {config.name} failed: {type(e).__name__}")
            raise DecryptionError(f"Failed to decrypt {config.name}") from e

        return self.deserialize(config, data)
