"""
Attribute-level encryption for Python objects and Django models.

Values are stored as three text slots (ciphertext, IV, salt) and decrypted
on access. Data written by older configurations, including Ruby
Marshal-serialized values, stays readable.
"""

from .backends import decrypt_bytes, encrypt_bytes, get_cipher_backend
from .codec import AttributeCodec, EncryptedField
from .config import AttributeConfig, Mode
from .coordinator import AttributeCoordinator
from .exceptions import (
    DecryptionError,
    EncodingError,
    EncryptionConfigurationError,
    EncryptionError,
    KeyResolutionError,
    SerializationError,
)
from .fields import EncryptedAttribute, encrypted_attributes
from .keys import (
    CallableKeySource,
    KeyMaterial,
    KeyMaterialDeriver,
    KeySource,
    MethodKeySource,
    RandomKeySource,
    StaticKeySource,
)

__all__ = [
    # Host binding
    'EncryptedAttribute',
    'encrypted_attributes',

    # Engine
    'AttributeCoordinator',
    'AttributeCodec',
    'AttributeConfig',
    'EncryptedField',
    'Mode',

    # Keys
    'KeySource',
    'StaticKeySource',
    'CallableKeySource',
    'MethodKeySource',
    'RandomKeySource',
    'KeyMaterial',
    'KeyMaterialDeriver',

    # Raw cipher API
    'encrypt_bytes',
    'decrypt_bytes',
    'get_cipher_backend',

    # Exceptions
    'EncryptionError',
    'KeyResolutionError',
    'EncodingError',
    'DecryptionError',
    'SerializationError',
    'EncryptionConfigurationError',
]

# Version info
__version__ = '1.0.0'
