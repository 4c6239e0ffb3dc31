"""
Cipher backend implementations.

Backends perform the raw cipher operation for one algorithm. This module
also holds the two historical key-stretching schemes the engine must keep
producing byte-for-byte, plus ``encrypt_bytes``/``decrypt_bytes``, a
standalone byte-level API used to build legacy key sources.
"""

import hashlib
import logging
from typing import Dict, Optional, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from django.utils.encoding import force_bytes

from .exceptions import (
    DecryptionError,
    EncryptionConfigurationError,
    EncryptionError,
    KeyResolutionError,
)

logger = logging.getLogger(__name__)

DEFAULT_ALGORITHM = 'aes-256-cbc'

# Frozen historical constants. Changing either breaks existing data.
DEFAULT_HMAC_ITERATIONS = 2000
LEGACY_KEYIVGEN_ITERATIONS = 2048

AES_BLOCK_SIZE_BITS = 128


class AESCBCBackend:
    """
    AES in CBC mode with PKCS#7 padding.

    CBC carries no authentication tag; a padding failure on decrypt is the
    only integrity signal.
    """

    authenticated = False
    iv_length = 16

    def __init__(self, key_length: int):
        self.key_length = key_length
        self.name = f"aes-{key_length * 8}-cbc"

    def encrypt(self, plaintext: bytes, key: bytes, iv: bytes, auth_data: bytes = b'') -> bytes:
        padder = padding.PKCS7(AES_BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        return encryptor.update(padded) + encryptor.finalize()

    def decrypt(self, ciphertext: bytes, key: bytes, iv: bytes, auth_data: bytes = b'') -> bytes:
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(AES_BLOCK_SIZE_BITS).unpadder()
        return unpadder.update(padded) + unpadder.finalize()


class AESGCMBackend:
    """
    AES in GCM mode.

    The 16-byte authentication tag is appended to the ciphertext, so any
    change to ciphertext, IV or key fails decryption.
    """

    authenticated = True
    iv_length = 12

    def __init__(self, key_length: int):
        self.key_length = key_length
        self.name = f"aes-{key_length * 8}-gcm"

    def encrypt(self, plaintext: bytes, key: bytes, iv: bytes, auth_data: bytes = b'') -> bytes:
        return AESGCM(key).encrypt(iv, plaintext, auth_data)

    def decrypt(self, ciphertext: bytes, key: bytes, iv: bytes, auth_data: bytes = b'') -> bytes:
        return AESGCM(key).decrypt(iv, ciphertext, auth_data)


CipherBackend = Union[AESCBCBackend, AESGCMBackend]

_BACKENDS: Dict[str, CipherBackend] = {
    backend.name: backend
    for key_length in (16, 24, 32)
    for backend in (AESCBCBackend(key_length), AESGCMBackend(key_length))
}


def get_cipher_backend(algorithm: str) -> CipherBackend:
    """
    Get the backend for an algorithm identifier such as ``'aes-256-cbc'``.

    Raises:
        EncryptionConfigurationError: If the algorithm is not supported
    """
    try:
        return _BACKENDS[str(algorithm).lower()]
    except KeyError:
        raise EncryptionConfigurationError(
            f"Unsupported algorithm: {algorithm}. "
            f"Choose one of: {', '.join(sorted(_BACKENDS))}"
        )


def evp_bytes_to_key(password: bytes, key_length: int, iv_length: int,
                     iterations: int = LEGACY_KEYIVGEN_ITERATIONS) -> Tuple[bytes, bytes]:
    """
    Derive a key and IV from a password the way OpenSSL's EVP_BytesToKey does.

    Uses MD5 and no salt. This is the legacy derivation used when no IV is
    stored; it is weak and kept only so old data stays readable.
    """
    material = b''
    block = b''
    while len(material) < key_length + iv_length:
        block = hashlib.md5(block + password).digest()
        for _ in range(iterations - 1):
            block = hashlib.md5(block).digest()
        material += block
    return material[:key_length], material[key_length:key_length + iv_length]


def stretch_key(key: bytes, salt: bytes, iterations: int, length: int) -> bytes:
    """Derive a cipher key from key material and salt with PBKDF2-HMAC-SHA1."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA1(),
        length=length,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(key)


def _cipher_parameters(backend: CipherBackend, key: bytes, iv: Optional[bytes],
                       salt: Optional[bytes], insecure_mode: bool,
                       hmac_iterations: int) -> Tuple[bytes, bytes]:
    if not key:
        raise KeyResolutionError("A key must be specified")

    if not insecure_mode:
        if len(key) < backend.key_length:
            raise KeyResolutionError(f"Key must be {backend.key_length} bytes or longer")
        if not iv:
            raise EncryptionConfigurationError("An IV must be specified unless insecure_mode is set")

    if not iv:
        return evp_bytes_to_key(key, backend.key_length, backend.iv_length)

    if salt is None:
        if len(key) != backend.key_length:
            raise KeyResolutionError(
                f"Unsalted key must be exactly {backend.key_length} bytes, got {len(key)}"
            )
        return key, iv

    return stretch_key(key, salt, hmac_iterations, backend.key_length), iv


def encrypt_bytes(value: Union[str, bytes], key: Union[str, bytes],
                  iv: Optional[bytes] = None, salt: Optional[Union[str, bytes]] = None,
                  algorithm: str = DEFAULT_ALGORITHM, insecure_mode: bool = False,
                  hmac_iterations: int = DEFAULT_HMAC_ITERATIONS,
                  auth_data: bytes = b'') -> bytes:
    """
    Encrypt raw bytes.

    Args:
        value: Plaintext (``str`` is encoded as UTF-8)
        key: Key material; stretched with PBKDF2 when ``salt`` is given
        iv: IV bytes; when omitted (insecure mode only) key and IV are
            derived from ``key`` with EVP_BytesToKey
        salt: Optional salt for key stretching
        algorithm: Cipher identifier
        insecure_mode: Skip key length and IV presence checks
        hmac_iterations: PBKDF2 rounds used with ``salt``
        auth_data: Additional authenticated data (GCM only)

    Returns:
        Ciphertext bytes (with the tag appended for GCM)

    Raises:
        KeyResolutionError: If the key is missing or too short
        EncryptionConfigurationError: If the algorithm is unknown or the
            IV is missing outside insecure mode
        EncryptionError: If the cipher rejects its inputs
    """
    backend = get_cipher_backend(algorithm)
    cipher_key, cipher_iv = _cipher_parameters(
        backend, force_bytes(key), iv,
        force_bytes(salt) if salt is not None else None,
        insecure_mode, hmac_iterations,
    )
    try:
        return backend.encrypt(force_bytes(value), cipher_key, cipher_iv, auth_data)
    except ValueError as e:
        logger.error(f"Encryption failed: {str(e)}")
        raise EncryptionError(f"Failed to encrypt data: {str(e)}") from e


def decrypt_bytes(value: bytes, key: Union[str, bytes],
                  iv: Optional[bytes] = None, salt: Optional[Union[str, bytes]] = None,
                  algorithm: str = DEFAULT_ALGORITHM, insecure_mode: bool = False,
                  hmac_iterations: int = DEFAULT_HMAC_ITERATIONS,
                  auth_data: bytes = b'') -> bytes:
    """
    Decrypt raw bytes produced by ``encrypt_bytes`` with the same options.

    Raises:
        DecryptionError: If padding or authentication fails
    """
    backend = get_cipher_backend(algorithm)
    cipher_key, cipher_iv = _cipher_parameters(
        backend, force_bytes(key), iv,
        force_bytes(salt) if salt is not None else None,
        insecure_mode, hmac_iterations,
    )
    try:
        return backend.decrypt(value, cipher_key, cipher_iv, auth_data)
    except (ValueError, InvalidTag) as e:
        logger.error(f"Decryption failed: {type(e).__name__}")
        raise DecryptionError("Failed to decrypt data") from e
