"""
Custom exceptions for the encrypted attributes engine.
"""


class EncryptionError(Exception):
    """Base exception for encryption-related errors."""
    pass


class KeyResolutionError(EncryptionError):
    """Raised when a key or salt source fails or yields unusable material."""
    pass


class EncodingError(EncryptionError):
    """Raised when stored text is not valid encoded binary."""
    pass


class DecryptionError(EncryptionError):
    """Raised when decryption fails."""
    pass


class SerializationError(EncryptionError):
    """Raised when a value cannot be marshalled or unmarshalled."""
    pass


class EncryptionConfigurationError(EncryptionError):
    """Raised when encryption is misconfigured."""
    pass
