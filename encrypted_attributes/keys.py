"""
Key and salt resolution.

A ``KeySource`` yields raw key (or salt) material on demand. The
``KeyMaterialDeriver`` turns raw material into the exact cipher key for an
attribute's mode.
"""

import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, NamedTuple, Optional, Union

from django.utils.encoding import force_bytes

from .backends import evp_bytes_to_key, stretch_key
from .exceptions import EncryptionConfigurationError, KeyResolutionError
from .utils import random_bytes

if TYPE_CHECKING:
    from .config import AttributeConfig

logger = logging.getLogger(__name__)

MIN_SALT_LENGTH = 16


class KeySource(ABC):
    """Something that can produce key material."""

    @abstractmethod
    def resolve(self, host: Any = None) -> bytes:
        """Return raw key material, optionally computed from the host object."""


@dataclass(frozen=True)
class StaticKeySource(KeySource):
    value: Union[str, bytes] = field(repr=False)

    def resolve(self, host: Any = None) -> bytes:
        return force_bytes(self.value)


@dataclass(frozen=True)
class CallableKeySource(KeySource):
    """
    Calls a function on every resolution; results are never cached.

    A function with a required positional parameter receives the host object.
    """

    func: Callable
    takes_host: bool = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, 'takes_host', _takes_positional_argument(self.func))

    def resolve(self, host: Any = None) -> bytes:
        if self.takes_host:
            return self.func(host)
        return self.func()


@dataclass(frozen=True)
class MethodKeySource(KeySource):
    """Calls (or reads) the named attribute on the host object."""

    name: str

    def resolve(self, host: Any = None) -> bytes:
        if host is None:
            raise KeyResolutionError(f"Key method {self.name} needs a host object")
        value = getattr(host, self.name)
        return value() if callable(value) else value


@dataclass(frozen=True)
class RandomKeySource(KeySource):
    length: int

    def resolve(self, host: Any = None) -> bytes:
        return random_bytes(self.length)


def _takes_positional_argument(func: Callable) -> bool:
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return False
    return any(
        param.kind in (param.POSITIONAL_ONLY, param.POSITIONAL_OR_KEYWORD)
        and param.default is param.empty
        for param in signature.parameters.values()
    )


def as_key_source(value: Any) -> KeySource:
    """
    Coerce a declaration value into a KeySource.

    Strings and bytes become static keys, callables are called per use.
    """
    if isinstance(value, KeySource):
        return value
    if isinstance(value, (str, bytes)):
        return StaticKeySource(value)
    if isinstance(value, bytearray):
        return StaticKeySource(bytes(value))
    if callable(value):
        return CallableKeySource(value)
    raise EncryptionConfigurationError(
        f"Cannot use {type(value).__name__} as a key source"
    )


class KeyMaterial(NamedTuple):
    key: bytes
    salt: Optional[bytes]
    iv: Optional[bytes]


class KeyMaterialDeriver:
    """
    Derives the cipher key for one read or write of an attribute.

    ``iv`` in the result is only set for ``single_iv_and_salt``, where it
    comes out of the key derivation; other modes store their own IV.
    """

    def resolve(self, config: 'AttributeConfig', stored_salt: Optional[bytes] = None,
                generate_salt: bool = False, host: Any = None) -> KeyMaterial:
        """
        Resolve key material for an attribute.

        Args:
            config: Attribute configuration
            stored_salt: Salt read back from storage (read path)
            generate_salt: Draw a fresh salt from the salt source (write path)
            host: Object the attribute lives on, passed to key sources

        Returns:
            KeyMaterial

        Raises:
            KeyResolutionError: If the key or salt cannot be resolved or
                fails validation
        """
        backend = config.backend
        raw_key = self._resolve_source(config.key_source, config, 'key', host)

        if not config.mode.uses_stored_iv:
            key, iv = evp_bytes_to_key(raw_key, backend.key_length, backend.iv_length)
            return KeyMaterial(key, None, iv)

        if not config.mode.uses_salt:
            if len(raw_key) != backend.key_length:
                raise KeyResolutionError(
                    f"Key for {config.name} must be {backend.key_length} bytes, got {len(raw_key)}"
                )
            return KeyMaterial(raw_key, None, None)

        if generate_salt:
            salt = self._resolve_source(config.salt_source, config, 'salt', host)
        elif stored_salt:
            salt = bytes(stored_salt)
        else:
            raise KeyResolutionError(f"No stored salt for {config.name}")

        if not config.insecure_mode:
            if len(raw_key) < backend.key_length:
                raise KeyResolutionError(
                    f"Key for {config.name} must be {backend.key_length} bytes or longer"
                )
            if len(salt) < MIN_SALT_LENGTH:
                raise KeyResolutionError(
                    f"Salt for {config.name} must be {MIN_SALT_LENGTH} bytes or longer"
                )

        key = stretch_key(raw_key, salt, config.hmac_iterations, backend.key_length)
        return KeyMaterial(key, salt, None)

    def _resolve_source(self, source: Optional[KeySource], config: 'AttributeConfig',
                        what: str, host: Any) -> bytes:
        if source is None:
            raise KeyResolutionError(f"No {what} source configured for {config.name}")

        try:
            material = source.resolve(host)
        except KeyResolutionError:
            raise
        except Exception as e:
            logger.error(f"Resolving {what} for {config.name} failed: {type(e).__name__}")
            raise KeyResolutionError(f"Resolving {what} for {config.name} failed: {e}") from e

        if isinstance(material, str):
            material = material.encode('utf-8')
        if not isinstance(material, (bytes, bytearray)) or not material:
            raise KeyResolutionError(f"The {what} source for {config.name} returned no usable bytes")
        return bytes(material)
