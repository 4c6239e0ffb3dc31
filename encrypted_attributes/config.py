"""
Attribute configuration.

Options are layered: built-in defaults, then ``ENCRYPTED_ATTRIBUTES_DEFAULTS``
from Django settings, then whatever the declaration passes. The result is an
immutable ``AttributeConfig``.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from django.conf import settings

from .backends import DEFAULT_ALGORITHM, DEFAULT_HMAC_ITERATIONS, get_cipher_backend
from .exceptions import EncryptionConfigurationError
from .keys import KeySource, RandomKeySource, as_key_source

DEFAULT_SALT_LENGTH = 16


class Mode(Enum):
    """How IV and salt are obtained for an attribute."""

    SINGLE_IV_AND_SALT = 'single_iv_and_salt'
    PER_ATTRIBUTE_IV = 'per_attribute_iv'
    PER_ATTRIBUTE_IV_AND_SALT = 'per_attribute_iv_and_salt'

    @property
    def uses_stored_iv(self) -> bool:
        return self is not Mode.SINGLE_IV_AND_SALT

    @property
    def uses_salt(self) -> bool:
        return self is Mode.PER_ATTRIBUTE_IV_AND_SALT


DEFAULT_OPTIONS: Dict[str, Any] = {
    'mode': Mode.PER_ATTRIBUTE_IV_AND_SALT,
    'algorithm': DEFAULT_ALGORITHM,
    'marshal': False,
    'insecure_mode': False,
    'hmac_iterations': DEFAULT_HMAC_ITERATIONS,
    'auth_data': b'',
}

OPTION_NAMES = frozenset(DEFAULT_OPTIONS) | {'key', 'salt'}


def get_default_options() -> Dict[str, Any]:
    """Built-in defaults overlaid with ``settings.ENCRYPTED_ATTRIBUTES_DEFAULTS``."""
    options = dict(DEFAULT_OPTIONS)
    if settings.configured:
        overrides = getattr(settings, 'ENCRYPTED_ATTRIBUTES_DEFAULTS', None) or {}
        unknown = set(overrides) - OPTION_NAMES
        if unknown:
            raise EncryptionConfigurationError(
                f"Unknown options in ENCRYPTED_ATTRIBUTES_DEFAULTS: {', '.join(sorted(unknown))}"
            )
        options.update(overrides)
    return options


def _coerce_mode(value: Any) -> Mode:
    if isinstance(value, Mode):
        return value
    try:
        return Mode(str(value))
    except ValueError:
        raise EncryptionConfigurationError(
            f"Unknown mode: {value}. Choose one of: {', '.join(m.value for m in Mode)}"
        )


@dataclass(frozen=True)
class AttributeConfig:
    """Immutable per-attribute encryption settings."""

    name: str
    key_source: KeySource
    mode: Mode = Mode.PER_ATTRIBUTE_IV_AND_SALT
    algorithm: str = DEFAULT_ALGORITHM
    salt_source: Optional[KeySource] = None
    marshal: bool = False
    insecure_mode: bool = False
    hmac_iterations: int = DEFAULT_HMAC_ITERATIONS
    auth_data: bytes = b''

    @property
    def backend(self):
        return get_cipher_backend(self.algorithm)

    @classmethod
    def build(cls, name: str, **options) -> 'AttributeConfig':
        """
        Build a validated config from declaration options.

        Args:
            name: Logical attribute name
            **options: Any of ``key``, ``salt``, ``mode``, ``algorithm``,
                ``marshal``, ``insecure_mode``, ``hmac_iterations``,
                ``auth_data``

        Returns:
            AttributeConfig

        Raises:
            EncryptionConfigurationError: If the options are unknown,
                missing or inconsistent
        """
        unknown = set(options) - OPTION_NAMES
        if unknown:
            raise EncryptionConfigurationError(
                f"Unknown options for attribute {name}: {', '.join(sorted(unknown))}"
            )

        merged = get_default_options()
        merged.update(options)

        mode = _coerce_mode(merged['mode'])
        algorithm = str(merged['algorithm']).lower()
        backend = get_cipher_backend(algorithm)

        if merged.get('key') is None:
            raise EncryptionConfigurationError(f"Attribute {name} needs a key")
        key_source = as_key_source(merged['key'])

        salt = merged.get('salt')
        if mode.uses_salt:
            salt_source = as_key_source(salt) if salt is not None else RandomKeySource(DEFAULT_SALT_LENGTH)
        elif salt is not None:
            raise EncryptionConfigurationError(
                f"Attribute {name}: mode {mode.value} does not use a salt"
            )
        else:
            salt_source = None

        insecure_mode = bool(merged['insecure_mode'])
        if mode is Mode.SINGLE_IV_AND_SALT:
            if not insecure_mode:
                raise EncryptionConfigurationError(
                    f"Attribute {name}: mode {mode.value} derives its IV from the key "
                    f"and requires insecure_mode=True"
                )
            if backend.authenticated:
                raise EncryptionConfigurationError(
                    f"Attribute {name}: mode {mode.value} cannot be used with {algorithm}"
                )

        hmac_iterations = merged['hmac_iterations']
        if not isinstance(hmac_iterations, int) or isinstance(hmac_iterations, bool) or hmac_iterations < 1:
            raise EncryptionConfigurationError(
                f"Attribute {name}: hmac_iterations must be a positive integer"
            )

        auth_data = merged['auth_data'] or b''
        if isinstance(auth_data, str):
            auth_data = auth_data.encode('utf-8')
        if auth_data and not backend.authenticated:
            raise EncryptionConfigurationError(
                f"Attribute {name}: auth_data requires a GCM algorithm"
            )

        return cls(
            name=name,
            key_source=key_source,
            mode=mode,
            algorithm=algorithm,
            salt_source=salt_source,
            marshal=bool(merged['marshal']),
            insecure_mode=insecure_mode,
            hmac_iterations=hmac_iterations,
            auth_data=bytes(auth_data),
        )
