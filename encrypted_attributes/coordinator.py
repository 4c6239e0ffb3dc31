"""
Attribute coordinator.

Holds the declared configs for one host type and drives the deriver and
codec for each read and write. It keeps no other state; keys are resolved
on every call.
"""

import logging
from typing import Any, Dict, Iterator, List, Optional

from .codec import AttributeCodec, EncryptedField
from .config import AttributeConfig
from .exceptions import EncryptionConfigurationError
from .keys import KeyMaterialDeriver
from .utils import decode_salt, is_empty

logger = logging.getLogger(__name__)


class AttributeCoordinator:
    """Registry of encrypted attributes and entry point for their reads and writes."""

    def __init__(self, deriver: Optional[KeyMaterialDeriver] = None,
                 codec: Optional[AttributeCodec] = None):
        self.deriver = deriver or KeyMaterialDeriver()
        self.codec = codec or AttributeCodec()
        self._configs: Dict[str, AttributeConfig] = {}

    def declare(self, name: str, **options) -> AttributeConfig:
        """
        Declare an encrypted attribute.

        Declaring the same name again with identical options returns the
        existing config; different options are rejected.

        Raises:
            EncryptionConfigurationError: If the options are invalid or
                conflict with an earlier declaration
        """
        config = AttributeConfig.build(name, **options)

        existing = self._configs.get(name)
        if existing is not None:
            if existing != config:
                raise EncryptionConfigurationError(
                    f"Attribute {name} is already declared with different options"
                )
            return existing

        self._configs[name] = config
        logger.debug(f"Declared encrypted attribute {name} ({config.mode.value}, {config.algorithm})")
        return config

    def config(self, name: str) -> AttributeConfig:
        try:
            return self._configs[name]
        except KeyError:
            raise EncryptionConfigurationError(f"Attribute {name} is not declared")

    @property
    def names(self) -> List[str]:
        return list(self._configs)

    def __contains__(self, name: str) -> bool:
        return name in self._configs

    def __iter__(self) -> Iterator[AttributeConfig]:
        return iter(self._configs.values())

    def write(self, name: str, plaintext: Any, host: Any = None) -> EncryptedField:
        """
        Encrypt a value for an attribute.

        Empty values produce the empty triple without resolving any key.
        """
        config = self.config(name)
        if is_empty(plaintext):
            return EncryptedField.empty()

        material = self.deriver.resolve(config, generate_salt=True, host=host)
        return self.codec.encrypt(config, plaintext, material.key, iv=material.iv, salt=material.salt)

    def read(self, name: str, field: Optional[EncryptedField], host: Any = None) -> Any:
        """
        Decrypt the stored triple of an attribute.

        Returns None for an empty triple without resolving any key.
        """
        config = self.config(name)
        if field is None or field.is_empty:
            return None

        self.codec.validate_field(config, field)
        stored_salt = decode_salt(field.encrypted_salt) if config.mode.uses_salt else None
        material = self.deriver.resolve(config, stored_salt=stored_salt, host=host)
        return self.codec.decrypt(config, field, material.key, iv=material.iv)
