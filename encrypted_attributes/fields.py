"""
Host binding for encrypted attributes.

``EncryptedAttribute`` is a descriptor that exposes a logical value on a host
class while storing only its encrypted slots::

    class Pet(models.Model):
        encrypted_attribute_options = {'marshal': True}

        nickname = EncryptedAttribute(key=nickname_key)

Reading ``pet.nickname`` decrypts ``encrypted_nickname``,
``encrypted_nickname_iv`` and ``encrypted_nickname_salt``; assigning it
re-encrypts and replaces all three. It works on plain classes as well as on
Django models, where missing slot fields are added as text fields.
On models the logical value can also be passed to the constructor:
``Pet(name="Fido", nickname="Fido the Dog")``.
"""

import logging
from dataclasses import astuple
from typing import Dict, Optional, Tuple

from django.db import models
from django.db.models.signals import class_prepared

from .codec import EncryptedField
from .config import AttributeConfig
from .coordinator import AttributeCoordinator

logger = logging.getLogger(__name__)

COORDINATOR_ATTRIBUTE = '_encrypted_attributes'
HOST_OPTIONS_ATTRIBUTE = 'encrypted_attribute_options'


def get_coordinator(cls) -> AttributeCoordinator:
    """Get (creating if needed) the coordinator owned by ``cls`` itself."""
    coordinator = cls.__dict__.get(COORDINATOR_ATTRIBUTE)
    if coordinator is None:
        coordinator = AttributeCoordinator()
        setattr(cls, COORDINATOR_ATTRIBUTE, coordinator)
    return coordinator


def encrypted_attributes(cls_or_instance) -> Dict[str, AttributeConfig]:
    """
    List the encrypted attributes of a host class, including inherited ones.

    Returns:
        Mapping of attribute name to its config
    """
    cls = cls_or_instance if isinstance(cls_or_instance, type) else type(cls_or_instance)
    result: Dict[str, AttributeConfig] = {}
    for klass in reversed(cls.__mro__):
        coordinator = klass.__dict__.get(COORDINATOR_ATTRIBUTE)
        if coordinator is not None:
            result.update((config.name, config) for config in coordinator)
    return result


class EncryptedAttribute(property):
    """
    Descriptor for an encrypted attribute.

    It subclasses ``property`` so Django model constructors and
    ``objects.create()`` accept the logical name as a keyword argument.

    Args:
        prefix: Prefix of the storage slot names (default ``encrypted_``)
        suffix: Suffix of the value slot name (default empty)
        **options: Attribute options (``key``, ``mode``, ``algorithm``,
            ``marshal``, ...), applied over the host class's
            ``encrypted_attribute_options`` and the settings defaults
    """

    def __init__(self, prefix: str = 'encrypted_', suffix: str = '', **options):
        self.prefix = prefix
        self.suffix = suffix
        self.options = options
        self.name: Optional[str] = None
        self.coordinator: Optional[AttributeCoordinator] = None

    @property
    def storage_names(self) -> Tuple[str, str, str]:
        """Names of the value, IV and salt slots."""
        base = f"{self.prefix}{self.name}{self.suffix}"
        return base, f"{base}_iv", f"{base}_salt"

    @property
    def config(self) -> AttributeConfig:
        return self.coordinator.config(self.name)

    def __set_name__(self, owner, name):
        self._bind(owner, name)

    def contribute_to_class(self, cls, name, **kwargs):
        """
        Register with a Django model class.

        Slot fields the model does not declare are added once the class is
        prepared, so explicit slot fields may appear anywhere in the body.
        """
        self._bind(cls, name)
        setattr(cls, name, self)

        if cls._meta.abstract:
            self._add_storage_fields(cls)
        else:
            class_prepared.connect(
                self._on_class_prepared,
                sender=cls,
                weak=False,
                dispatch_uid=f"encrypted_attributes:{id(cls)}:{name}",
            )

    def _on_class_prepared(self, sender, **kwargs):
        self._add_storage_fields(sender)

    def _slots_in_use(self) -> Tuple[bool, bool, bool]:
        mode = self.config.mode
        return True, mode.uses_stored_iv, mode.uses_salt

    def _add_storage_fields(self, cls):
        existing = {field.name for field in cls._meta.local_fields}
        for slot, in_use in zip(self.storage_names, self._slots_in_use()):
            if not in_use or slot in existing:
                continue
            field = models.TextField(null=True, blank=True, editable=False)
            cls.add_to_class(slot, field)
            logger.debug(f"Added storage field {cls.__name__}.{slot}")

    def _bind(self, owner, name):
        self.name = name
        self.coordinator = get_coordinator(owner)

        options = dict(getattr(owner, HOST_OPTIONS_ATTRIBUTE, None) or {})
        options.update(self.options)
        self.coordinator.declare(name, **options)

    def __get__(self, instance, owner=None):
        if instance is None:
            return self

        value_slot, iv_slot, salt_slot = self.storage_names
        field = EncryptedField(
            encrypted_value=getattr(instance, value_slot, None),
            encrypted_iv=getattr(instance, iv_slot, None),
            encrypted_salt=getattr(instance, salt_slot, None),
        )
        return self.coordinator.read(self.name, field, host=instance)

    def __set__(self, instance, value):
        field = self.coordinator.write(self.name, value, host=instance)

        for slot, text, in_use in zip(self.storage_names, astuple(field), self._slots_in_use()):
            if in_use or hasattr(instance, slot):
                setattr(instance, slot, text)

    def __repr__(self):
        return f"<{self.__class__.__name__}: {self.name}>"
