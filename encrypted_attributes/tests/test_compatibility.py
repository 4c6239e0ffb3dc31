"""
Backwards compatibility tests.

The stored values below were written by earlier versions of the engine.
They must keep decrypting to the same values so that existing databases
survive upgrades.
"""

import hashlib
from datetime import date

from django.db import models
from django.test import SimpleTestCase

from encrypted_attributes.backends import encrypt_bytes
from encrypted_attributes.fields import EncryptedAttribute

PET_NICKNAME_SALT = hashlib.sha256(b'my-really-really-secret-pet-nickname-salt').hexdigest()
PET_NICKNAME_KEY = 'my-really-really-secret-pet-nickname-key'
PET_BIRTHDATE_SALT = hashlib.sha256(b'my-really-really-secret-pet-birthdate-salt').hexdigest()
PET_BIRTHDATE_KEY = 'my-really-really-secret-pet-birthdate-key'

LEGACY_OPTIONS = {
    'mode': 'per_attribute_iv_and_salt',
    'algorithm': 'aes-256-cbc',
    'insecure_mode': True,
}


def nickname_key():
    return encrypt_bytes(PET_NICKNAME_SALT, key=PET_NICKNAME_KEY, insecure_mode=True, algorithm='aes-256-cbc')


def birthdate_key():
    return encrypt_bytes(PET_BIRTHDATE_SALT, key=PET_BIRTHDATE_KEY, insecure_mode=True, algorithm='aes-256-cbc')


class NonmarshallingPet(models.Model):
    encrypted_attribute_options = LEGACY_OPTIONS

    name = models.CharField(max_length=255)
    encrypted_nickname = models.CharField(max_length=255, null=True)
    encrypted_nickname_iv = models.CharField(max_length=255, null=True)
    encrypted_nickname_salt = models.CharField(max_length=255, null=True)
    encrypted_birthdate = models.CharField(max_length=255, null=True)
    encrypted_birthdate_iv = models.CharField(max_length=255, null=True)
    encrypted_birthdate_salt = models.CharField(max_length=255, null=True)

    nickname = EncryptedAttribute(key=nickname_key)
    birthdate = EncryptedAttribute(key=birthdate_key)

    class Meta:
        app_label = 'encrypted_attributes_tests'


class MarshallingPet(models.Model):
    encrypted_attribute_options = LEGACY_OPTIONS

    name = models.CharField(max_length=255)
    encrypted_nickname = models.CharField(max_length=255, null=True)
    encrypted_nickname_iv = models.CharField(max_length=255, null=True)
    encrypted_nickname_salt = models.CharField(max_length=255, null=True)
    encrypted_birthdate = models.CharField(max_length=255, null=True)
    encrypted_birthdate_iv = models.CharField(max_length=255, null=True)
    encrypted_birthdate_salt = models.CharField(max_length=255, null=True)

    nickname = EncryptedAttribute(key=nickname_key, marshal=True)
    birthdate = EncryptedAttribute(key=birthdate_key, marshal=True)

    class Meta:
        app_label = 'encrypted_attributes_tests'


class CompatibilityTestCase(SimpleTestCase):
    """Values written by earlier versions still decrypt."""

    def test_nonmarshalling_backwards_compatibility(self):
        pet = NonmarshallingPet(
            name='Fido',
            encrypted_nickname='E4lJTxFG/EfkfPg5MpnriQ==',
            encrypted_nickname_iv='z4Q8deE4h7f6S8NNZcbPNg==',
            encrypted_nickname_salt='adcd833001a873db',
            encrypted_birthdate='6uKEAiFVdJw+N5El+U6Gow==',
            encrypted_birthdate_iv='zxtc1XPssL4s2HwA69nORQ==',
            encrypted_birthdate_salt='4f879270045eaad7',
        )

        self.assertEqual(pet.name, 'Fido')
        self.assertEqual(pet.nickname, 'Fido the Dog')
        self.assertEqual(pet.birthdate, '2011-07-09')

    def test_marshalling_backwards_compatibility(self):
        pet = MarshallingPet(
            name='Fido',
            encrypted_nickname='EsQScJYkPw80vVGvKWkE37Px99HHpXPFjoEPTNa4rbs=',
            encrypted_nickname_iv='fNq1OZcGvty4KfcvGTcFSw==',
            encrypted_nickname_salt='733b459b7d34c217',
            encrypted_birthdate='+VUlKQGfNWkOgCwI4hv+3qlGIwh9h6cJ/ranJlaxvU+xxQdL3H3cOzTcI2rkYkdR',
            encrypted_birthdate_iv='Ka+zF/SwEYZKwVa24lvFfA==',
            encrypted_birthdate_salt='d5e892d5bbd81566',
        )

        self.assertEqual(pet.name, 'Fido')
        self.assertEqual(pet.nickname, "Mummy's little helper")
        self.assertEqual(pet.birthdate, date(2011, 7, 9))

    def test_legacy_key_material(self):
        # The key procs yield the 80-byte ciphertext of a 64-character digest
        self.assertEqual(len(nickname_key()), 80)
        self.assertEqual(nickname_key(), nickname_key())
        self.assertNotEqual(nickname_key(), birthdate_key())

    def test_rewrite_uses_current_salt_format(self):
        pet = MarshallingPet(
            name='Fido',
            encrypted_nickname='EsQScJYkPw80vVGvKWkE37Px99HHpXPFjoEPTNa4rbs=',
            encrypted_nickname_iv='fNq1OZcGvty4KfcvGTcFSw==',
            encrypted_nickname_salt='733b459b7d34c217',
        )

        pet.nickname = pet.nickname

        self.assertTrue(pet.encrypted_nickname_salt.startswith('_'))
        self.assertNotEqual(pet.encrypted_nickname, 'EsQScJYkPw80vVGvKWkE37Px99HHpXPFjoEPTNa4rbs=')
        self.assertEqual(pet.nickname, "Mummy's little helper")

    def test_mass_assignment_round_trip(self):
        pet = MarshallingPet(name='Fido', nickname="Mummy's little helper", birthdate=date(2011, 7, 9))

        self.assertTrue(pet.encrypted_birthdate_salt.startswith('_'))
        self.assertEqual(pet.nickname, "Mummy's little helper")
        self.assertEqual(pet.birthdate, date(2011, 7, 9))
