"""
Unit tests for key sources and key material derivation.
"""

from django.test import SimpleTestCase

from encrypted_attributes.backends import evp_bytes_to_key, stretch_key
from encrypted_attributes.config import AttributeConfig
from encrypted_attributes.exceptions import EncryptionConfigurationError, KeyResolutionError
from encrypted_attributes.keys import (
    CallableKeySource,
    KeyMaterialDeriver,
    MethodKeySource,
    RandomKeySource,
    StaticKeySource,
    as_key_source,
)

KEY_32 = 'k' * 32


class Host:

    def __init__(self, secret):
        self.secret = secret

    def key_for_pet(self):
        return self.secret


class KeySourceTestCase(SimpleTestCase):
    """Test the key source variants."""

    def test_static_source(self):
        self.assertEqual(StaticKeySource('sécret').resolve(), 'sécret'.encode('utf-8'))
        self.assertEqual(StaticKeySource(b'raw').resolve(), b'raw')

    def test_static_source_repr_hides_key(self):
        self.assertNotIn('hunter2', repr(StaticKeySource('hunter2')))

    def test_callable_source_is_called_every_time(self):
        calls = []

        def key():
            calls.append(1)
            return KEY_32

        source = CallableKeySource(key)
        source.resolve()
        source.resolve()

        self.assertEqual(len(calls), 2)

    def test_callable_source_receives_host(self):
        source = CallableKeySource(lambda host: host.secret)
        self.assertTrue(source.takes_host)
        self.assertEqual(source.resolve(Host('abc')), 'abc')

    def test_callable_with_optional_argument_gets_no_host(self):
        source = CallableKeySource(lambda suffix='x': 'key-' + suffix)
        self.assertFalse(source.takes_host)
        self.assertEqual(source.resolve(Host('abc')), 'key-x')

    def test_method_source(self):
        self.assertEqual(MethodKeySource('key_for_pet').resolve(Host('abc')), 'abc')
        self.assertEqual(MethodKeySource('secret').resolve(Host('plain')), 'plain')

    def test_method_source_needs_host(self):
        with self.assertRaises(KeyResolutionError):
            MethodKeySource('key_for_pet').resolve()

    def test_random_source(self):
        source = RandomKeySource(16)
        first, second = source.resolve(), source.resolve()
        self.assertEqual(len(first), 16)
        self.assertNotEqual(first, second)

    def test_as_key_source(self):
        def key():
            return KEY_32

        static = StaticKeySource('x')
        self.assertIs(as_key_source(static), static)
        self.assertEqual(as_key_source('x'), StaticKeySource('x'))
        self.assertEqual(as_key_source(bytearray(b'x')), StaticKeySource(b'x'))
        self.assertEqual(as_key_source(key), CallableKeySource(key))

        with self.assertRaises(EncryptionConfigurationError):
            as_key_source(42)


class KeyMaterialDeriverTestCase(SimpleTestCase):
    """Test key derivation for each mode."""

    def setUp(self):
        self.deriver = KeyMaterialDeriver()

    def test_per_attribute_iv_uses_key_verbatim(self):
        config = AttributeConfig.build('ssn', key=KEY_32, mode='per_attribute_iv')

        material = self.deriver.resolve(config, generate_salt=True)

        self.assertEqual(material.key, KEY_32.encode())
        self.assertIsNone(material.salt)
        self.assertIsNone(material.iv)

    def test_per_attribute_iv_rejects_wrong_key_length(self):
        for key in ('k' * 31, 'k' * 33):
            with self.subTest(length=len(key)):
                config = AttributeConfig.build('ssn', key=key, mode='per_attribute_iv')
                with self.assertRaises(KeyResolutionError):
                    self.deriver.resolve(config)

    def test_salted_mode_generates_salt(self):
        config = AttributeConfig.build('ssn', key=KEY_32)

        first = self.deriver.resolve(config, generate_salt=True)
        second = self.deriver.resolve(config, generate_salt=True)

        self.assertEqual(len(first.salt), 16)
        self.assertNotEqual(first.salt, second.salt)
        self.assertNotEqual(first.key, second.key)
        self.assertEqual(first.key, stretch_key(KEY_32.encode(), first.salt, 2000, 32))

    def test_salted_mode_reuses_stored_salt(self):
        config = AttributeConfig.build('ssn', key=KEY_32)
        written = self.deriver.resolve(config, generate_salt=True)

        read = self.deriver.resolve(config, stored_salt=written.salt)

        self.assertEqual(read.key, written.key)
        self.assertEqual(read.salt, written.salt)

    def test_salted_mode_needs_stored_salt(self):
        config = AttributeConfig.build('ssn', key=KEY_32)
        with self.assertRaises(KeyResolutionError):
            self.deriver.resolve(config)

    def test_custom_salt_source(self):
        config = AttributeConfig.build('ssn', key=KEY_32, salt=lambda: 'a fixed salt value')

        material = self.deriver.resolve(config, generate_salt=True)

        self.assertEqual(material.salt, b'a fixed salt value')

    def test_strength_checks(self):
        short_key = AttributeConfig.build('ssn', key='short')
        with self.assertRaises(KeyResolutionError):
            self.deriver.resolve(config=short_key, generate_salt=True)

        short_salt = AttributeConfig.build('ssn', key=KEY_32, salt='tiny')
        with self.assertRaises(KeyResolutionError):
            self.deriver.resolve(short_salt, generate_salt=True)

    def test_insecure_mode_skips_strength_checks(self):
        config = AttributeConfig.build('ssn', key='short', salt='tiny', insecure_mode=True)

        material = self.deriver.resolve(config, generate_salt=True)

        self.assertEqual(material.key, stretch_key(b'short', b'tiny', 2000, 32))

    def test_hmac_iterations_option(self):
        config = AttributeConfig.build('ssn', key=KEY_32, hmac_iterations=10)
        material = self.deriver.resolve(config, generate_salt=True)
        self.assertEqual(material.key, stretch_key(KEY_32.encode(), material.salt, 10, 32))

    def test_single_mode_derives_implicit_iv(self):
        config = AttributeConfig.build(
            'ssn', key='legacy key', mode='single_iv_and_salt', insecure_mode=True,
        )

        material = self.deriver.resolve(config, generate_salt=True)

        self.assertEqual((material.key, material.iv), evp_bytes_to_key(b'legacy key', 32, 16))
        self.assertIsNone(material.salt)

    def test_failing_source(self):
        def broken():
            raise RuntimeError('vault unavailable')

        config = AttributeConfig.build('ssn', key=broken)

        with self.assertRaises(KeyResolutionError) as context:
            self.deriver.resolve(config, generate_salt=True)
        self.assertIsInstance(context.exception.__cause__, RuntimeError)

    def test_unusable_source_result(self):
        for result in (None, '', b'', 42):
            with self.subTest(result=result):
                config = AttributeConfig.build('ssn', key=lambda: result)
                with self.assertRaises(KeyResolutionError):
                    self.deriver.resolve(config, generate_salt=True)

    def test_host_bound_key(self):
        config = AttributeConfig.build('ssn', key=MethodKeySource('key_for_pet'), mode='per_attribute_iv')
        material = self.deriver.resolve(config, host=Host(KEY_32))
        self.assertEqual(material.key, KEY_32.encode())
