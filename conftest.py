"""
Test configuration for encrypted-attributes
"""

import os

import django

# Configure Django settings for tests
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'test_settings')


def pytest_configure():
    django.setup()
