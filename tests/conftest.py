# ===============================================================================
# PYTEST CONFIGURATION FOR THE COUPON ENGINE
# ===============================================================================
"""
Global test configuration.

Test Structure:
- tests/ mirrors apps/ structure for app-specific tests
- tests/factories/ holds plain factory functions for test data
- Naming convention: test_{app}_{feature}.py

Run all tests: pytest tests/
"""

import os

import django


def pytest_configure():
    """Configure Django settings for pytest"""
    os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'config.settings.test')

    # Configure Django
    django.setup()


import pytest  # noqa: E402
from django.core.cache import caches  # noqa: E402


@pytest.fixture(autouse=True)
def clear_coupon_snapshots():
    """Start every test with an empty snapshot cache (locmem outlives DB rollbacks)."""
    caches['coupons'].clear()
    yield
    caches['coupons'].clear()
