"""
Django settings for the retail back-office coupon engine - Base Configuration
"""

import os
from pathlib import Path
from typing import Any

# ===============================================================================
# CORE DJANGO SETTINGS
# ===============================================================================

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# Application definition
DJANGO_APPS: list[str] = [
    'django.contrib.auth',
    'django.contrib.contenttypes',
]

THIRD_PARTY_APPS: list[str] = [
    'django_q',  # ⚙️ Background tasks (code distribution, expiry)
]

LOCAL_APPS: list[str] = [
    'apps.coupons',  # 🎟️ Coupon definitions, codes, redemptions
]

INSTALLED_APPS: list[str] = DJANGO_APPS + THIRD_PARTY_APPS + LOCAL_APPS

MIDDLEWARE: list[str] = []

ROOT_URLCONF = 'config.urls'

ASGI_APPLICATION = 'config.asgi.application'

# ===============================================================================
# DATABASE CONFIGURATION
# ===============================================================================

DATABASES: dict[str, dict[str, Any]] = {
    'default': {
        'ENGINE': 'django.db.backends.postgresql',
        'NAME': os.environ.get('DB_NAME', 'retail_coupons'),
        'USER': os.environ.get('DB_USER', 'retail'),
        'PASSWORD': os.environ.get('DB_PASSWORD', 'development_password'),
        'HOST': os.environ.get('DB_HOST', 'localhost'),
        'PORT': os.environ.get('DB_PORT', '5432'),
        'CONN_MAX_AGE': 60,  # Database connection pooling
        'OPTIONS': {
            'application_name': 'retail_coupons',
        },
    }
}

# ===============================================================================
# INTERNATIONALIZATION & LOCALIZATION
# ===============================================================================

LANGUAGE_CODE = 'en-in'
TIME_ZONE = 'Asia/Kolkata'
USE_I18N = True
USE_TZ = True

# ===============================================================================
# CACHE CONFIGURATION
# ===============================================================================

# Cache version for invalidation (increment to invalidate all caches)
CACHE_VERSION = int(os.environ.get('CACHE_VERSION', '1'))

REDIS_URL = os.environ.get('REDIS_URL')

CACHES: dict[str, dict[str, Any]] = {
    'default': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'retail-default',
    },
    # Coupon/code snapshots read by validation. Bounded: LRU cull past MAX_ENTRIES.
    'coupons': {
        'BACKEND': 'django.core.cache.backends.locmem.LocMemCache',
        'LOCATION': 'retail-coupons',
        'TIMEOUT': 300,
        'OPTIONS': {
            'MAX_ENTRIES': 10000,
            'CULL_FREQUENCY': 4,
        },
    },
}

if REDIS_URL:
    CACHES['coupons'] = {
        'BACKEND': 'django.core.cache.backends.redis.RedisCache',
        'LOCATION': REDIS_URL,
        'KEY_PREFIX': 'coupons',
        'TIMEOUT': 300,
    }

# ===============================================================================
# COUPON ENGINE
# ===============================================================================

COUPONS: dict[str, Any] = {
    'CATALOG_BACKEND': os.environ.get('COUPONS_CATALOG_BACKEND', 'apps.coupons.collaborators.StaticPriceCatalog'),
    'CATALOG_URL': os.environ.get('COUPONS_CATALOG_URL', ''),
    'CATALOG_TIMEOUT': float(os.environ.get('COUPONS_CATALOG_TIMEOUT', '2')),
    'SNAPSHOT_CACHE_ALIAS': 'coupons',
    'SNAPSHOT_CACHE_TIMEOUT': 300,
    'CODE_LENGTH': 8,
    'CODE_GENERATION_MAX_WORKERS': int(os.environ.get('COUPONS_CODE_WORKERS', '4')),
    'EXPIRY_WARNING_DAYS': 3,
    'CURRENCY_SYMBOL': '₹',
}

# ===============================================================================
# DJANGO-Q2 TASK QUEUE
# ===============================================================================

Q_CLUSTER_BASE = {
    "name": "retail-coupons",
    "timeout": 120,  # 2 minutes
    "retry": 300,  # 5 minutes retry delay
    "save_limit": 1000,  # Keep last 1000 task results
    "catch_up": False,  # Don't run missed scheduled tasks
    "orm": "default",  # Use the database as broker
    "bulk": 10,  # Process 10 jobs at once
    "queue_limit": 100,  # Max 100 jobs in queue
}

Q_CLUSTER = {
    **Q_CLUSTER_BASE,
    "workers": 2,
    "recycle": 500,  # Restart workers after 500 tasks
    "sync": False,  # Async execution
}

# ===============================================================================
# DEFAULT AUTO FIELD
# ===============================================================================

DEFAULT_AUTO_FIELD = 'django.db.models.BigAutoField'

# ===============================================================================
# SECURITY SETTINGS
# ===============================================================================

SECRET_KEY = os.environ.get('DJANGO_SECRET_KEY')
if not SECRET_KEY:
    # Development fallback - never use this in production
    import warnings
    warnings.warn(
        "🚨 SECURITY WARNING: Using default SECRET_KEY. "
        "Set DJANGO_SECRET_KEY environment variable for production!",
        UserWarning,
        stacklevel=2
    )
    SECRET_KEY = 'django-insecure-dev-key-only-change-in-production-or-tests'  # noqa: S105
