"""
Development settings for the retail back-office coupon engine
"""

import logging
import os

from .base import *  # noqa: F403

DEBUG = True
ALLOWED_HOSTS = ['localhost', '127.0.0.1']

# ===============================================================================
# DATABASE (SQLite unless DB_ENGINE says otherwise)
# ===============================================================================

if os.environ.get('DB_ENGINE', 'sqlite') == 'sqlite':
    DATABASES = {
        'default': {
            'ENGINE': 'django.db.backends.sqlite3',
            'NAME': BASE_DIR / 'db.sqlite3',  # noqa: F405
        }
    }

# ===============================================================================
# COUPON ENGINE (sample catalog for local work)
# ===============================================================================

COUPONS = {
    **COUPONS,  # noqa: F405
    'STATIC_CATALOG_PRICES': {
        'GIFT-TOTE': '499.00',
        'GIFT-POUCH': '199.00',
    },
}

# ===============================================================================
# DJANGO-Q2 (run tasks inline while developing)
# ===============================================================================

Q_CLUSTER = {
    **Q_CLUSTER_BASE,  # noqa: F405
    "workers": 1,
    "sync": os.environ.get('Q_SYNC', 'true').lower() == 'true',
}

# ===============================================================================
# LOGGING CONFIGURATION
# ===============================================================================


class _ServiceNameFilter(logging.Filter):
    """Inject a fixed service tag into every log record (dev-only)."""

    def __init__(self, service_name: str = "CPN") -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        setattr(record, "service_name", self.service_name)  # noqa: B010
        return True


LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "unified": {
            "()": "colorlog.ColoredFormatter",
            "format": "{asctime} {log_color}{levelname:<8}{reset} {service_name} {name:<40} {message}",
            "datefmt": "%Y-%m-%d %H:%M:%S",
            "style": "{",
            "log_colors": {
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        },
    },
    "filters": {
        "add_service_name": {
            "()": _ServiceNameFilter,
            "service_name": "CPN",
        },
    },
    "handlers": {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "unified",
            "filters": ["add_service_name"],
        },
    },
    "root": {
        "handlers": ["console"],
        "level": "INFO",
    },
    "loggers": {
        "django": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "django_q": {
            "handlers": ["console"],
            "level": "INFO",
            "propagate": False,
        },
        "apps": {
            "handlers": ["console"],
            "level": os.environ.get('APPS_LOG_LEVEL', 'DEBUG'),
            "propagate": False,
        },
    },
}
