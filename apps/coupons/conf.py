"""
Runtime settings for the coupon engine.

All keys live in ``settings.COUPONS`` and are read at call time so tests
can use ``override_settings``.
"""

from __future__ import annotations

from typing import Any

from django.conf import settings

DEFAULTS: dict[str, Any] = {
    "CATALOG_BACKEND": "apps.coupons.collaborators.StaticPriceCatalog",
    "STATIC_CATALOG_PRICES": {},
    "CATALOG_URL": "",
    "CATALOG_TIMEOUT": 2,
    "ORDER_HISTORY_BACKEND": "apps.coupons.collaborators.RedemptionOrderHistory",
    "STORE_DIRECTORY_BACKEND": "apps.coupons.collaborators.OpenStoreDirectory",
    "NOTIFICATION_BACKEND": "apps.coupons.collaborators.LoggingNotificationGateway",
    "SNAPSHOT_CACHE_ALIAS": "coupons",
    "SNAPSHOT_CACHE_TIMEOUT": 300,
    "CODE_LENGTH": 8,
    "CODE_GENERATION_ATTEMPTS_PER_CODE": 10,
    "CODE_INSERT_RETRIES": 3,
    "CODE_GENERATION_MAX_WORKERS": 4,
    "EXPIRY_WARNING_DAYS": 3,
    "CURRENCY_SYMBOL": "₹",
    "TIME_ZONE": None,  # falls back to settings.TIME_ZONE
}


def coupon_setting(name: str) -> Any:
    """Return one engine setting, falling back to the module default."""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown coupon setting: {name}")
    overrides = getattr(settings, "COUPONS", {}) or {}
    value = overrides.get(name, DEFAULTS[name])
    if name == "TIME_ZONE" and value is None:
        return settings.TIME_ZONE
    return value
