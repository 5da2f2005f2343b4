"""
Snapshot cache for coupon and code configuration.

Validation reads ``CodeState`` / ``CouponPolicy`` snapshots through this
cache. Entries expire after ``SNAPSHOT_CACHE_TIMEOUT`` and are dropped
explicitly whenever a coupon or code changes.
"""

from __future__ import annotations

import logging

from apps.common.cache import CacheService

from .conf import coupon_setting
from .models import Coupon, CouponCode
from .policy import CodeState, CouponPolicy

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    """Normalize a coupon code for lookup."""
    return (code or "").upper().strip()


def code_key(code: str) -> str:
    return f"code:{normalize_code(code)}"


def policy_key(coupon_pk: int) -> str:
    return f"policy:{coupon_pk}"


class CouponSnapshotCache:
    """Read-through cache of code and coupon snapshots."""

    def __init__(self) -> None:
        self.cache = CacheService(coupon_setting("SNAPSHOT_CACHE_ALIAS"), namespace="coupons")
        self.timeout = coupon_setting("SNAPSHOT_CACHE_TIMEOUT")

    def get_code(self, code: str) -> CodeState | None:
        return self.cache.get_or_set(code_key(code), lambda: load_code(code), self.timeout)

    def get_policy(self, coupon_pk: int) -> CouponPolicy | None:
        return self.cache.get_or_set(policy_key(coupon_pk), lambda: load_policy(coupon_pk), self.timeout)

    def invalidate_codes(self, codes: list[str]) -> None:
        self.cache.delete_many([code_key(code) for code in codes])

    def invalidate_policy(self, coupon_pk: int) -> None:
        self.cache.delete(policy_key(coupon_pk))

    def invalidate_coupon(self, coupon_pk: int) -> None:
        """Drop the coupon's policy and every one of its codes."""
        codes = list(CouponCode.objects.filter(coupon_id=coupon_pk).values_list("code", flat=True))
        self.invalidate_policy(coupon_pk)
        self.invalidate_codes(codes)
        logger.debug("Invalidated coupon %s snapshot and %d codes", coupon_pk, len(codes))


def load_code(code: str) -> CodeState | None:
    """Read a code snapshot straight from the database."""
    instance = CouponCode.objects.filter(code=normalize_code(code)).first()
    return CodeState.from_model(instance) if instance else None


def load_policy(coupon_pk: int) -> CouponPolicy | None:
    """Read a coupon snapshot straight from the database."""
    instance = Coupon.objects.filter(pk=coupon_pk).first()
    return CouponPolicy.from_model(instance) if instance else None


def get_snapshot_cache() -> CouponSnapshotCache:
    return CouponSnapshotCache()
