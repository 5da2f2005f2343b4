"""
Signal handlers for the Coupons app.
Keeps the snapshot cache in step with coupon and code changes.

Queryset ``update()`` calls bypass these handlers; the services invalidate
explicitly after them.
"""

from __future__ import annotations

import logging
from typing import Any

from django.db import transaction
from django.db.models.signals import post_save
from django.dispatch import receiver

from .cache import get_snapshot_cache
from .models import Coupon, CouponCode

logger = logging.getLogger(__name__)


@receiver(post_save, sender=Coupon)
def coupon_post_save(sender: type, instance: Coupon, created: bool, **kwargs: Any) -> None:
    """Drop cached policy and code snapshots when a coupon changes."""
    coupon_pk = instance.pk
    if created:
        get_snapshot_cache().invalidate_policy(coupon_pk)
        return
    get_snapshot_cache().invalidate_coupon(coupon_pk)
    # Invalidate again after commit so readers never re-cache the pre-commit state
    transaction.on_commit(lambda: get_snapshot_cache().invalidate_coupon(coupon_pk))


@receiver(post_save, sender=CouponCode)
def coupon_code_post_save(sender: type, instance: CouponCode, created: bool, **kwargs: Any) -> None:
    """Drop the cached snapshot of a changed code."""
    code = instance.code
    get_snapshot_cache().invalidate_codes([code])
    if not created:
        transaction.on_commit(lambda: get_snapshot_cache().invalidate_codes([code]))
