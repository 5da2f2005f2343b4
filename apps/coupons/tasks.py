"""
Coupon background tasks.

Django-Q2 tasks for delivering assigned codes to customers and expiring
codes past their own expiry. Neither is on the apply path.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any

from django_q.tasks import async_task

from .collaborators import get_notification_gateway
from .services import CouponCodeService

if TYPE_CHECKING:
    from .services import CodeAssignment

logger = logging.getLogger(__name__)

# Task configuration
TASK_TIME_LIMIT = 120  # 2 minutes


def deliver_coupon_code(customer_id: str, code: str, coupon_name: str, channel: str = "") -> dict[str, Any]:
    """
    Send one assigned code to its customer through the notification gateway.

    Returns:
        Dictionary with the delivery outcome
    """
    try:
        get_notification_gateway().deliver(customer_id, code, coupon_name, channel)
    except Exception as e:
        logger.exception("Coupon code delivery failed for customer %s: %s", customer_id, e)
        return {"success": False, "customer_id": customer_id, "error": str(e)}
    return {"success": True, "customer_id": customer_id}


def expire_coupon_codes() -> dict[str, Any]:
    """Mark ISSUED codes whose expiry has passed as EXPIRED."""
    expired = CouponCodeService.expire_codes()
    logger.info("Coupon code expiry run finished: %d expired", expired)
    return {"success": True, "expired": expired}


# ===============================================================================
# TASK QUEUE WRAPPER FUNCTIONS
# ===============================================================================


def queue_code_distribution(assignments: Iterable[CodeAssignment], coupon_name: str, channel: str = "") -> list[str]:
    """Queue one delivery task per assigned code. Returns the task ids."""
    task_ids = [
        async_task(
            "apps.coupons.tasks.deliver_coupon_code",
            assignment.customer_id,
            assignment.code,
            coupon_name,
            channel,
            task_name=f"deliver_coupon_{assignment.code}",
            timeout=TASK_TIME_LIMIT,
        )
        for assignment in assignments
    ]
    logger.info("Queued %d coupon code deliveries for %s", len(task_ids), coupon_name)
    return task_ids


def expire_coupon_codes_async() -> str:
    """Queue the code expiry task."""
    return async_task("apps.coupons.tasks.expire_coupon_codes", timeout=TASK_TIME_LIMIT)
