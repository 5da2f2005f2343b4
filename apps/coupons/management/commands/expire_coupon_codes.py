"""
Expire coupon codes whose own expiry has passed.
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand

from apps.coupons.services import CouponCodeService
from apps.coupons.tasks import expire_coupon_codes_async


class Command(BaseCommand):
    """⏰ Mark past-expiry coupon codes as EXPIRED"""

    help = "Mark ISSUED coupon codes past their expiry as EXPIRED"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument("--async", action="store_true", dest="run_async", help="Queue the run on Django-Q")

    def handle(self, *args: Any, **options: Any) -> None:
        if options["run_async"]:
            task_id = expire_coupon_codes_async()
            self.stdout.write(f"Queued coupon code expiry task {task_id}")
            return

        expired = CouponCodeService.expire_codes()
        self.stdout.write(self.style.SUCCESS(f"✅ Expired {expired} coupon codes"))
