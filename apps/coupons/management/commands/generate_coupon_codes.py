"""
Issue a batch of coupon codes from the command line.
"""

from __future__ import annotations

from typing import Any

from django.core.management.base import BaseCommand, CommandError

from apps.coupons.exceptions import CouponError
from apps.coupons.models import CodeDistribution
from apps.coupons.services import CouponCodeService


class Command(BaseCommand):
    """🎟️ Generate unique coupon codes for a coupon"""

    help = "Generate a batch of globally unique codes for a coupon"

    def add_arguments(self, parser: Any) -> None:
        parser.add_argument("coupon_id", help="Coupon business id, e.g. CPN-20260101-AB12CD")
        parser.add_argument("--count", type=int, required=True, help="Number of codes to generate")
        parser.add_argument("--prefix", default=None, help="Code prefix (default: the coupon's prefix)")
        parser.add_argument("--length", type=int, default=None, help="Length of the random part")
        parser.add_argument(
            "--distribution",
            choices=[d.value for d in CodeDistribution],
            default=CodeDistribution.BULK.value,
            help="Distribution type (default: BULK)",
        )
        parser.add_argument("--max-uses", type=int, default=1, help="Uses allowed per code (default: 1)")
        parser.add_argument("--batch-id", default=None, help="Batch identifier (generated when omitted)")
        parser.add_argument("--print", action="store_true", dest="print_codes", help="Print the generated codes")

    def handle(self, *args: Any, **options: Any) -> None:
        try:
            batch = CouponCodeService.generate_bulk_codes(
                options["coupon_id"],
                options["count"],
                prefix=options["prefix"],
                length=options["length"],
                distribution=CodeDistribution(options["distribution"]),
                batch_id=options["batch_id"],
                max_uses=options["max_uses"],
                actor_id="manage.py",
            )
        except (CouponError, ValueError) as e:
            raise CommandError(str(e)) from e

        if options["print_codes"]:
            for code in batch.codes:
                self.stdout.write(code)

        self.stdout.write(
            self.style.SUCCESS(
                f"✅ Generated {len(batch.codes)} codes for {batch.coupon_id} "
                f"(batch {batch.batch_id}, {batch.attempts} attempts)"
            )
        )
