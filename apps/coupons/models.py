"""
Coupon models for the retail back-office platform.

Supports:
- Coupon definitions with a DRAFT → ACTIVE ⇄ PAUSED → ARCHIVED lifecycle
- Discount types: percentage, fixed amount, BOGO, YOPO, free item, shipping
- Product/category/collection targeting with exclusions
- Channel, store, weekday and local-hour restrictions
- Usage limits (per code, per customer, per customer per day, per store per day, global)
- Individually redeemable codes, globally unique
- Redemption ledger with cancel/refund status transitions (never deleted)
"""

from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from enum import StrEnum
from typing import Any, ClassVar

from django.core.exceptions import ValidationError
from django.core.serializers.json import DjangoJSONEncoder
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone
from django.utils.translation import gettext_lazy as _

from .exceptions import CouponError

logger = logging.getLogger(__name__)

# ===============================================================================
# Constants
# ===============================================================================

MONEY_MAX_DIGITS = 12
MONEY_DECIMAL_PLACES = 2
MAX_PERCENT = Decimal("100")
MAX_CODE_LENGTH = 40
MAX_USES_PER_CODE = 1_000_000


class CouponStatus(StrEnum):
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    ARCHIVED = "ARCHIVED"


class DiscountType(StrEnum):
    PERCENT = "PERCENT"
    AMOUNT = "AMOUNT"
    BOGO = "BOGO"
    YOPO = "YOPO"
    FREE_ITEM = "FREE_ITEM"
    SHIPPING_OFF = "SHIPPING_OFF"


class BogoReward(StrEnum):
    FREE = "FREE"
    PERCENTAGE_OFF = "PERCENTAGE_OFF"
    FIXED_PRICE = "FIXED_PRICE"


class YopoPayable(StrEnum):
    HIGHEST = "HIGHEST"
    LOWEST = "LOWEST"


class Channel(StrEnum):
    ECOM = "ECOM"
    POS = "POS"
    TELE = "TELE"
    MOBILE = "MOBILE"


class CodeStatus(StrEnum):
    ISSUED = "ISSUED"
    REDEEMED = "REDEEMED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


class CodeDistribution(StrEnum):
    GENERIC = "GENERIC"
    UNIQUE = "UNIQUE"
    BULK = "BULK"


class RedemptionStatus(StrEnum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    REFUNDED = "REFUNDED"


class CounterScope(StrEnum):
    GLOBAL = "GLOBAL"
    CUSTOMER_TOTAL = "CUSTOMER_TOTAL"
    CUSTOMER_DAILY = "CUSTOMER_DAILY"
    STORE_DAILY = "STORE_DAILY"


def money_field(**kwargs: Any) -> models.DecimalField:
    """Decimal money column in major currency units."""
    kwargs.setdefault("validators", [MinValueValidator(Decimal("0"))])
    return models.DecimalField(max_digits=MONEY_MAX_DIGITS, decimal_places=MONEY_DECIMAL_PLACES, **kwargs)


# ===============================================================================
# Coupon Definition Model
# ===============================================================================


class Coupon(models.Model):
    """
    Reusable discount policy.

    Codes are issued against a coupon; redemptions record each use. Once a
    redemption exists the policy fields are frozen (see POLICY_FIELDS).
    """

    # Fields that define the discount itself. Frozen after the first redemption.
    POLICY_FIELDS: ClassVar[tuple[str, ...]] = (
        "discount_type",
        "percent_off",
        "amount_off",
        "free_item_sku",
        "bogo_x",
        "bogo_y",
        "bogo_reward",
        "bogo_value",
        "yopo_group_size",
        "yopo_payable",
        "max_discount_value",
        "target_products",
        "target_categories",
        "target_collections",
        "exclude_products",
        "min_cart_value",
        "min_qty",
        "payment_methods",
        "first_order_only",
    )

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (CouponStatus.DRAFT, _("Draft")),
        (CouponStatus.ACTIVE, _("Active")),
        (CouponStatus.PAUSED, _("Paused")),
        (CouponStatus.ARCHIVED, _("Archived")),
    )
    DISCOUNT_TYPES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (DiscountType.PERCENT, _("Percentage Discount")),
        (DiscountType.AMOUNT, _("Fixed Amount Discount")),
        (DiscountType.BOGO, _("Buy X Get Y")),
        (DiscountType.YOPO, _("You Only Pay for One")),
        (DiscountType.FREE_ITEM, _("Free Bonus Item")),
        (DiscountType.SHIPPING_OFF, _("Shipping Discount")),
    )
    BOGO_REWARDS: ClassVar[tuple[tuple[str, Any], ...]] = (
        (BogoReward.FREE, _("Free")),
        (BogoReward.PERCENTAGE_OFF, _("Percentage Off")),
        (BogoReward.FIXED_PRICE, _("Fixed Resale Price")),
    )
    YOPO_PAYABLE: ClassVar[tuple[tuple[str, Any], ...]] = (
        (YopoPayable.HIGHEST, _("Highest priced item pays")),
        (YopoPayable.LOWEST, _("Lowest priced item pays")),
    )

    id = models.BigAutoField(primary_key=True)

    # Identification
    coupon_id = models.CharField(
        max_length=64,
        unique=True,
        help_text=_("Business identifier, e.g. CPN-20260101-AB12CD"),
    )
    name = models.CharField(max_length=200, help_text=_("Internal name for this coupon"))
    description = models.TextField(blank=True, help_text=_("Description shown to customers"))

    # Discount type and parameters (interpretation depends on discount_type)
    discount_type = models.CharField(max_length=20, choices=DISCOUNT_TYPES, default=DiscountType.PERCENT)
    percent_off = models.DecimalField(
        max_digits=5,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal("0")), MaxValueValidator(MAX_PERCENT)],
        help_text=_("Percentage discount (0-100]"),
    )
    amount_off = money_field(
        null=True,
        blank=True,
        help_text=_("Fixed discount (AMOUNT) or shipping discount cap (SHIPPING_OFF)"),
    )
    free_item_sku = models.CharField(max_length=64, blank=True, help_text=_("Bonus SKU for FREE_ITEM coupons"))
    bogo_x = models.PositiveIntegerField(null=True, blank=True, help_text=_("BOGO: units per deal group"))
    bogo_y = models.PositiveIntegerField(null=True, blank=True, help_text=_("BOGO: rewarded units per group"))
    bogo_reward = models.CharField(max_length=20, choices=BOGO_REWARDS, default=BogoReward.FREE)
    bogo_value = money_field(
        null=True,
        blank=True,
        help_text=_("BOGO: percent for PERCENTAGE_OFF, resale price for FIXED_PRICE"),
    )
    yopo_group_size = models.PositiveIntegerField(null=True, blank=True, help_text=_("YOPO: items per group"))
    yopo_payable = models.CharField(max_length=10, choices=YOPO_PAYABLE, default=YopoPayable.HIGHEST)

    # Cap on discount
    max_discount_value = money_field(
        null=True,
        blank=True,
        help_text=_("Hard cap on the computed discount (null = no cap)"),
    )

    # Targeting
    target_products = models.JSONField(default=list, blank=True, help_text=_("Eligible SKUs"))
    target_categories = models.JSONField(default=list, blank=True, help_text=_("Eligible categories"))
    target_collections = models.JSONField(default=list, blank=True, help_text=_("Eligible collections"))
    exclude_products = models.JSONField(default=list, blank=True, help_text=_("SKUs that disqualify the cart"))
    min_cart_value = money_field(null=True, blank=True, help_text=_("Minimum cart subtotal"))
    min_qty = models.PositiveIntegerField(null=True, blank=True, help_text=_("Minimum total units in cart"))
    payment_methods = models.JSONField(default=list, blank=True, help_text=_("Allowed payment methods"))
    first_order_only = models.BooleanField(default=False, help_text=_("Only valid for customer's first order"))

    # Where and when
    channels = models.JSONField(default=list, blank=True, help_text=_("Allowed channels (empty = all)"))
    stores = models.JSONField(default=list, blank=True, help_text=_("Allowed store ids (empty = all)"))
    weekdays = models.JSONField(default=list, blank=True, help_text=_("Allowed ISO weekdays 1-7 (empty = all)"))
    hours_start = models.TimeField(null=True, blank=True, help_text=_("Local start of daily window"))
    hours_end = models.TimeField(null=True, blank=True, help_text=_("Local end of daily window"))
    valid_from = models.DateTimeField(null=True, blank=True, help_text=_("When coupon becomes valid"))
    valid_until = models.DateTimeField(null=True, blank=True, help_text=_("When coupon expires"))

    # Limits
    per_customer_limit_total = models.PositiveIntegerField(null=True, blank=True)
    per_customer_limit_daily = models.PositiveIntegerField(null=True, blank=True)
    global_redemption_limit = models.PositiveIntegerField(null=True, blank=True)
    per_store_daily_cap = models.PositiveIntegerField(null=True, blank=True)

    # Stacking
    stack_with_loyalty = models.BooleanField(default=False, help_text=_("Combines with loyalty point burn"))
    stack_with_wallet = models.BooleanField(default=True, help_text=_("Combines with wallet credit"))

    # Code auto-generation policy (applied on activation when no usable code exists)
    auto_code_count = models.PositiveIntegerField(null=True, blank=True)
    code_prefix = models.CharField(max_length=12, blank=True)
    code_length = models.PositiveIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(4), MaxValueValidator(24)],
    )

    # Lifecycle
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default=CouponStatus.DRAFT)
    activated_at = models.DateTimeField(null=True, blank=True)
    archived_at = models.DateTimeField(null=True, blank=True)

    # Metadata
    campaign = models.CharField(max_length=100, blank=True)
    tags = models.JSONField(default=list, blank=True, help_text=_("Tags for filtering and reporting"))
    priority = models.IntegerField(default=0)
    created_by = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupon_definitions"
        verbose_name = _("Coupon")
        verbose_name_plural = _("Coupons")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["status"]),
            models.Index(fields=["valid_from", "valid_until"]),
            models.Index(fields=["campaign"]),
            models.Index(fields=["created_at"]),
        )
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.CheckConstraint(
                condition=Q(valid_from__isnull=True) | Q(valid_until__isnull=True) | Q(valid_from__lt=F("valid_until")),
                name="coupon_validity_window_ordered",
            ),
        )

    def __str__(self) -> str:
        return f"{self.coupon_id} - {self.name}"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize identifiers before saving."""
        if self.coupon_id:
            self.coupon_id = self.coupon_id.upper().strip()
        self.channels = [str(channel).upper().strip() for channel in self.channels or []]
        self.code_prefix = (self.code_prefix or "").upper().strip()
        super().save(*args, **kwargs)

    def clean(self) -> None:
        """Validate parameter ranges. Completeness is checked on activation."""
        super().clean()
        if self.valid_from and self.valid_until and self.valid_from >= self.valid_until:
            raise ValidationError("valid_from must be before valid_until")
        if (self.hours_start is None) != (self.hours_end is None):
            raise ValidationError("hours_start and hours_end must be set together")
        invalid_days = [day for day in self.weekdays or [] if day not in range(1, 8)]
        if invalid_days:
            raise ValidationError(f"Weekdays must be 1 (Monday) to 7 (Sunday), got {invalid_days}")
        unknown_channels = sorted(set(self.channels or []) - {c.value for c in Channel})
        if unknown_channels:
            raise ValidationError(f"Unknown channels: {', '.join(unknown_channels)}")

    def missing_parameters(self) -> list[str]:
        """Return the problems that prevent activating this coupon's discount type."""
        problems: list[str] = []
        if self.discount_type == DiscountType.PERCENT:
            if self.percent_off is None or not (Decimal("0") < self.percent_off <= MAX_PERCENT):
                problems.append("PERCENT requires 0 < percent_off <= 100")
        elif self.discount_type == DiscountType.AMOUNT:
            if self.amount_off is None or self.amount_off <= 0:
                problems.append("AMOUNT requires amount_off > 0")
        elif self.discount_type == DiscountType.BOGO:
            problems.extend(self._bogo_problems())
        elif self.discount_type == DiscountType.YOPO:
            if self.yopo_group_size is None or self.yopo_group_size < 2:  # noqa: PLR2004
                problems.append("YOPO requires group_size >= 2")
        elif self.discount_type == DiscountType.FREE_ITEM:
            if not self.free_item_sku:
                problems.append("FREE_ITEM requires free_item_sku")
        elif self.discount_type == DiscountType.SHIPPING_OFF:
            pass
        else:
            problems.append(f"Unknown discount type {self.discount_type}")
        return problems

    def _bogo_problems(self) -> list[str]:
        if not self.bogo_x or not self.bogo_y:
            return ["BOGO requires x and y"]
        problems = []
        if self.bogo_x <= self.bogo_y:
            problems.append("BOGO requires x greater than y")
        if self.bogo_reward == BogoReward.PERCENTAGE_OFF:
            if self.bogo_value is None or not (Decimal("0") < self.bogo_value <= MAX_PERCENT):
                problems.append("BOGO PERCENTAGE_OFF requires 0 < value <= 100")
        elif self.bogo_reward == BogoReward.FIXED_PRICE and self.bogo_value is None:
            problems.append("BOGO FIXED_PRICE requires value")
        return problems

    @property
    def is_archived(self) -> bool:
        return self.status == CouponStatus.ARCHIVED

    @property
    def has_redemptions(self) -> bool:
        """True once any redemption, in any status, references this coupon."""
        return self.redemptions.exists()

    def usable_codes(self) -> models.QuerySet[CouponCode]:
        """Codes that can still be redeemed."""
        return self.codes.filter(status=CodeStatus.ISSUED, usage_count__lt=F("max_uses"))


# ===============================================================================
# Coupon Code Model
# ===============================================================================


class CouponCode(models.Model):
    """
    One redeemable code issued against a coupon.

    Code strings are unique across all coupons and are never deleted, so a
    revoked string can never be issued again.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (CodeStatus.ISSUED, _("Issued")),
        (CodeStatus.REDEEMED, _("Redeemed")),
        (CodeStatus.REVOKED, _("Revoked")),
        (CodeStatus.EXPIRED, _("Expired")),
    )
    DISTRIBUTION_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (CodeDistribution.GENERIC, _("Generic (shared)")),
        (CodeDistribution.UNIQUE, _("Unique per customer")),
        (CodeDistribution.BULK, _("Bulk batch")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="codes")
    code = models.CharField(max_length=MAX_CODE_LENGTH, unique=True, help_text=_("Code string (case-insensitive)"))
    distribution = models.CharField(max_length=10, choices=DISTRIBUTION_CHOICES, default=CodeDistribution.BULK)
    batch_id = models.CharField(max_length=64, blank=True, db_index=True)
    assigned_customer_id = models.CharField(max_length=64, null=True, blank=True, db_index=True)
    assigned_at = models.DateTimeField(null=True, blank=True)

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=CodeStatus.ISSUED)
    usage_count = models.PositiveIntegerField(default=0)
    max_uses = models.PositiveIntegerField(
        default=1,
        validators=[MinValueValidator(1), MaxValueValidator(MAX_USES_PER_CODE)],
    )
    expires_at = models.DateTimeField(null=True, blank=True, help_text=_("Per-code expiry (null = coupon window)"))

    revoked_reason = models.TextField(blank=True)
    revoked_at = models.DateTimeField(null=True, blank=True)
    created_by = models.CharField(max_length=64, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupon_codes"
        verbose_name = _("Coupon Code")
        verbose_name_plural = _("Coupon Codes")
        ordering: ClassVar[tuple[str, ...]] = ("created_at", "code")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["coupon", "status"]),
            models.Index(fields=["assigned_customer_id", "status"]),
            models.Index(fields=["status", "expires_at"]),
        )
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.CheckConstraint(condition=Q(usage_count__lte=F("max_uses")), name="coupon_code_usage_within_max"),
            models.CheckConstraint(condition=Q(max_uses__gte=1), name="coupon_code_max_uses_positive"),
        )

    def __str__(self) -> str:
        return f"{self.code} ({self.status})"

    def save(self, *args: Any, **kwargs: Any) -> None:
        """Normalize code to uppercase before saving."""
        if self.code:
            self.code = self.code.upper().strip()
        super().save(*args, **kwargs)

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.usage_count)

    @property
    def is_past_expiry(self) -> bool:
        return self.expires_at is not None and self.expires_at <= timezone.now()


# ===============================================================================
# Coupon Redemption Model
# ===============================================================================


class CouponRedemption(models.Model):
    """
    Ledger entry for one successful apply.

    Core amounts and lines never change. Only ``status`` moves, from ACTIVE
    to CANCELLED or REFUNDED. Rows are never deleted.
    """

    STATUS_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (RedemptionStatus.ACTIVE, _("Active")),
        (RedemptionStatus.CANCELLED, _("Cancelled")),
        (RedemptionStatus.REFUNDED, _("Refunded")),
    )

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    redemption_id = models.CharField(max_length=64, unique=True)

    # Relationships
    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="redemptions")
    code = models.ForeignKey(CouponCode, on_delete=models.PROTECT, related_name="redemptions")
    code_value = models.CharField(max_length=MAX_CODE_LENGTH, help_text=_("Code string at redemption time"))
    customer_id = models.CharField(max_length=64, db_index=True)
    store_id = models.CharField(max_length=64, db_index=True)
    channel = models.CharField(max_length=10)
    order_id = models.CharField(max_length=64, db_index=True)

    # Discount snapshot
    discount_type = models.CharField(max_length=20)
    pre_discount_amount = money_field()
    discount_amount = money_field()
    affected_items = models.JSONField(default=list, encoder=DjangoJSONEncoder)
    stack_with_loyalty = models.BooleanField(default=False)
    stack_with_wallet = models.BooleanField(default=False)
    usage_period = models.CharField(max_length=10, help_text=_("Local date the daily limits were charged to"))

    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default=RedemptionStatus.ACTIVE)

    # Reversal details
    cancel_reason = models.TextField(blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    refund_id = models.CharField(max_length=64, blank=True)
    refund_amount = money_field(null=True, blank=True)
    refund_reason = models.TextField(blank=True)
    refunded_at = models.DateTimeField(null=True, blank=True)

    # Request context
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.TextField(blank=True)
    device_id = models.CharField(max_length=128, blank=True)
    session_id = models.CharField(max_length=128, blank=True)
    city = models.CharField(max_length=100, blank=True)
    state = models.CharField(max_length=100, blank=True)
    payment_method = models.CharField(max_length=40, blank=True)

    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupon_redemptions"
        verbose_name = _("Coupon Redemption")
        verbose_name_plural = _("Coupon Redemptions")
        ordering: ClassVar[tuple[str, ...]] = ("-created_at",)
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["coupon", "-created_at"]),
            models.Index(fields=["customer_id", "-created_at"]),
            models.Index(fields=["store_id", "-created_at"]),
            models.Index(fields=["status", "-created_at"]),
            models.Index(fields=["coupon", "status", "-created_at"], name="idx_redemption_analytics"),
        )
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.CheckConstraint(condition=Q(discount_amount__gte=0), name="redemption_discount_non_negative"),
            models.CheckConstraint(
                condition=Q(discount_amount__lte=F("pre_discount_amount")),
                name="redemption_discount_within_order",
            ),
            models.CheckConstraint(
                condition=Q(refund_amount__isnull=True) | Q(refund_amount__lte=F("discount_amount")),
                name="redemption_refund_within_discount",
            ),
            # One live coupon per order
            models.UniqueConstraint(
                fields=["order_id"],
                condition=Q(status=RedemptionStatus.ACTIVE),
                name="unique_active_redemption_per_order",
            ),
        )

    def __str__(self) -> str:
        return f"{self.code_value} on {self.order_id} ({self.status})"

    def delete(self, *args: Any, **kwargs: Any) -> Any:
        raise CouponError("Coupon redemptions are never deleted; cancel or refund them instead")

    @property
    def is_terminal(self) -> bool:
        return self.status != RedemptionStatus.ACTIVE

    @property
    def savings_percentage(self) -> Decimal:
        if not self.pre_discount_amount:
            return Decimal("0.00")
        return (self.discount_amount / self.pre_discount_amount * 100).quantize(Decimal("0.01"))


# ===============================================================================
# Usage Counter Model
# ===============================================================================


class CouponUsageCounter(models.Model):
    """
    Atomic usage counter for one (coupon, scope, subject, period).

    ``claim`` is a single conditional UPDATE (``count < limit``), so two
    concurrent applies can never both pass the same limit.
    """

    SCOPE_CHOICES: ClassVar[tuple[tuple[str, Any], ...]] = (
        (CounterScope.GLOBAL, _("All redemptions")),
        (CounterScope.CUSTOMER_TOTAL, _("Per customer")),
        (CounterScope.CUSTOMER_DAILY, _("Per customer per day")),
        (CounterScope.STORE_DAILY, _("Per store per day")),
    )

    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="usage_counters")
    scope = models.CharField(max_length=20, choices=SCOPE_CHOICES)
    subject = models.CharField(max_length=64, blank=True, help_text=_("Customer or store id; empty for GLOBAL"))
    period = models.CharField(max_length=10, blank=True, help_text=_("ISO date for daily scopes; empty otherwise"))
    count = models.PositiveIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "coupon_usage_counters"
        verbose_name = _("Coupon Usage Counter")
        verbose_name_plural = _("Coupon Usage Counters")
        constraints: ClassVar[tuple[models.BaseConstraint, ...]] = (
            models.UniqueConstraint(fields=["coupon", "scope", "subject", "period"], name="unique_usage_counter"),
            models.CheckConstraint(condition=Q(count__gte=0), name="usage_counter_non_negative"),
        )

    def __str__(self) -> str:
        return f"{self.coupon_id}:{self.scope}:{self.subject}:{self.period} = {self.count}"

    @classmethod
    def current(cls, coupon_pk: int, scope: str, subject: str = "", period: str = "") -> int:
        """Read the current count (0 when no row exists yet)."""
        count = (
            cls.objects.filter(coupon_id=coupon_pk, scope=scope, subject=subject, period=period)
            .values_list("count", flat=True)
            .first()
        )
        return count or 0

    @classmethod
    def claim(cls, coupon_pk: int, scope: str, subject: str, period: str, limit: int | None) -> bool:
        """
        Increment the counter only if it is still below ``limit``.

        Returns False when the limit is already reached. A ``None`` limit
        always increments so the count is available if a limit is added later.
        """
        counter, _created = cls.objects.get_or_create(coupon_id=coupon_pk, scope=scope, subject=subject, period=period)
        rows = cls.objects.filter(pk=counter.pk)
        if limit is not None:
            rows = rows.filter(count__lt=limit)
        updated = rows.update(
            count=F("count") + 1,
            updated_at=timezone.now(),
        )
        return updated == 1

    @classmethod
    def release(cls, coupon_pk: int, scope: str, subject: str, period: str) -> None:
        """Give back one unit, never going below zero."""
        cls.objects.filter(
            coupon_id=coupon_pk,
            scope=scope,
            subject=subject,
            period=period,
            count__gt=0,
        ).update(count=F("count") - 1, updated_at=timezone.now())


# ===============================================================================
# Audit Trail Model
# ===============================================================================


class CouponAuditEntry(models.Model):
    """Append-only audit trail for coupon, code and redemption events."""

    ACTION_CHOICES: ClassVar[tuple[tuple[str, str], ...]] = (
        ("coupon_created", "Coupon created"),
        ("coupon_updated", "Coupon updated"),
        ("coupon_activated", "Coupon activated"),
        ("coupon_paused", "Coupon paused"),
        ("coupon_archived", "Coupon archived"),
        ("codes_generated", "Codes generated"),
        ("codes_assigned", "Codes assigned"),
        ("codes_revoked", "Codes revoked"),
        ("codes_expired", "Codes expired"),
        ("redemption_applied", "Redemption applied"),
        ("redemption_cancelled", "Redemption cancelled"),
        ("redemption_refunded", "Redemption refunded"),
    )

    coupon = models.ForeignKey(Coupon, on_delete=models.PROTECT, related_name="audit_entries")
    code = models.ForeignKey(CouponCode, on_delete=models.PROTECT, null=True, blank=True, related_name="audit_entries")
    redemption = models.ForeignKey(
        CouponRedemption,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="audit_entries",
    )
    action = models.CharField(max_length=30, choices=ACTION_CHOICES)
    actor_id = models.CharField(max_length=64, blank=True)
    reason = models.TextField(blank=True)
    details = models.JSONField(default=dict, blank=True, encoder=DjangoJSONEncoder)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "coupon_audit_entries"
        verbose_name = _("Coupon Audit Entry")
        verbose_name_plural = _("Coupon Audit Entries")
        ordering: ClassVar[tuple[str, ...]] = ("created_at", "id")
        indexes: ClassVar[tuple[models.Index, ...]] = (
            models.Index(fields=["coupon", "action"]),
            models.Index(fields=["created_at"]),
        )

    def __str__(self) -> str:
        return f"{self.action} on {self.coupon_id}"

    @classmethod
    def record(  # noqa: PLR0913
        cls,
        action: str,
        coupon: Coupon,
        *,
        code: CouponCode | None = None,
        redemption: CouponRedemption | None = None,
        actor_id: str = "",
        reason: str = "",
        details: dict[str, Any] | None = None,
    ) -> CouponAuditEntry:
        return cls.objects.create(
            action=action,
            coupon=coupon,
            code=code,
            redemption=redemption,
            actor_id=actor_id or "",
            reason=reason or "",
            details=details or {},
        )
