"""
Coupon services for the retail back-office platform.
Business logic for coupon lifecycle, code issuance, validation, redemption
and analytics.
"""

from __future__ import annotations

import logging
import secrets
import string
from collections.abc import Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import Count, F, Q, QuerySet, Sum
from django.db.models.functions import TruncDate
from django.utils import timezone

from apps.common.types import Amount, Err, Ok, Result

from .cache import get_snapshot_cache, normalize_code
from .calculator import DiscountCalculator, PriceCatalog
from .cart import ZERO, Cart, RedemptionContext, to_money
from .collaborators import get_catalog, get_order_history, get_store_directory
from .conf import coupon_setting
from .exceptions import (
    CouponNotFound,
    CouponStateError,
    GenerationExhausted,
    InsufficientCodes,
    InvalidRefundAmount,
    RedemptionNotFound,
    UsageLimitConflict,
)
from .models import (
    MAX_CODE_LENGTH,
    CodeDistribution,
    CodeStatus,
    CounterScope,
    Coupon,
    CouponAuditEntry,
    CouponCode,
    CouponRedemption,
    CouponStatus,
    CouponUsageCounter,
    RedemptionStatus,
)
from .policy import CodeState, CouponPolicy
from .validation import REASON_MESSAGES, EligibilityFacts, ReasonCode, ValidationPipeline, ValidationRequest

logger = logging.getLogger(__name__)


# ===============================================================================
# Constants
# ===============================================================================

CODE_ALPHABET = string.ascii_uppercase + string.digits
EXISTING_CODE_QUERY_CHUNK = 500
COUPON_ID_TOKEN_LENGTH = 6

# Allowed lifecycle transitions
COUPON_TRANSITIONS: dict[str, set[str]] = {
    CouponStatus.DRAFT: {CouponStatus.ACTIVE, CouponStatus.ARCHIVED},
    CouponStatus.ACTIVE: {CouponStatus.PAUSED, CouponStatus.ARCHIVED},
    CouponStatus.PAUSED: {CouponStatus.ACTIVE, CouponStatus.ARCHIVED},
    CouponStatus.ARCHIVED: set(),
}

# Counter scopes claimed on apply, in order, with the reason reported when the limit is hit
COUNTER_REASONS: tuple[tuple[CounterScope, ReasonCode], ...] = (
    (CounterScope.GLOBAL, ReasonCode.GLOBAL_LIMIT_EXCEEDED),
    (CounterScope.CUSTOMER_TOTAL, ReasonCode.CUSTOMER_LIMIT_EXCEEDED),
    (CounterScope.CUSTOMER_DAILY, ReasonCode.DAILY_LIMIT_EXCEEDED),
    (CounterScope.STORE_DAILY, ReasonCode.STORE_DAILY_CAP_EXCEEDED),
)


# ===============================================================================
# Data Classes for Results
# ===============================================================================


@dataclass
class ValidationResult:
    """
    Result of coupon validation.

    Attributes:
        valid: Whether the code can be applied to this cart.
        reason: Machine-readable ``ReasonCode`` when validation failed.
        message: Human-readable explanation of ``reason``.
        computed_discount: Discount the code would give (0 when invalid).
        pre_discount_amount: Cart value the discount was computed against.
        affected_items: Per-line breakdown (sku, qty, original/discounted price).
        warnings: Non-blocking notes (e.g. "Discount capped at ₹500").
        stackability: ``{"loyalty": bool, "wallet": bool}``.
    """

    valid: bool
    reason: ReasonCode | None = None
    message: str = ""
    coupon_id: str = ""
    computed_discount: Amount = ZERO
    pre_discount_amount: Amount = ZERO
    affected_items: list[dict[str, Any]] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stackability: dict[str, bool] = field(default_factory=dict)

    @classmethod
    def failure(cls, reason: ReasonCode) -> ValidationResult:
        return cls(valid=False, reason=reason, message=REASON_MESSAGES[reason])


@dataclass
class ApplyResult:
    """Result of applying a coupon to an order."""

    success: bool
    redemption_id: str = ""
    discount_amount: Amount = ZERO
    pre_discount_amount: Amount = ZERO
    affected_items: list[dict[str, Any]] = field(default_factory=list)
    stackability: dict[str, bool] = field(default_factory=dict)
    reason: ReasonCode | None = None
    message: str = ""
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def failure(cls, reason: ReasonCode) -> ApplyResult:
        return cls(success=False, reason=reason, message=REASON_MESSAGES[reason])


@dataclass
class CodeBatch:
    """Codes issued by one bulk generation call."""

    coupon_id: str
    batch_id: str
    codes: list[str]
    attempts: int


@dataclass
class CodeAssignment:
    customer_id: str
    code: str


@dataclass
class RevokeResult:
    revoked: list[str] = field(default_factory=list)
    skipped: dict[str, str] = field(default_factory=dict)
    not_found: list[str] = field(default_factory=list)


@dataclass
class CouponAnalytics:
    """Aggregates for one coupon over an optional date range (local dates, inclusive)."""

    coupon_id: str
    name: str
    status: str
    date_from: date | None
    date_to: date | None
    code_stats: dict[str, Any]
    redemption_stats: dict[str, Any]
    daily: list[dict[str, Any]]
    recent_redemptions: list[dict[str, Any]]


# ===============================================================================
# Helpers
# ===============================================================================


def generate_coupon_id(now: datetime | None = None) -> str:
    """Business identifier like ``CPN-20260101-AB12CD``."""
    now = now or timezone.now()
    token = "".join(secrets.choice(CODE_ALPHABET) for _ in range(COUPON_ID_TOKEN_LENGTH))
    return f"CPN-{timezone.localtime(now):%Y%m%d}-{token}"


def generate_redemption_id() -> str:
    return f"RDM-{timezone.localtime():%Y%m%d}-{secrets.token_hex(6).upper()}"


def _as_cart(cart: Cart | Mapping[str, Any]) -> Cart:
    return cart if isinstance(cart, Cart) else Cart.from_dict(cart)


def _as_context(context: RedemptionContext | Mapping[str, Any] | None) -> RedemptionContext:
    return context if isinstance(context, RedemptionContext) else RedemptionContext.from_dict(context)


class DatabaseEligibilityFacts:
    """Eligibility facts from usage counters and the configured collaborators."""

    def __init__(self, order_history: Any = None, store_directory: Any = None) -> None:
        self.order_history = order_history or get_order_history()
        self.store_directory = store_directory or get_store_directory()

    def prior_order_count(self, customer_id: str) -> int:
        return self.order_history.prior_order_count(customer_id)

    def usage(self, coupon_pk: int, scope: CounterScope, subject: str = "", period: str = "") -> int:
        return CouponUsageCounter.current(coupon_pk, scope, subject, period)

    def is_known_store(self, store_id: str) -> bool:
        return self.store_directory.is_known_store(store_id)

    def is_enabled_channel(self, channel: str) -> bool:
        return self.store_directory.is_enabled_channel(channel)


# ===============================================================================
# Coupon Definition Service
# ===============================================================================


class CouponDefinitionService:
    """Authoring and lifecycle of coupon definitions."""

    # Fields callers may not set directly
    PROTECTED_FIELDS = frozenset({"id", "status", "activated_at", "archived_at", "created_at", "updated_at"})

    @classmethod
    def get_coupon(cls, coupon_id: str) -> Coupon:
        try:
            return Coupon.objects.get(coupon_id=(coupon_id or "").upper().strip())
        except Coupon.DoesNotExist as e:
            raise CouponNotFound(coupon_id) from e

    @classmethod
    def _editable_fields(cls) -> set[str]:
        return {f.name for f in Coupon._meta.concrete_fields if f.editable} - cls.PROTECTED_FIELDS

    @classmethod
    def create_coupon(cls, data: Mapping[str, Any], actor_id: str = "") -> Coupon:
        """Create a DRAFT coupon. Raises ``ValidationError`` for bad input."""
        unknown = set(data) - cls._editable_fields()
        if unknown:
            raise ValueError(f"Unknown coupon fields: {', '.join(sorted(unknown))}")

        coupon = Coupon(**data)
        coupon.status = CouponStatus.DRAFT
        coupon.created_by = coupon.created_by or actor_id
        if not coupon.coupon_id:
            coupon.coupon_id = generate_coupon_id()
        coupon.full_clean()
        coupon.save()

        CouponAuditEntry.record(
            "coupon_created",
            coupon,
            actor_id=actor_id,
            details={"name": coupon.name, "discount_type": coupon.discount_type},
        )
        logger.info(
            "Coupon created: %s (%s)",
            coupon.coupon_id,
            coupon.discount_type,
            extra={"coupon_id": coupon.coupon_id, "actor_id": actor_id},
        )
        return coupon

    @classmethod
    @transaction.atomic
    def update_coupon(cls, coupon_id: str, changes: Mapping[str, Any], actor_id: str = "") -> Result[Coupon, str]:
        """
        Edit a coupon.

        Archived coupons cannot be edited, and the discount policy fields are
        frozen once any redemption exists so settled orders keep their terms.
        """
        unknown = set(changes) - cls._editable_fields() - {"coupon_id"}
        if unknown:
            return Err(f"Unknown coupon fields: {', '.join(sorted(unknown))}")
        if "coupon_id" in changes:
            return Err("coupon_id cannot be changed")

        coupon = Coupon.objects.select_for_update().filter(coupon_id=coupon_id.upper().strip()).first()
        if coupon is None:
            raise CouponNotFound(coupon_id)
        if coupon.is_archived:
            return Err("Archived coupons cannot be edited")

        frozen = sorted(set(changes) & set(Coupon.POLICY_FIELDS))
        if frozen and coupon.has_redemptions:
            return Err(f"Coupon has redemptions; policy fields are frozen: {', '.join(frozen)}")

        old_values = {name: getattr(coupon, name) for name in changes}
        for name, value in changes.items():
            setattr(coupon, name, value)
        coupon.full_clean()
        coupon.save()

        CouponAuditEntry.record(
            "coupon_updated",
            coupon,
            actor_id=actor_id,
            details={"old": old_values, "new": dict(changes)},
        )
        logger.info("Coupon updated: %s (%s)", coupon.coupon_id, ", ".join(sorted(changes)))
        return Ok(coupon)

    @classmethod
    def activate(cls, coupon_id: str, actor_id: str = "") -> Result[Coupon, str]:
        return cls._transition(coupon_id, CouponStatus.ACTIVE, actor_id)

    @classmethod
    def pause(cls, coupon_id: str, actor_id: str = "", reason: str = "") -> Result[Coupon, str]:
        return cls._transition(coupon_id, CouponStatus.PAUSED, actor_id, reason)

    @classmethod
    def archive(cls, coupon_id: str, actor_id: str = "", reason: str = "") -> Result[Coupon, str]:
        return cls._transition(coupon_id, CouponStatus.ARCHIVED, actor_id, reason)

    @classmethod
    def _transition(cls, coupon_id: str, target: CouponStatus, actor_id: str = "", reason: str = "") -> Result[Coupon, str]:
        with transaction.atomic():
            coupon = Coupon.objects.select_for_update().filter(coupon_id=coupon_id.upper().strip()).first()
            if coupon is None:
                raise CouponNotFound(coupon_id)

            current = coupon.status
            if current == CouponStatus.ARCHIVED:
                return Err(f"Coupon {coupon.coupon_id} is archived; archived coupons cannot change state")
            if current == target:
                return Ok(coupon)
            if target not in COUPON_TRANSITIONS.get(current, set()):
                return Err(f"Invalid status transition: {current} → {target}")

            if target == CouponStatus.ACTIVE:
                problem = cls._activation_problem(coupon)
                if problem:
                    return Err(problem)

            now = timezone.now()
            coupon.status = target
            update_fields = ["status", "updated_at"]
            if target == CouponStatus.ACTIVE:
                coupon.activated_at = now
                update_fields.append("activated_at")
            elif target == CouponStatus.ARCHIVED:
                coupon.archived_at = now
                update_fields.append("archived_at")
            coupon.save(update_fields=update_fields)

            CouponAuditEntry.record(
                f"coupon_{cls._action_name(target)}",
                coupon,
                actor_id=actor_id,
                reason=reason,
                details={"from": current, "to": target},
            )

        logger.info(
            "Coupon %s status changed: %s → %s",
            coupon.coupon_id,
            current,
            target,
            extra={"coupon_id": coupon.coupon_id, "from": current, "to": target, "actor_id": actor_id},
        )
        return Ok(coupon)

    @staticmethod
    def _action_name(target: CouponStatus) -> str:
        return {
            CouponStatus.ACTIVE: "activated",
            CouponStatus.PAUSED: "paused",
            CouponStatus.ARCHIVED: "archived",
        }[target]

    @classmethod
    def _activation_problem(cls, coupon: Coupon) -> str | None:
        """Return why the coupon cannot be activated, generating codes if its policy asks for them."""
        missing = coupon.missing_parameters()
        if missing:
            return "Incomplete discount parameters: " + "; ".join(missing)
        if coupon.valid_from is None or coupon.valid_until is None:
            return "Coupon needs a validity window (valid_from and valid_until)"
        if coupon.valid_from >= coupon.valid_until:
            return "valid_from must be before valid_until"
        if coupon.valid_until <= timezone.now():
            return "Validity window has already ended"

        if coupon.usable_codes().exists():
            return None
        if not coupon.auto_code_count:
            return "Coupon has no usable codes and no auto-generation policy"
        try:
            CouponCodeService.generate_bulk_codes(
                coupon.coupon_id,
                coupon.auto_code_count,
                prefix=coupon.code_prefix,
                length=coupon.code_length,
            )
        except GenerationExhausted as e:
            return str(e)
        return None


# ===============================================================================
# Coupon Code Service
# ===============================================================================


class CouponCodeService:
    """Issuing, assigning, revoking and expiring coupon codes."""

    @staticmethod
    def _random_code(prefix: str, length: int, shard: str) -> str:
        first = secrets.choice(shard)
        rest = "".join(secrets.choice(CODE_ALPHABET) for _ in range(length - 1))
        return f"{prefix}{first}{rest}"

    @classmethod
    def _draw_candidates(cls, prefix: str, length: int, count: int) -> list[str]:
        """
        Draw ``count`` random codes, split across worker threads.

        Each worker owns a disjoint set of first characters after the prefix,
        so two workers can never produce the same string.
        """
        workers = max(1, min(coupon_setting("CODE_GENERATION_MAX_WORKERS"), count, len(CODE_ALPHABET)))
        shards = [CODE_ALPHABET[index::workers] for index in range(workers)]
        quotas = [count // workers + (1 if index < count % workers else 0) for index in range(workers)]

        def draw(shard: str, quota: int) -> list[str]:
            return [cls._random_code(prefix, length, shard) for _ in range(quota)]

        if workers == 1:
            return draw(shards[0], count)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="coupon-codes") as pool:
            batches = pool.map(draw, shards, quotas)
            return [code for batch in batches for code in batch]

    @staticmethod
    def _existing_codes(candidates: Iterable[str]) -> set[str]:
        candidates = list(candidates)
        existing: set[str] = set()
        for start in range(0, len(candidates), EXISTING_CODE_QUERY_CHUNK):
            chunk = candidates[start : start + EXISTING_CODE_QUERY_CHUNK]
            existing.update(CouponCode.objects.filter(code__in=chunk).values_list("code", flat=True))
        return existing

    @classmethod
    def _collect_unique(cls, prefix: str, length: int, count: int, budget: int) -> tuple[list[str], int]:
        """Draw until ``count`` unused codes are found or ``budget`` draws are spent."""
        accepted: dict[str, None] = {}
        attempts = 0
        while len(accepted) < count and attempts < budget:
            need = min(count - len(accepted), budget - attempts)
            candidates = cls._draw_candidates(prefix, length, need)
            attempts += len(candidates)
            fresh = [code for code in dict.fromkeys(candidates) if code not in accepted]
            taken = cls._existing_codes(fresh)
            for code in fresh:
                if code not in taken:
                    accepted[code] = None
        return list(accepted)[:count], attempts

    @classmethod
    def generate_bulk_codes(  # noqa: PLR0913
        cls,
        coupon_id: str,
        count: int,
        *,
        prefix: str | None = None,
        length: int | None = None,
        distribution: CodeDistribution = CodeDistribution.BULK,
        batch_id: str | None = None,
        max_uses: int = 1,
        expires_at: datetime | None = None,
        actor_id: str = "",
    ) -> CodeBatch:
        """
        Issue exactly ``count`` new, globally unique codes for a coupon.

        All-or-nothing: when the attempt budget runs out before ``count``
        unique codes are found, ``GenerationExhausted`` is raised and no code
        is written.
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        if max_uses < 1:
            raise ValueError("max_uses must be at least 1")

        coupon = CouponDefinitionService.get_coupon(coupon_id)
        if coupon.is_archived:
            raise CouponStateError(f"Coupon {coupon.coupon_id} is archived; no new codes can be issued")

        prefix = (coupon.code_prefix if prefix is None else prefix).upper().strip()
        length = length or coupon.code_length or coupon_setting("CODE_LENGTH")
        if length < 1:
            raise ValueError("length must be at least 1")
        if len(prefix) + length > MAX_CODE_LENGTH:
            raise ValueError(f"Codes longer than {MAX_CODE_LENGTH} characters are not supported")
        if len(CODE_ALPHABET) ** length < count:
            raise GenerationExhausted(requested=count, generated=0, attempts=0)

        batch_id = batch_id or f"BATCH-{timezone.localtime():%Y%m%d%H%M%S}-{secrets.token_hex(3).upper()}"
        budget = count * coupon_setting("CODE_GENERATION_ATTEMPTS_PER_CODE")
        total_attempts = 0

        for insert_attempt in range(1, coupon_setting("CODE_INSERT_RETRIES") + 1):
            codes, attempts = cls._collect_unique(prefix, length, count, budget)
            total_attempts += attempts
            if len(codes) < count:
                logger.warning(
                    "Code generation exhausted for %s: %d of %d after %d attempts",
                    coupon.coupon_id,
                    len(codes),
                    count,
                    total_attempts,
                    extra={"coupon_id": coupon.coupon_id, "prefix": prefix, "length": length},
                )
                raise GenerationExhausted(requested=count, generated=len(codes), attempts=total_attempts)

            try:
                with transaction.atomic():
                    CouponCode.objects.bulk_create(
                        [
                            CouponCode(
                                coupon=coupon,
                                code=code,
                                distribution=distribution,
                                batch_id=batch_id,
                                max_uses=max_uses,
                                expires_at=expires_at,
                                created_by=actor_id,
                            )
                            for code in codes
                        ]
                    )
                    CouponAuditEntry.record(
                        "codes_generated",
                        coupon,
                        actor_id=actor_id,
                        details={"batch_id": batch_id, "count": count, "prefix": prefix, "length": length},
                    )
            except IntegrityError:
                # Another writer took one of our codes between the check and the insert
                logger.warning(
                    "Code insert collided for %s (attempt %d), redrawing batch",
                    coupon.coupon_id,
                    insert_attempt,
                )
                continue

            logger.info(
                "Generated %d codes for coupon %s (batch %s)",
                count,
                coupon.coupon_id,
                batch_id,
                extra={"coupon_id": coupon.coupon_id, "batch_id": batch_id, "attempts": total_attempts},
            )
            return CodeBatch(coupon_id=coupon.coupon_id, batch_id=batch_id, codes=codes, attempts=total_attempts)

        raise GenerationExhausted(requested=count, generated=0, attempts=total_attempts)

    @classmethod
    def assign_codes_to_customers(
        cls,
        coupon_id: str,
        customer_ids: Iterable[str],
        actor_id: str = "",
        notify: bool = False,
    ) -> list[CodeAssignment]:
        """
        Bind one unassigned, unused code to each customer.

        All-or-nothing: raises ``InsufficientCodes`` and assigns nothing when
        fewer codes remain than distinct customers requested.
        """
        customers = list(dict.fromkeys(str(c).strip() for c in customer_ids if str(c).strip()))
        if not customers:
            return []

        coupon = CouponDefinitionService.get_coupon(coupon_id)
        if coupon.is_archived:
            raise CouponStateError(f"Coupon {coupon.coupon_id} is archived; codes cannot be assigned")

        now = timezone.now()
        with transaction.atomic():
            pool = list(
                coupon.codes.select_for_update()
                .filter(status=CodeStatus.ISSUED, assigned_customer_id__isnull=True, usage_count=0)
                .exclude(distribution=CodeDistribution.GENERIC)
                .order_by("created_at", "code")[: len(customers)]
            )
            if len(pool) < len(customers):
                raise InsufficientCodes(requested=len(customers), available=len(pool))

            for code, customer_id in zip(pool, customers, strict=True):
                code.assigned_customer_id = customer_id
                code.assigned_at = now
                code.distribution = CodeDistribution.UNIQUE
                code.updated_at = now
            CouponCode.objects.bulk_update(pool, ["assigned_customer_id", "assigned_at", "distribution", "updated_at"])

            CouponAuditEntry.record(
                "codes_assigned",
                coupon,
                actor_id=actor_id,
                details={"count": len(pool), "customers": customers},
            )

        get_snapshot_cache().invalidate_codes([code.code for code in pool])
        assignments = [CodeAssignment(customer_id=code.assigned_customer_id or "", code=code.code) for code in pool]
        logger.info(
            "Assigned %d codes of coupon %s",
            len(assignments),
            coupon.coupon_id,
            extra={"coupon_id": coupon.coupon_id, "actor_id": actor_id},
        )

        if notify:
            from .tasks import queue_code_distribution  # noqa: PLC0415

            queue_code_distribution(assignments, coupon.name)
        return assignments

    @classmethod
    def revoke_codes(cls, coupon_id: str, codes: Iterable[str], reason: str, actor_id: str = "") -> RevokeResult:
        """Move ISSUED codes to REVOKED. Codes in any other status are reported as skipped."""
        if not reason or not reason.strip():
            raise ValueError("A revocation reason is required")

        wanted = list(dict.fromkeys(normalize_code(code) for code in codes if normalize_code(code)))
        coupon = CouponDefinitionService.get_coupon(coupon_id)
        result = RevokeResult()
        now = timezone.now()

        with transaction.atomic():
            rows = {code.code: code for code in coupon.codes.select_for_update().filter(code__in=wanted)}
            to_revoke = []
            for code in wanted:
                row = rows.get(code)
                if row is None:
                    result.not_found.append(code)
                elif row.status == CodeStatus.ISSUED:
                    to_revoke.append(row.pk)
                    result.revoked.append(code)
                elif row.status == CodeStatus.REDEEMED:
                    result.skipped[code] = "Redeemed codes cannot be revoked; refund the redemption instead"
                else:
                    result.skipped[code] = f"Code is {row.status}"

            if to_revoke:
                CouponCode.objects.filter(pk__in=to_revoke, status=CodeStatus.ISSUED).update(
                    status=CodeStatus.REVOKED,
                    revoked_reason=reason,
                    revoked_at=now,
                    updated_at=now,
                )
                CouponAuditEntry.record(
                    "codes_revoked",
                    coupon,
                    actor_id=actor_id,
                    reason=reason,
                    details={"codes": result.revoked, "skipped": result.skipped},
                )

        get_snapshot_cache().invalidate_codes(result.revoked)
        logger.info(
            "Revoked %d codes of coupon %s (%d skipped, %d not found)",
            len(result.revoked),
            coupon.coupon_id,
            len(result.skipped),
            len(result.not_found),
            extra={"coupon_id": coupon.coupon_id, "actor_id": actor_id},
        )
        return result

    @classmethod
    def expire_codes(cls, now: datetime | None = None) -> int:
        """Flip ISSUED codes whose own expiry has passed to EXPIRED."""
        now = now or timezone.now()
        expired: dict[int, list[str]] = {}
        with transaction.atomic():
            rows = CouponCode.objects.select_for_update().filter(status=CodeStatus.ISSUED, expires_at__lte=now)
            for coupon_pk, code in rows.values_list("coupon_id", "code"):
                expired.setdefault(coupon_pk, []).append(code)
            if not expired:
                return 0
            CouponCode.objects.filter(
                status=CodeStatus.ISSUED,
                code__in=[code for codes in expired.values() for code in codes],
            ).update(status=CodeStatus.EXPIRED, updated_at=now)
            for coupon in Coupon.objects.filter(pk__in=expired):
                CouponAuditEntry.record("codes_expired", coupon, details={"codes": expired[coupon.pk]})

        all_codes = [code for codes in expired.values() for code in codes]
        get_snapshot_cache().invalidate_codes(all_codes)
        logger.info("Expired %d coupon codes", len(all_codes))
        return len(all_codes)

    @classmethod
    def list_codes(
        cls,
        coupon_id: str,
        status: str | None = None,
        assigned_customer_id: str | None = None,
        batch_id: str | None = None,
    ) -> QuerySet[CouponCode]:
        codes = CouponDefinitionService.get_coupon(coupon_id).codes.all()
        if status:
            codes = codes.filter(status=status)
        if assigned_customer_id:
            codes = codes.filter(assigned_customer_id=assigned_customer_id)
        if batch_id:
            codes = codes.filter(batch_id=batch_id)
        return codes.order_by("created_at", "code")


# ===============================================================================
# Coupon Redemption Service
# ===============================================================================


class CouponRedemptionService:
    """Validation, apply and reversal of coupon redemptions."""

    @classmethod
    def validate_coupon(  # noqa: PLR0913
        cls,
        code: str,
        customer_id: str,
        store_id: str,
        channel: str,
        cart: Cart | Mapping[str, Any],
        context: RedemptionContext | Mapping[str, Any] | None = None,
        *,
        facts: EligibilityFacts | None = None,
        catalog: PriceCatalog | None = None,
    ) -> ValidationResult:
        """
        Check a code against a cart and compute the discount it would give.

        Reads cached snapshots and never writes. Raises
        ``DependencyUnavailable`` when a FREE_ITEM price cannot be looked up.
        """
        cart = _as_cart(cart)
        context = _as_context(context)
        snapshots = get_snapshot_cache()
        code_state = snapshots.get_code(code)
        policy = snapshots.get_policy(code_state.coupon_pk) if code_state else None

        request = ValidationRequest(
            code=code_state,
            policy=policy,
            customer_id=customer_id or "",
            store_id=store_id or "",
            channel=channel or "",
            cart=cart,
            context=context,
            now=timezone.now(),
        )
        outcome = ValidationPipeline(facts or DatabaseEligibilityFacts()).run(request)
        if not outcome.valid:
            assert outcome.reason is not None
            return ValidationResult.failure(outcome.reason)

        assert policy is not None
        computation = DiscountCalculator(catalog or get_catalog()).calculate(policy, cart)
        return ValidationResult(
            valid=True,
            coupon_id=policy.coupon_id,
            computed_discount=computation.total_discount,
            pre_discount_amount=computation.pre_discount_amount,
            affected_items=computation.affected_items,
            warnings=[*outcome.warnings, *computation.warnings],
            stackability=policy.stackability,
        )

    @classmethod
    def apply_coupon(  # noqa: PLR0913
        cls,
        code: str,
        customer_id: str,
        store_id: str,
        channel: str,
        order_id: str,
        cart: Cart | Mapping[str, Any],
        context: RedemptionContext | Mapping[str, Any] | None = None,
        *,
        facts: EligibilityFacts | None = None,
        catalog: PriceCatalog | None = None,
    ) -> ApplyResult:
        """
        Re-validate against live state and record the redemption.

        Usage is claimed with conditional UPDATEs inside one transaction. A
        lost race rolls everything back and is reported as the matching
        limit-exceeded reason. ``DependencyUnavailable`` propagates and
        nothing is written.
        """
        if not order_id:
            raise ValueError("order_id is required to apply a coupon")
        cart = _as_cart(cart)
        context = _as_context(context)
        facts = facts or DatabaseEligibilityFacts()
        catalog = catalog or get_catalog()

        try:
            with transaction.atomic():
                result, code_value = cls._apply_locked(
                    code, customer_id, store_id, channel, order_id, cart, context, facts, catalog
                )
        except UsageLimitConflict as e:
            logger.warning(
                "Coupon usage limit reached during apply: %s for order %s - %s",
                code,
                order_id,
                e.reason,
                extra={"coupon_code": code, "order_id": order_id, "reason": str(e.reason)},
            )
            return ApplyResult.failure(e.reason)
        except IntegrityError:
            # A racing apply for the same order won the unique active-redemption slot
            if CouponRedemption.objects.filter(order_id=order_id, status=RedemptionStatus.ACTIVE).exists():
                return ApplyResult.failure(ReasonCode.ORDER_ALREADY_REDEEMED)
            raise

        if code_value:
            get_snapshot_cache().invalidate_codes([code_value])
        return result

    @classmethod
    def _apply_locked(  # noqa: PLR0913
        cls,
        code: str,
        customer_id: str,
        store_id: str,
        channel: str,
        order_id: str,
        cart: Cart,
        context: RedemptionContext,
        facts: EligibilityFacts,
        catalog: PriceCatalog,
    ) -> tuple[ApplyResult, str]:
        locked_code = (
            CouponCode.objects.select_for_update().select_related("coupon").filter(code=normalize_code(code)).first()
        )
        code_state = CodeState.from_model(locked_code) if locked_code else None
        policy = CouponPolicy.from_model(locked_code.coupon) if locked_code else None
        request = ValidationRequest(
            code=code_state,
            policy=policy,
            customer_id=customer_id or "",
            store_id=store_id or "",
            channel=channel or "",
            cart=cart,
            context=context,
            now=timezone.now(),
        )

        # Re-validate with locked code (state may have changed since validate)
        outcome = ValidationPipeline(facts).run(request)
        if not outcome.valid:
            assert outcome.reason is not None
            logger.warning(
                "Coupon validation failed after lock: %s for order %s - %s",
                code,
                order_id,
                outcome.reason,
                extra={"coupon_code": code, "order_id": order_id, "reason": str(outcome.reason)},
            )
            return ApplyResult.failure(outcome.reason), ""

        assert locked_code is not None and policy is not None
        if CouponRedemption.objects.filter(order_id=order_id, status=RedemptionStatus.ACTIVE).exists():
            return ApplyResult.failure(ReasonCode.ORDER_ALREADY_REDEEMED), ""

        computation = DiscountCalculator(catalog).calculate(policy, cart)
        period = request.period
        now = timezone.now()

        cls._claim_code(locked_code, now)
        cls._claim_counters(policy, request.customer_id, request.store_id, period)

        redemption = CouponRedemption.objects.create(
            redemption_id=generate_redemption_id(),
            coupon=locked_code.coupon,
            code=locked_code,
            code_value=locked_code.code,
            customer_id=request.customer_id,
            store_id=request.store_id,
            channel=request.channel.upper(),
            order_id=order_id,
            discount_type=policy.discount_type,
            pre_discount_amount=computation.pre_discount_amount,
            discount_amount=computation.total_discount,
            affected_items=computation.affected_items,
            stack_with_loyalty=policy.stack_with_loyalty,
            stack_with_wallet=policy.stack_with_wallet,
            usage_period=period,
            ip_address=context.ip_address,
            user_agent=context.user_agent,
            device_id=context.device_id,
            session_id=context.session_id,
            city=context.city,
            state=context.state,
            payment_method=context.payment_method,
            created_at=request.now,
        )
        CouponAuditEntry.record(
            "redemption_applied",
            locked_code.coupon,
            code=locked_code,
            redemption=redemption,
            actor_id=request.customer_id,
            details={"order_id": order_id, "discount_amount": computation.total_discount},
        )

        logger.info(
            "Coupon applied: %s to order %s for %s",
            locked_code.code,
            order_id,
            computation.total_discount,
            extra={
                "coupon_code": locked_code.code,
                "order_id": order_id,
                "discount_amount": str(computation.total_discount),
                "redemption_id": redemption.redemption_id,
            },
        )
        result = ApplyResult(
            success=True,
            redemption_id=redemption.redemption_id,
            discount_amount=computation.total_discount,
            pre_discount_amount=computation.pre_discount_amount,
            affected_items=computation.affected_items,
            stackability=policy.stackability,
            warnings=[*outcome.warnings, *computation.warnings],
        )
        return result, locked_code.code

    @staticmethod
    def _claim_code(code: CouponCode, now: datetime) -> None:
        updated = CouponCode.objects.filter(
            pk=code.pk,
            status=CodeStatus.ISSUED,
            usage_count__lt=F("max_uses"),
        ).update(usage_count=F("usage_count") + 1, updated_at=now)
        if updated != 1:
            raise UsageLimitConflict(ReasonCode.CODE_USAGE_EXCEEDED)
        CouponCode.objects.filter(pk=code.pk, status=CodeStatus.ISSUED, usage_count__gte=F("max_uses")).update(
            status=CodeStatus.REDEEMED
        )

    @staticmethod
    def _counter_targets(customer_id: str, store_id: str, period: str) -> dict[CounterScope, tuple[str, str]]:
        """(subject, period) per counter scope; scopes without a subject are skipped."""
        targets = {CounterScope.GLOBAL: ("", "")}
        if customer_id:
            targets[CounterScope.CUSTOMER_TOTAL] = (customer_id, "")
            targets[CounterScope.CUSTOMER_DAILY] = (customer_id, period)
        if store_id:
            targets[CounterScope.STORE_DAILY] = (store_id, period)
        return targets

    @classmethod
    def _claim_counters(cls, policy: CouponPolicy, customer_id: str, store_id: str, period: str) -> None:
        limits = {
            CounterScope.GLOBAL: policy.limits.global_total,
            CounterScope.CUSTOMER_TOTAL: policy.limits.per_customer_total,
            CounterScope.CUSTOMER_DAILY: policy.limits.per_customer_daily,
            CounterScope.STORE_DAILY: policy.limits.per_store_daily,
        }
        targets = cls._counter_targets(customer_id, store_id, period)
        for scope, reason in COUNTER_REASONS:
            if scope not in targets:
                continue
            subject, scope_period = targets[scope]
            if not CouponUsageCounter.claim(policy.pk, scope, subject, scope_period, limits[scope]):
                raise UsageLimitConflict(reason)

    # ---- reversal --------------------------------------------------------

    @classmethod
    def cancel_redemption(cls, order_id: str, reason: str = "", actor_id: str = "") -> CouponRedemption:
        """ACTIVE → CANCELLED. Returns the existing record unchanged if already cancelled or refunded."""
        return cls._reverse(order_id, RedemptionStatus.CANCELLED, reason=reason, actor_id=actor_id)

    @classmethod
    def refund_redemption(  # noqa: PLR0913
        cls,
        order_id: str,
        refund_id: str,
        amount: Amount | str | int | None = None,
        reason: str = "",
        actor_id: str = "",
    ) -> CouponRedemption:
        """
        ACTIVE → REFUNDED. ``amount`` defaults to the full discount and must
        lie within 0..discount_amount. Idempotent like cancel.
        """
        return cls._reverse(
            order_id,
            RedemptionStatus.REFUNDED,
            reason=reason,
            actor_id=actor_id,
            refund_id=refund_id,
            refund_amount=None if amount is None else to_money(amount),
        )

    @classmethod
    def _find_for_update(cls, order_id: str) -> CouponRedemption:
        redemptions = CouponRedemption.objects.select_for_update().filter(order_id=order_id)
        redemption = redemptions.filter(status=RedemptionStatus.ACTIVE).first() or redemptions.order_by(
            "-created_at"
        ).first()
        if redemption is None:
            raise RedemptionNotFound(order_id)
        return redemption

    @classmethod
    def _reverse(  # noqa: PLR0913
        cls,
        order_id: str,
        target: RedemptionStatus,
        *,
        reason: str,
        actor_id: str,
        refund_id: str = "",
        refund_amount: Decimal | None = None,
    ) -> CouponRedemption:
        now = timezone.now()
        with transaction.atomic():
            redemption = cls._find_for_update(order_id)
            if redemption.is_terminal:
                logger.info(
                    "Redemption %s for order %s already %s; nothing to do",
                    redemption.redemption_id,
                    order_id,
                    redemption.status,
                )
                return redemption

            changes: dict[str, Any] = {"status": target, "updated_at": now}
            if target == RedemptionStatus.CANCELLED:
                changes.update(cancel_reason=reason, cancelled_at=now)
                action = "redemption_cancelled"
            else:
                amount = redemption.discount_amount if refund_amount is None else refund_amount
                if amount < 0 or amount > redemption.discount_amount:
                    raise InvalidRefundAmount(
                        f"Refund amount {amount} must be between 0 and the discount {redemption.discount_amount}"
                    )
                changes.update(refund_id=refund_id, refund_amount=amount, refund_reason=reason, refunded_at=now)
                action = "redemption_refunded"

            updated = CouponRedemption.objects.filter(pk=redemption.pk, status=RedemptionStatus.ACTIVE).update(
                **changes
            )
            if updated == 1:
                cls._release_usage(redemption)
                CouponAuditEntry.record(
                    action,
                    redemption.coupon,
                    code=redemption.code,
                    redemption=redemption,
                    actor_id=actor_id,
                    reason=reason,
                    details={"order_id": order_id, "refund_id": refund_id, "refund_amount": changes.get("refund_amount")},
                )
            redemption.refresh_from_db()

        get_snapshot_cache().invalidate_codes([redemption.code_value])
        logger.info(
            "Coupon redemption %s: %s on order %s",
            redemption.status,
            redemption.code_value,
            order_id,
            extra={"order_id": order_id, "redemption_id": redemption.redemption_id, "actor_id": actor_id},
        )
        return redemption

    @classmethod
    def _release_usage(cls, redemption: CouponRedemption) -> None:
        CouponCode.objects.filter(pk=redemption.code_id, usage_count__gt=0).update(usage_count=F("usage_count") - 1)
        # A code freed below its limit is usable again; revoked or expired codes stay as they are
        CouponCode.objects.filter(
            pk=redemption.code_id,
            status=CodeStatus.REDEEMED,
            usage_count__lt=F("max_uses"),
        ).update(status=CodeStatus.ISSUED)

        targets = cls._counter_targets(redemption.customer_id, redemption.store_id, redemption.usage_period)
        for scope, (subject, period) in targets.items():
            CouponUsageCounter.release(redemption.coupon_id, scope, subject, period)

    # ---- queries ---------------------------------------------------------

    @classmethod
    def customer_redemptions(cls, customer_id: str, status: str | None = None) -> QuerySet[CouponRedemption]:
        redemptions = CouponRedemption.objects.filter(customer_id=customer_id).select_related("coupon")
        if status:
            redemptions = redemptions.filter(status=status)
        return redemptions.order_by("-created_at")

    @classmethod
    def store_redemptions(
        cls,
        store_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
    ) -> QuerySet[CouponRedemption]:
        redemptions = CouponRedemption.objects.filter(store_id=store_id).select_related("coupon")
        return _within_dates(redemptions, date_from, date_to).order_by("-created_at")


def _within_dates(
    redemptions: QuerySet[CouponRedemption],
    date_from: date | None,
    date_to: date | None,
) -> QuerySet[CouponRedemption]:
    if date_from:
        redemptions = redemptions.filter(created_at__date__gte=date_from)
    if date_to:
        redemptions = redemptions.filter(created_at__date__lte=date_to)
    return redemptions


# ===============================================================================
# Coupon Analytics Service
# ===============================================================================


class CouponAnalyticsService:
    """Read-only roll-ups of codes and redemptions."""

    @classmethod
    def get_coupon_analytics(
        cls,
        coupon_id: str,
        date_from: date | None = None,
        date_to: date | None = None,
        recent_limit: int = 10,
    ) -> CouponAnalytics:
        coupon = CouponDefinitionService.get_coupon(coupon_id)
        redemptions = _within_dates(coupon.redemptions.all(), date_from, date_to)

        return CouponAnalytics(
            coupon_id=coupon.coupon_id,
            name=coupon.name,
            status=coupon.status,
            date_from=date_from,
            date_to=date_to,
            code_stats=cls._code_stats(coupon),
            redemption_stats=cls._redemption_stats(redemptions),
            daily=cls._daily(redemptions),
            recent_redemptions=[
                {
                    "redemption_id": r.redemption_id,
                    "code": r.code_value,
                    "customer_id": r.customer_id,
                    "store_id": r.store_id,
                    "order_id": r.order_id,
                    "discount_amount": r.discount_amount,
                    "status": r.status,
                    "created_at": r.created_at,
                }
                for r in redemptions.order_by("-created_at")[:recent_limit]
            ],
        )

    @staticmethod
    def _code_stats(coupon: Coupon) -> dict[str, Any]:
        stats = coupon.codes.aggregate(
            total=Count("id"),
            issued=Count("id", filter=Q(status=CodeStatus.ISSUED)),
            redeemed=Count("id", filter=Q(status=CodeStatus.REDEEMED)),
            revoked=Count("id", filter=Q(status=CodeStatus.REVOKED)),
            expired=Count("id", filter=Q(status=CodeStatus.EXPIRED)),
            used=Count("id", filter=Q(usage_count__gt=0)),
            assigned=Count("id", filter=Q(assigned_customer_id__isnull=False)),
        )
        total = stats["total"]
        stats["redemption_rate"] = (
            (Decimal(stats["used"]) * 100 / total).quantize(Decimal("0.01")) if total else Decimal("0.00")
        )
        return stats

    @staticmethod
    def _redemption_stats(redemptions: QuerySet[CouponRedemption]) -> dict[str, Any]:
        active = Q(status=RedemptionStatus.ACTIVE)
        stats = redemptions.aggregate(
            total=Count("id"),
            active=Count("id", filter=active),
            cancelled=Count("id", filter=Q(status=RedemptionStatus.CANCELLED)),
            refunded=Count("id", filter=Q(status=RedemptionStatus.REFUNDED)),
            total_discount=Sum("discount_amount", filter=active),
            total_order_value=Sum("pre_discount_amount", filter=active),
            total_refunded=Sum("refund_amount"),
            unique_customers=Count("customer_id", distinct=True, filter=active),
        )
        for key in ("total_discount", "total_order_value", "total_refunded"):
            stats[key] = to_money(stats[key] or ZERO)
        stats["average_discount"] = (
            to_money(stats["total_discount"] / stats["active"]) if stats["active"] else Decimal("0.00")
        )
        stats["discount_percentage"] = (
            to_money(stats["total_discount"] * 100 / stats["total_order_value"])
            if stats["total_order_value"]
            else Decimal("0.00")
        )
        return stats

    @staticmethod
    def _daily(redemptions: QuerySet[CouponRedemption]) -> list[dict[str, Any]]:
        rows = (
            redemptions.annotate(day=TruncDate("created_at"))
            .values("day")
            .annotate(
                redemptions=Count("id"),
                active=Count("id", filter=Q(status=RedemptionStatus.ACTIVE)),
                discount=Sum("discount_amount", filter=Q(status=RedemptionStatus.ACTIVE)),
            )
            .order_by("day")
        )
        return [
            {
                "date": row["day"],
                "redemptions": row["redemptions"],
                "active": row["active"],
                "discount": to_money(row["discount"] or ZERO),
            }
            for row in rows
        ]
