"""
Tests for coupon authoring and lifecycle transitions.
"""

from datetime import timedelta
from decimal import Decimal

from django.core.exceptions import ValidationError
from django.test import TestCase
from django.utils import timezone

from apps.coupons.exceptions import CouponNotFound, CouponStateError
from apps.coupons.models import Coupon, CouponAuditEntry, CouponStatus, DiscountType
from apps.coupons.services import CouponCodeService, CouponDefinitionService, CouponRedemptionService
from tests.factories import create_code, create_coupon, make_cart


def draft_data(**overrides):
    now = timezone.now()
    data = {
        'name': 'Diwali 10%',
        'discount_type': DiscountType.PERCENT,
        'percent_off': Decimal('10'),
        'valid_from': now - timedelta(hours=1),
        'valid_until': now + timedelta(days=10),
    }
    data.update(overrides)
    return data


class CouponCreationTests(TestCase):
    """Test coupon creation"""

    def test_create_coupon_starts_as_draft(self):
        """Test new coupons get a business id and start as DRAFT."""
        coupon = CouponDefinitionService.create_coupon(draft_data(), actor_id='ops-1')

        self.assertEqual(coupon.status, CouponStatus.DRAFT)
        self.assertRegex(coupon.coupon_id, r'^CPN-\d{8}-[A-Z0-9]{6}$')
        self.assertEqual(coupon.created_by, 'ops-1')
        self.assertTrue(
            CouponAuditEntry.objects.filter(coupon=coupon, action='coupon_created', actor_id='ops-1').exists()
        )

    def test_create_coupon_keeps_given_id(self):
        """Test an explicit coupon_id is kept and upper-cased."""
        coupon = CouponDefinitionService.create_coupon(draft_data(coupon_id='summer-sale'))
        self.assertEqual(coupon.coupon_id, 'SUMMER-SALE')

    def test_create_coupon_rejects_unknown_fields(self):
        """Test unknown fields are rejected."""
        with self.assertRaises(ValueError):
            CouponDefinitionService.create_coupon(draft_data(colour='red'))

    def test_create_coupon_rejects_status(self):
        """Test status cannot be set on create."""
        with self.assertRaises(ValueError):
            CouponDefinitionService.create_coupon(draft_data(status=CouponStatus.ACTIVE))

    def test_create_coupon_validates_window(self):
        """Test an inverted validity window fails validation."""
        now = timezone.now()
        with self.assertRaises(ValidationError):
            CouponDefinitionService.create_coupon(draft_data(valid_from=now, valid_until=now - timedelta(days=1)))
        self.assertFalse(Coupon.objects.exists())

    def test_create_coupon_validates_weekdays(self):
        """Test weekdays outside 1..7 fail validation."""
        with self.assertRaises(ValidationError):
            CouponDefinitionService.create_coupon(draft_data(weekdays=[0, 8]))

    def test_get_coupon_not_found(self):
        """Test unknown ids raise CouponNotFound."""
        with self.assertRaises(CouponNotFound):
            CouponDefinitionService.get_coupon('CPN-NOPE')


class CouponActivationTests(TestCase):
    """Test activation requirements"""

    def test_activate_with_usable_code(self):
        """Test a complete draft with a code activates."""
        coupon = CouponDefinitionService.create_coupon(draft_data())
        create_code(coupon)

        result = CouponDefinitionService.activate(coupon.coupon_id, actor_id='ops-1')

        self.assertTrue(result.is_ok())
        coupon.refresh_from_db()
        self.assertEqual(coupon.status, CouponStatus.ACTIVE)
        self.assertIsNotNone(coupon.activated_at)
        self.assertTrue(CouponAuditEntry.objects.filter(coupon=coupon, action='coupon_activated').exists())

    def test_activate_without_codes_fails(self):
        """Test activation needs a usable code or an auto-generation policy."""
        coupon = CouponDefinitionService.create_coupon(draft_data())

        result = CouponDefinitionService.activate(coupon.coupon_id)

        self.assertTrue(result.is_err())
        self.assertIn('no usable codes', result.error)
        coupon.refresh_from_db()
        self.assertEqual(coupon.status, CouponStatus.DRAFT)

    def test_activate_generates_codes_from_policy(self):
        """Test auto_code_count issues codes on activation."""
        coupon = CouponDefinitionService.create_coupon(
            draft_data(auto_code_count=5, code_prefix='fest', code_length=6)
        )

        result = CouponDefinitionService.activate(coupon.coupon_id)

        self.assertTrue(result.is_ok())
        codes = list(coupon.codes.values_list('code', flat=True))
        self.assertEqual(len(codes), 5)
        for code in codes:
            self.assertTrue(code.startswith('FEST'))
            self.assertEqual(len(code), 10)

    def test_activate_requires_complete_parameters(self):
        """Test incomplete discount parameters block activation."""
        cases = [
            draft_data(percent_off=None),
            draft_data(discount_type=DiscountType.AMOUNT, percent_off=None),
            draft_data(discount_type=DiscountType.BOGO, bogo_x=1, bogo_y=1),
            draft_data(discount_type=DiscountType.YOPO, yopo_group_size=1),
            draft_data(discount_type=DiscountType.FREE_ITEM),
        ]
        for data in cases:
            with self.subTest(discount_type=data['discount_type']):
                coupon = CouponDefinitionService.create_coupon(data)
                create_code(coupon)
                result = CouponDefinitionService.activate(coupon.coupon_id)
                self.assertTrue(result.is_err())
                self.assertIn('Incomplete discount parameters', result.error)

    def test_activate_requires_window(self):
        """Test a coupon without a validity window cannot activate."""
        coupon = CouponDefinitionService.create_coupon(draft_data(valid_from=None))
        create_code(coupon)

        result = CouponDefinitionService.activate(coupon.coupon_id)

        self.assertTrue(result.is_err())
        self.assertIn('validity window', result.error)

    def test_activate_rejects_ended_window(self):
        """Test a window in the past blocks activation."""
        now = timezone.now()
        coupon = CouponDefinitionService.create_coupon(
            draft_data(valid_from=now - timedelta(days=5), valid_until=now - timedelta(days=1))
        )
        create_code(coupon)

        result = CouponDefinitionService.activate(coupon.coupon_id)

        self.assertTrue(result.is_err())
        self.assertIn('already ended', result.error)

    def test_activate_is_idempotent(self):
        """Test activating an ACTIVE coupon is a no-op success."""
        coupon = create_coupon()

        result = CouponDefinitionService.activate(coupon.coupon_id)

        self.assertTrue(result.is_ok())
        self.assertFalse(CouponAuditEntry.objects.filter(coupon=coupon, action='coupon_activated').exists())


class CouponTransitionTests(TestCase):
    """Test pause, resume and archive"""

    def test_pause_and_resume(self):
        """Test ACTIVE → PAUSED → ACTIVE."""
        coupon = create_coupon()
        create_code(coupon)

        self.assertTrue(CouponDefinitionService.pause(coupon.coupon_id, reason='stock-out').is_ok())
        coupon.refresh_from_db()
        self.assertEqual(coupon.status, CouponStatus.PAUSED)

        self.assertTrue(CouponDefinitionService.activate(coupon.coupon_id).is_ok())
        coupon.refresh_from_db()
        self.assertEqual(coupon.status, CouponStatus.ACTIVE)

        entry = CouponAuditEntry.objects.get(coupon=coupon, action='coupon_paused')
        self.assertEqual(entry.reason, 'stock-out')

    def test_pause_draft_is_invalid(self):
        """Test DRAFT cannot be paused."""
        coupon = CouponDefinitionService.create_coupon(draft_data())

        result = CouponDefinitionService.pause(coupon.coupon_id)

        self.assertTrue(result.is_err())
        self.assertIn('Invalid status transition', result.error)

    def test_archive_is_terminal(self):
        """Test archived coupons refuse every transition, archive included."""
        coupon = create_coupon()
        self.assertTrue(CouponDefinitionService.archive(coupon.coupon_id).is_ok())
        coupon.refresh_from_db()
        self.assertIsNotNone(coupon.archived_at)

        for transition in (
            CouponDefinitionService.activate,
            CouponDefinitionService.pause,
            CouponDefinitionService.archive,
        ):
            with self.subTest(transition=transition.__name__):
                result = transition(coupon.coupon_id)
                self.assertTrue(result.is_err())
                self.assertIn('archived', result.error)

    def test_archive_draft(self):
        """Test DRAFT coupons can be archived directly."""
        coupon = CouponDefinitionService.create_coupon(draft_data())
        self.assertTrue(CouponDefinitionService.archive(coupon.coupon_id).is_ok())

    def test_transition_unknown_coupon(self):
        """Test transitions on unknown ids raise CouponNotFound."""
        with self.assertRaises(CouponNotFound):
            CouponDefinitionService.pause('CPN-MISSING')


class CouponUpdateTests(TestCase):
    """Test coupon edits"""

    def test_update_fields(self):
        """Test a simple edit with audit trail."""
        coupon = create_coupon()

        result = CouponDefinitionService.update_coupon(
            coupon.coupon_id, {'percent_off': Decimal('15'), 'name': 'Bigger'}, actor_id='ops-2'
        )

        self.assertTrue(result.is_ok())
        coupon.refresh_from_db()
        self.assertEqual(coupon.percent_off, Decimal('15'))
        self.assertEqual(coupon.name, 'Bigger')
        self.assertTrue(CouponAuditEntry.objects.filter(coupon=coupon, action='coupon_updated').exists())

    def test_update_rejects_coupon_id_change(self):
        """Test the business id is immutable."""
        coupon = create_coupon()
        result = CouponDefinitionService.update_coupon(coupon.coupon_id, {'coupon_id': 'OTHER'})
        self.assertTrue(result.is_err())

    def test_update_rejects_unknown_field(self):
        """Test unknown fields return an error."""
        coupon = create_coupon()
        result = CouponDefinitionService.update_coupon(coupon.coupon_id, {'colour': 'red'})
        self.assertTrue(result.is_err())

    def test_update_archived_coupon(self):
        """Test archived coupons cannot be edited."""
        coupon = create_coupon(status=CouponStatus.ARCHIVED)
        result = CouponDefinitionService.update_coupon(coupon.coupon_id, {'name': 'x'})
        self.assertTrue(result.is_err())

    def test_policy_frozen_after_redemption(self):
        """Test policy fields freeze once a redemption exists, other fields stay editable."""
        coupon = create_coupon()
        code = create_code(coupon)
        applied = CouponRedemptionService.apply_coupon(
            code.code, 'CUST-1', 'STORE-1', 'ECOM', 'ORD-1', make_cart(('SKU-1', 1, '100.00'))
        )
        self.assertTrue(applied.success)

        frozen = CouponDefinitionService.update_coupon(coupon.coupon_id, {'percent_off': Decimal('50')})
        self.assertTrue(frozen.is_err())
        self.assertIn('percent_off', frozen.error)

        renamed = CouponDefinitionService.update_coupon(coupon.coupon_id, {'name': 'Renamed'})
        self.assertTrue(renamed.is_ok())

    def test_update_invalidates_cached_policy(self):
        """Test validation sees edits immediately."""
        coupon = create_coupon()
        code = create_code(coupon)
        cart = make_cart(('SKU-1', 1, '100.00'))

        before = CouponRedemptionService.validate_coupon(code.code, 'CUST-1', 'STORE-1', 'ECOM', cart)
        self.assertEqual(before.computed_discount, Decimal('10.00'))

        CouponDefinitionService.update_coupon(coupon.coupon_id, {'percent_off': Decimal('20')})

        after = CouponRedemptionService.validate_coupon(code.code, 'CUST-1', 'STORE-1', 'ECOM', cart)
        self.assertEqual(after.computed_discount, Decimal('20.00'))

    def test_codes_survive_archive(self):
        """Test archiving keeps existing codes but blocks new ones."""
        coupon = create_coupon()
        create_code(coupon)
        CouponDefinitionService.archive(coupon.coupon_id)

        self.assertEqual(coupon.codes.count(), 1)
        with self.assertRaises(CouponStateError):
            CouponCodeService.generate_bulk_codes(coupon.coupon_id, 1)
