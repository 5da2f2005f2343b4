"""
Tests for coupon model constraints and helpers.
"""

from datetime import timedelta
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import ProtectedError
from django.test import SimpleTestCase, TestCase
from django.utils import timezone

from apps.coupons.cart import CartLine, RedemptionContext, to_money
from apps.coupons.models import CodeStatus, CounterScope, Coupon, CouponUsageCounter, DiscountType
from tests.factories import create_code, create_coupon, make_cart


class CouponModelTests(TestCase):
    """Test coupon normalization and constraints"""

    def test_identifiers_are_normalized(self):
        """Test ids, channels and prefixes are upper-cased on save."""
        coupon = create_coupon(coupon_id=' cpn-lower ', channels=['pos', 'ecom'], code_prefix='fest')

        coupon.refresh_from_db()
        self.assertEqual(coupon.coupon_id, 'CPN-LOWER')
        self.assertEqual(coupon.channels, ['POS', 'ECOM'])
        self.assertEqual(coupon.code_prefix, 'FEST')

    def test_validity_window_constraint(self):
        """Test the database rejects an inverted window."""
        now = timezone.now()
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_coupon(valid_from=now, valid_until=now - timedelta(days=1))

    def test_missing_parameters(self):
        """Test completeness checks per discount type."""
        cases = [
            (Coupon(discount_type=DiscountType.PERCENT, percent_off=Decimal('10')), 0),
            (Coupon(discount_type=DiscountType.PERCENT, percent_off=Decimal('0')), 1),
            (Coupon(discount_type=DiscountType.AMOUNT), 1),
            (Coupon(discount_type=DiscountType.BOGO, bogo_x=2, bogo_y=1), 0),
            (Coupon(discount_type=DiscountType.BOGO, bogo_x=2, bogo_y=2), 1),
            (Coupon(discount_type=DiscountType.BOGO, bogo_x=3, bogo_y=1, bogo_reward='PERCENTAGE_OFF'), 1),
            (Coupon(discount_type=DiscountType.YOPO, yopo_group_size=3), 0),
            (Coupon(discount_type=DiscountType.FREE_ITEM, free_item_sku='GIFT-TOTE'), 0),
            (Coupon(discount_type=DiscountType.SHIPPING_OFF), 0),
        ]
        for coupon, expected in cases:
            with self.subTest(discount_type=coupon.discount_type):
                self.assertEqual(len(coupon.missing_parameters()), expected)

    def test_usable_codes(self):
        """Test usable codes are ISSUED and below max_uses."""
        coupon = create_coupon()
        create_code(coupon, code='OK1')
        create_code(coupon, code='USED1', usage_count=1, status=CodeStatus.REDEEMED)
        create_code(coupon, code='REV1', status=CodeStatus.REVOKED)

        self.assertEqual(list(coupon.usable_codes().values_list('code', flat=True)), ['OK1'])
        self.assertFalse(coupon.has_redemptions)


class CouponCodeModelTests(TestCase):
    """Test code constraints"""

    def setUp(self):
        self.coupon = create_coupon()

    def test_code_is_uppercased_and_unique(self):
        """Test codes are stored upper-case and globally unique."""
        code = create_code(self.coupon, code='mixed1')
        self.assertEqual(code.code, 'MIXED1')

        other = create_coupon()
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_code(other, code='MIXED1')

    def test_usage_cannot_exceed_max(self):
        """Test the usage check constraint."""
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_code(self.coupon, usage_count=2, max_uses=1)

    def test_max_uses_must_be_positive(self):
        """Test max_uses of zero is rejected."""
        with self.assertRaises(IntegrityError), transaction.atomic():
            create_code(self.coupon, max_uses=0)

    def test_remaining_uses_and_expiry(self):
        """Test derived properties."""
        code = create_code(self.coupon, max_uses=5, usage_count=2, expires_at=timezone.now() - timedelta(seconds=1))
        self.assertEqual(code.remaining_uses, 3)
        self.assertTrue(code.is_past_expiry)

    def test_coupon_cannot_be_deleted_with_codes(self):
        """Test codes protect their coupon."""
        create_code(self.coupon)
        with self.assertRaises(ProtectedError):
            Coupon.objects.filter(pk=self.coupon.pk).delete()


class UsageCounterTests(TestCase):
    """Test conditional counter claims"""

    def setUp(self):
        self.coupon = create_coupon()

    def test_claim_respects_limit(self):
        """Test claims stop at the limit."""
        def claim():
            return CouponUsageCounter.claim(self.coupon.pk, CounterScope.CUSTOMER_DAILY, 'CUST-1', '2026-10-17', 2)

        self.assertEqual([claim(), claim(), claim()], [True, True, False])
        self.assertEqual(
            CouponUsageCounter.current(self.coupon.pk, CounterScope.CUSTOMER_DAILY, 'CUST-1', '2026-10-17'), 2
        )

    def test_unlimited_claims_still_count(self):
        """Test a None limit always succeeds and keeps counting."""
        for _ in range(3):
            self.assertTrue(CouponUsageCounter.claim(self.coupon.pk, CounterScope.GLOBAL, '', '', None))
        self.assertEqual(CouponUsageCounter.current(self.coupon.pk, CounterScope.GLOBAL), 3)

    def test_periods_are_independent(self):
        """Test daily counters reset by period."""
        CouponUsageCounter.claim(self.coupon.pk, CounterScope.STORE_DAILY, 'STORE-1', '2026-10-17', 1)
        self.assertTrue(CouponUsageCounter.claim(self.coupon.pk, CounterScope.STORE_DAILY, 'STORE-1', '2026-10-18', 1))

    def test_release_never_goes_negative(self):
        """Test release stops at zero."""
        CouponUsageCounter.claim(self.coupon.pk, CounterScope.GLOBAL, '', '', None)
        CouponUsageCounter.release(self.coupon.pk, CounterScope.GLOBAL, '', '')
        CouponUsageCounter.release(self.coupon.pk, CounterScope.GLOBAL, '', '')
        self.assertEqual(CouponUsageCounter.current(self.coupon.pk, CounterScope.GLOBAL), 0)


class CartTests(SimpleTestCase):
    """Test cart parsing"""

    def test_to_money_rounds_half_up(self):
        """Test money conversion."""
        self.assertEqual(to_money('10.005'), Decimal('10.01'))
        self.assertEqual(to_money(0.1), Decimal('0.10'))
        with self.assertRaises(ValueError):
            to_money('abc')

    def test_cart_totals(self):
        """Test subtotal, quantity and sets."""
        cart = make_cart(('A', 2, '10.00', 'SHOES', 'SUMMER'), ('B', 1, '5.50', 'BAGS'), shipping='40')
        self.assertEqual(cart.subtotal, Decimal('25.50'))
        self.assertEqual(cart.total_qty, 3)
        self.assertEqual(cart.categories, frozenset({'SHOES', 'BAGS'}))
        self.assertEqual(cart.collections, frozenset({'SUMMER'}))
        self.assertEqual(cart.shipping, Decimal('40.00'))

    def test_invalid_lines(self):
        """Test bad quantities, prices and missing prices."""
        with self.assertRaises(ValueError):
            CartLine(sku='A', qty=0, unit_price=Decimal('1'))
        with self.assertRaises(ValueError):
            CartLine(sku='A', qty=1, unit_price=Decimal('-1'))
        with self.assertRaises(ValueError):
            CartLine.from_dict({'sku': 'A', 'qty': 1})

    def test_context_from_dict_keeps_unknown_keys(self):
        """Test unknown context keys are kept aside."""
        context = RedemptionContext.from_dict({'payment_method': 'UPI', 'loyalty_tier': 'GOLD'})
        self.assertEqual(context.payment_method, 'UPI')
        self.assertEqual(context.extra, {'loyalty_tier': 'GOLD'})
