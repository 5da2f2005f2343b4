"""
Tests for coupon analytics roll-ups.
"""

from decimal import Decimal

from django.test import TestCase
from django.utils import timezone

from apps.coupons.exceptions import CouponNotFound
from apps.coupons.models import CodeDistribution, CodeStatus
from apps.coupons.services import CouponAnalyticsService, CouponRedemptionService
from tests.factories import create_code, create_coupon, make_cart


class CouponAnalyticsTests(TestCase):
    """Test get_coupon_analytics"""

    def setUp(self):
        self.coupon = create_coupon(name='Monsoon')
        generic = create_code(self.coupon, code='MONSOON', distribution=CodeDistribution.GENERIC, max_uses=10)
        create_code(self.coupon, code='SPARE1')
        create_code(self.coupon, code='SPARE2', status=CodeStatus.REVOKED)
        create_code(self.coupon, code='SPARE3', assigned_customer_id='CUST-9')

        cart = make_cart(('SKU-1', 1, '1000.00'))
        for order_id, customer_id in (('ORD-1', 'CUST-1'), ('ORD-2', 'CUST-2'), ('ORD-3', 'CUST-1')):
            result = CouponRedemptionService.apply_coupon(
                generic.code, customer_id, 'STORE-1', 'POS', order_id, cart
            )
            self.assertTrue(result.success)
        CouponRedemptionService.cancel_redemption('ORD-2')
        CouponRedemptionService.refund_redemption('ORD-3', refund_id='RF-1', amount='40')

    def test_code_stats(self):
        """Test code counts by status and usage."""
        stats = CouponAnalyticsService.get_coupon_analytics(self.coupon.coupon_id).code_stats

        self.assertEqual(stats['total'], 4)
        self.assertEqual(stats['issued'], 3)
        self.assertEqual(stats['revoked'], 1)
        self.assertEqual(stats['redeemed'], 0)
        self.assertEqual(stats['used'], 1)
        self.assertEqual(stats['assigned'], 1)
        self.assertEqual(stats['redemption_rate'], Decimal('25.00'))

    def test_redemption_stats(self):
        """Test totals count only ACTIVE redemptions as discount given."""
        analytics = CouponAnalyticsService.get_coupon_analytics(self.coupon.coupon_id)
        stats = analytics.redemption_stats

        self.assertEqual(analytics.name, 'Monsoon')
        self.assertEqual(stats['total'], 3)
        self.assertEqual(stats['active'], 1)
        self.assertEqual(stats['cancelled'], 1)
        self.assertEqual(stats['refunded'], 1)
        self.assertEqual(stats['total_discount'], Decimal('100.00'))
        self.assertEqual(stats['total_order_value'], Decimal('1000.00'))
        self.assertEqual(stats['total_refunded'], Decimal('40.00'))
        self.assertEqual(stats['unique_customers'], 1)
        self.assertEqual(stats['average_discount'], Decimal('100.00'))
        self.assertEqual(stats['discount_percentage'], Decimal('10.00'))

    def test_daily_series_and_recent(self):
        """Test the per-day series and recent list."""
        analytics = CouponAnalyticsService.get_coupon_analytics(self.coupon.coupon_id, recent_limit=2)

        self.assertEqual(len(analytics.daily), 1)
        day = analytics.daily[0]
        self.assertEqual(day['date'], timezone.localdate())
        self.assertEqual(day['redemptions'], 3)
        self.assertEqual(day['active'], 1)
        self.assertEqual(day['discount'], Decimal('100.00'))
        self.assertEqual(len(analytics.recent_redemptions), 2)

    def test_date_range_filters_redemptions(self):
        """Test a range outside the data yields empty redemption stats."""
        today = timezone.localdate()
        future = today.replace(year=today.year + 1)

        analytics = CouponAnalyticsService.get_coupon_analytics(self.coupon.coupon_id, date_from=future)

        self.assertEqual(analytics.redemption_stats['total'], 0)
        self.assertEqual(analytics.redemption_stats['total_discount'], Decimal('0.00'))
        self.assertEqual(analytics.redemption_stats['average_discount'], Decimal('0.00'))
        self.assertEqual(analytics.daily, [])
        self.assertEqual(analytics.code_stats['total'], 4)

    def test_unknown_coupon(self):
        """Test unknown coupons raise CouponNotFound."""
        with self.assertRaises(CouponNotFound):
            CouponAnalyticsService.get_coupon_analytics('CPN-MISSING')
