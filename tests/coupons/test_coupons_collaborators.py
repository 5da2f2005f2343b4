"""
Tests for the catalog, order history and store directory collaborators.
"""

from decimal import Decimal
from unittest.mock import MagicMock, patch

import requests
from django.test import SimpleTestCase, TestCase, override_settings

from apps.coupons.collaborators import (
    HttpCatalogClient,
    OpenStoreDirectory,
    RedemptionOrderHistory,
    StaticPriceCatalog,
    get_catalog,
)
from apps.coupons.exceptions import DependencyUnavailable
from apps.coupons.services import CouponRedemptionService
from tests.factories import create_code, create_coupon, make_cart


def catalog_response(status_code=200, payload=None):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload if payload is not None else {}
    return response


class StaticPriceCatalogTests(SimpleTestCase):
    """Test the settings-backed catalog"""

    def test_configured_prices(self):
        """Test prices come from settings."""
        catalog = StaticPriceCatalog()
        self.assertEqual(catalog.get_price('GIFT-TOTE'), Decimal('499.00'))
        self.assertIsNone(catalog.get_price('UNKNOWN'))

    def test_explicit_prices(self):
        """Test prices passed in are normalized to money."""
        catalog = StaticPriceCatalog({'MUG': 149.5})
        self.assertEqual(catalog.get_price('MUG'), Decimal('149.50'))

    def test_backend_from_settings(self):
        """Test get_catalog loads the configured class."""
        self.assertIsInstance(get_catalog(), StaticPriceCatalog)


class HttpCatalogClientTests(SimpleTestCase):
    """Test the HTTP catalog client"""

    def setUp(self):
        self.client = HttpCatalogClient(base_url='https://catalog.internal/api/', timeout=1.5)

    @patch.object(requests.Session, 'get')
    def test_price_lookup(self, mock_get):
        """Test a successful lookup parses the price."""
        mock_get.return_value = catalog_response(payload={'sku': 'GIFT-TOTE', 'price': '499'})

        self.assertEqual(self.client.get_price('GIFT-TOTE'), Decimal('499.00'))
        mock_get.assert_called_once_with('https://catalog.internal/api/products/GIFT-TOTE', timeout=1.5)

    @patch.object(requests.Session, 'get')
    def test_not_found_is_none(self, mock_get):
        """Test a 404 means the SKU has no price."""
        mock_get.return_value = catalog_response(status_code=404)
        self.assertIsNone(self.client.get_price('GONE'))

    @patch.object(requests.Session, 'get')
    def test_server_error(self, mock_get):
        """Test 5xx responses raise DependencyUnavailable."""
        mock_get.return_value = catalog_response(status_code=503)
        with self.assertRaises(DependencyUnavailable) as ctx:
            self.client.get_price('GIFT-TOTE')
        self.assertIn('HTTP 503', str(ctx.exception))

    @patch.object(requests.Session, 'get')
    def test_timeout(self, mock_get):
        """Test timeouts raise DependencyUnavailable."""
        mock_get.side_effect = requests.exceptions.Timeout()
        with self.assertRaises(DependencyUnavailable):
            self.client.get_price('GIFT-TOTE')

    @patch.object(requests.Session, 'get')
    def test_connection_error(self, mock_get):
        """Test connection errors raise DependencyUnavailable."""
        mock_get.side_effect = requests.exceptions.ConnectionError('refused')
        with self.assertRaises(DependencyUnavailable):
            self.client.get_price('GIFT-TOTE')

    @patch.object(requests.Session, 'get')
    def test_malformed_payload(self, mock_get):
        """Test unparseable prices raise DependencyUnavailable."""
        mock_get.return_value = catalog_response(payload={'price': 'n/a'})
        with self.assertRaises(DependencyUnavailable):
            self.client.get_price('GIFT-TOTE')

    def test_missing_url(self):
        """Test an unconfigured client refuses lookups."""
        with self.assertRaises(DependencyUnavailable):
            HttpCatalogClient(base_url='').get_price('GIFT-TOTE')


@override_settings(
    COUPONS={
        'CATALOG_BACKEND': 'apps.coupons.collaborators.HttpCatalogClient',
        'CATALOG_URL': 'https://catalog.internal/api',
    }
)
class HttpCatalogApplyTests(TestCase):
    """Test a catalog outage on the apply path"""

    @patch.object(requests.Session, 'get')
    def test_catalog_outage_aborts_apply(self, mock_get):
        """Test the apply fails loudly and writes nothing."""
        mock_get.side_effect = requests.exceptions.Timeout()
        coupon = create_coupon(discount_type='FREE_ITEM', percent_off=None, free_item_sku='GIFT-TOTE')
        code = create_code(coupon)

        with self.assertRaises(DependencyUnavailable):
            CouponRedemptionService.apply_coupon(
                code.code, 'CUST-1', 'STORE-1', 'ECOM', 'ORD-1', make_cart(('SKU-1', 1, '100.00'))
            )

        code.refresh_from_db()
        self.assertEqual(code.usage_count, 0)
        self.assertFalse(coupon.redemptions.exists())


class OrderHistoryAndStoreDirectoryTests(TestCase):
    """Test the default order history and store directory"""

    def test_prior_orders_ignore_cancelled(self):
        """Test cancelled redemptions do not count as prior orders."""
        coupon = create_coupon()
        first = create_code(coupon)
        second = create_code(coupon)
        cart = make_cart(('SKU-1', 1, '100.00'))
        CouponRedemptionService.apply_coupon(first.code, 'CUST-1', 'STORE-1', 'ECOM', 'ORD-1', cart)
        CouponRedemptionService.apply_coupon(second.code, 'CUST-1', 'STORE-1', 'ECOM', 'ORD-2', cart)
        CouponRedemptionService.cancel_redemption('ORD-2')

        history = RedemptionOrderHistory()

        self.assertEqual(history.prior_order_count('CUST-1'), 1)
        self.assertEqual(history.prior_order_count('CUST-2'), 0)

    def test_open_store_directory(self):
        """Test every non-empty store and the standard channels are accepted."""
        directory = OpenStoreDirectory()
        self.assertTrue(directory.is_known_store('STORE-77'))
        self.assertFalse(directory.is_known_store(''))
        self.assertTrue(directory.is_enabled_channel('MOBILE'))
        self.assertFalse(directory.is_enabled_channel('FAX'))
