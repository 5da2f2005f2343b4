"""
Tests for coupon background tasks.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone

from apps.coupons import tasks
from apps.coupons.models import CodeStatus, CouponCode
from apps.coupons.services import CodeAssignment
from tests.factories import create_code, create_coupon


class DeliverCouponCodeTests(TestCase):
    """Test the delivery task"""

    @patch('apps.coupons.tasks.get_notification_gateway')
    def test_delivery_success(self, mock_gateway_factory):
        """Test the gateway is called with the assignment."""
        gateway = MagicMock()
        mock_gateway_factory.return_value = gateway

        result = tasks.deliver_coupon_code('CUST-1', 'WELCOME1', 'Welcome offer', 'SMS')

        self.assertEqual(result, {'success': True, 'customer_id': 'CUST-1'})
        gateway.deliver.assert_called_once_with('CUST-1', 'WELCOME1', 'Welcome offer', 'SMS')

    @patch('apps.coupons.tasks.get_notification_gateway')
    def test_delivery_failure_is_reported(self, mock_gateway_factory):
        """Test gateway errors are logged and returned, not raised."""
        gateway = MagicMock()
        gateway.deliver.side_effect = ConnectionError('SMS provider down')
        mock_gateway_factory.return_value = gateway

        result = tasks.deliver_coupon_code('CUST-1', 'WELCOME1', 'Welcome offer')

        self.assertFalse(result['success'])
        self.assertIn('SMS provider down', result['error'])

    def test_default_gateway_logs(self):
        """Test the default gateway accepts deliveries."""
        result = tasks.deliver_coupon_code('CUST-1', 'WELCOME1', 'Welcome offer')
        self.assertTrue(result['success'])


class QueueTaskTests(TestCase):
    """Test queue wrappers"""

    @patch('apps.coupons.tasks.async_task')
    def test_queue_code_distribution(self, mock_async_task):
        """Test one task per assignment with a stable name."""
        mock_async_task.side_effect = ['t1', 't2']
        assignments = [CodeAssignment('CUST-1', 'CODE1'), CodeAssignment('CUST-2', 'CODE2')]

        task_ids = tasks.queue_code_distribution(assignments, 'Welcome offer', 'EMAIL')

        self.assertEqual(task_ids, ['t1', 't2'])
        mock_async_task.assert_any_call(
            'apps.coupons.tasks.deliver_coupon_code',
            'CUST-2',
            'CODE2',
            'Welcome offer',
            'EMAIL',
            task_name='deliver_coupon_CODE2',
            timeout=tasks.TASK_TIME_LIMIT,
        )

    @patch('apps.coupons.tasks.async_task', return_value='t-expire')
    def test_expire_coupon_codes_async(self, mock_async_task):
        """Test the expiry wrapper queues the expiry task."""
        self.assertEqual(tasks.expire_coupon_codes_async(), 't-expire')
        mock_async_task.assert_called_once_with('apps.coupons.tasks.expire_coupon_codes', timeout=tasks.TASK_TIME_LIMIT)


class ExpireCouponCodesTaskTests(TestCase):
    """Test the expiry task and command"""

    def setUp(self):
        coupon = create_coupon()
        create_code(coupon, code='STALE1', expires_at=timezone.now() - timedelta(hours=1))
        create_code(coupon, code='FRESH1')

    def test_expire_task(self):
        """Test the task expires past-due codes."""
        result = tasks.expire_coupon_codes()

        self.assertEqual(result, {'success': True, 'expired': 1})
        self.assertEqual(CouponCode.objects.get(code='STALE1').status, CodeStatus.EXPIRED)
        self.assertEqual(CouponCode.objects.get(code='FRESH1').status, CodeStatus.ISSUED)

    def test_expire_command(self):
        """Test the management command runs the expiry inline."""
        call_command('expire_coupon_codes', verbosity=0)
        self.assertEqual(CouponCode.objects.get(code='STALE1').status, CodeStatus.EXPIRED)

    @patch('apps.coupons.tasks.async_task', return_value='t-1')
    def test_expire_command_async(self, mock_async_task):
        """Test --async queues instead of running inline."""
        call_command('expire_coupon_codes', '--async', verbosity=0)

        mock_async_task.assert_called_once()
        self.assertEqual(CouponCode.objects.get(code='STALE1').status, CodeStatus.ISSUED)
