# ===============================================================================
# TEST FACTORIES - CENTRALIZED TEST DATA GENERATION
# ===============================================================================
"""
Factory module for generating coupon test data.

Usage:
    from tests.factories import create_coupon, create_code, make_cart

    coupon = create_coupon(percent_off=Decimal('15'))
    code = create_code(coupon, code='FESTIVE15')
    cart = make_cart(('SKU-1', 2, '499.00'))
"""

from tests.factories.coupon_factories import (
    StaleUsageFacts,
    create_code,
    create_coupon,
    make_cart,
    make_policy,
)

__all__ = [
    'StaleUsageFacts',
    'create_code',
    'create_coupon',
    'make_cart',
    'make_policy',
]
