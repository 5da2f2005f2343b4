"""
External collaborators used by the coupon engine.

Each collaborator is configured by dotted path in ``settings.COUPONS`` and
loaded with ``import_string``:

- Catalog: free-item price lookup
- Order history: prior order count for first-order-only coupons
- Store directory: which stores and channels are live
- Notification gateway: delivery of issued codes to customers
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol

import requests
from django.utils.module_loading import import_string

from apps.common.types import Amount, Sku

from .cart import to_money
from .conf import coupon_setting
from .exceptions import DependencyUnavailable
from .models import Channel, CouponRedemption, RedemptionStatus

logger = logging.getLogger(__name__)

# HTTP status codes below this are considered successful
HTTP_SUCCESS_THRESHOLD = 400
HTTP_NOT_FOUND = 404


class OrderHistory(Protocol):
    def prior_order_count(self, customer_id: str) -> int: ...


class StoreDirectory(Protocol):
    def is_known_store(self, store_id: str) -> bool: ...

    def is_enabled_channel(self, channel: str) -> bool: ...


class NotificationGateway(Protocol):
    def deliver(self, customer_id: str, code: str, coupon_name: str, channel: str = "") -> None: ...


# ===============================================================================
# CATALOG
# ===============================================================================


class StaticPriceCatalog:
    """Prices from ``COUPONS["STATIC_CATALOG_PRICES"]``. Unknown SKUs return None."""

    def __init__(self, prices: dict[str, Any] | None = None) -> None:
        if prices is None:
            prices = coupon_setting("STATIC_CATALOG_PRICES")
        self.prices = {sku: to_money(price) for sku, price in prices.items()}

    def get_price(self, sku: Sku) -> Amount | None:
        return self.prices.get(sku)


class HttpCatalogClient:
    """
    Catalog lookups over HTTP: ``GET {CATALOG_URL}/products/{sku}``.

    One attempt with a short timeout; the apply path must not block on the
    catalog, so there are no retries here.
    """

    def __init__(self, base_url: str | None = None, timeout: float | None = None) -> None:
        self.base_url = (base_url or coupon_setting("CATALOG_URL")).rstrip("/")
        self.timeout = timeout if timeout is not None else coupon_setting("CATALOG_TIMEOUT")
        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "Retail-Coupons/1.0", "Accept": "application/json"})

    def get_price(self, sku: Sku) -> Amount | None:
        if not self.base_url:
            raise DependencyUnavailable("catalog", "CATALOG_URL is not configured")
        url = f"{self.base_url}/products/{sku}"
        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.Timeout as e:
            logger.error("Catalog request timed out for %s", sku, extra={"sku": sku, "url": url})
            raise DependencyUnavailable("catalog", "request timed out") from e
        except requests.exceptions.RequestException as e:
            logger.error("Catalog request failed for %s: %s", sku, e, extra={"sku": sku, "url": url})
            raise DependencyUnavailable("catalog", str(e)) from e

        if response.status_code == HTTP_NOT_FOUND:
            return None
        if response.status_code >= HTTP_SUCCESS_THRESHOLD:
            logger.error(
                "Catalog returned HTTP %s for %s",
                response.status_code,
                sku,
                extra={"sku": sku, "status_code": response.status_code},
            )
            raise DependencyUnavailable("catalog", f"HTTP {response.status_code}")

        try:
            payload = response.json()
            price = payload.get("price")
            return None if price is None else to_money(Decimal(str(price)))
        except (ValueError, AttributeError, InvalidOperation) as e:
            raise DependencyUnavailable("catalog", f"malformed response for {sku}") from e


# ===============================================================================
# ORDER HISTORY / STORE DIRECTORY / NOTIFICATIONS
# ===============================================================================


class RedemptionOrderHistory:
    """Counts the customer's past orders that carried a coupon and were not cancelled."""

    def prior_order_count(self, customer_id: str) -> int:
        return (
            CouponRedemption.objects.filter(
                customer_id=customer_id,
                status__in=[RedemptionStatus.ACTIVE, RedemptionStatus.REFUNDED],
            )
            .values("order_id")
            .distinct()
            .count()
        )


class OpenStoreDirectory:
    """Every store is known; the standard channels are enabled."""

    def is_known_store(self, store_id: str) -> bool:
        return bool(store_id)

    def is_enabled_channel(self, channel: str) -> bool:
        return channel in {c.value for c in Channel}


class LoggingNotificationGateway:
    """Records deliveries in the log instead of sending them."""

    def deliver(self, customer_id: str, code: str, coupon_name: str, channel: str = "") -> None:
        logger.info(
            "Coupon code delivered to customer %s for %s",
            customer_id,
            coupon_name,
            extra={"customer_id": customer_id, "coupon_name": coupon_name, "channel": channel},
        )


def load_backend(setting_name: str) -> Any:
    """Instantiate the collaborator configured under ``setting_name``."""
    return import_string(coupon_setting(setting_name))()


def get_catalog() -> Any:
    return load_backend("CATALOG_BACKEND")


def get_order_history() -> OrderHistory:
    return load_backend("ORDER_HISTORY_BACKEND")


def get_store_directory() -> StoreDirectory:
    return load_backend("STORE_DIRECTORY_BACKEND")


def get_notification_gateway() -> NotificationGateway:
    return load_backend("NOTIFICATION_BACKEND")
