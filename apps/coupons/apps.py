"""
Coupons app configuration.
"""

from django.apps import AppConfig


class CouponsConfig(AppConfig):
    """Configuration for the Coupons app."""

    default_auto_field = "django.db.models.BigAutoField"
    name = "apps.coupons"
    verbose_name = "Promotions & Coupons"

    def ready(self) -> None:
        """Import signals when app is ready."""
        # Import signals to register them
        from . import signals  # noqa: F401
