"""
URL configuration for the coupon engine.
The engine is consumed through its service layer; no HTTP routes are exposed.
"""

from django.urls import URLPattern, URLResolver

urlpatterns: list[URLPattern | URLResolver] = []
