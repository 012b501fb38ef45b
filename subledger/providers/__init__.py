from typing import Dict, Iterator, Optional

from flask import current_app

from .base import BillingProvider, Capability, ProviderResult
from .paypal_provider import PayPalProvider
from .stripe_provider import StripeProvider


class ProviderRegistry:
    """Named adapters for one app. Tests register fakes under the same names."""

    def __init__(self, default: Optional[str] = None):
        self._providers: Dict[str, BillingProvider] = {}
        self.default = default

    def register(self, provider: BillingProvider, name: Optional[str] = None) -> BillingProvider:
        self._providers[(name or provider.name).lower()] = provider
        return provider

    def get(self, name: Optional[str]) -> Optional[BillingProvider]:
        key = (name or self.default or "").lower()
        return self._providers.get(key)

    def names(self):
        return sorted(self._providers)

    def __contains__(self, name) -> bool:
        return (name or "").lower() in self._providers

    def __iter__(self) -> Iterator[BillingProvider]:
        return iter(self._providers.values())


def init_providers(app) -> ProviderRegistry:
    cfg = app.config
    registry = ProviderRegistry(default=cfg.get("DEFAULT_PROVIDER"))
    registry.register(StripeProvider(
        cfg.get("STRIPE_SECRET_KEY"),
        cfg.get("STRIPE_WEBHOOK_SECRET"),
        meter_event_name=cfg.get("STRIPE_METER_EVENT_NAME"),
    ))
    registry.register(PayPalProvider(
        cfg.get("PAYPAL_CLIENT_ID"),
        cfg.get("PAYPAL_CLIENT_SECRET"),
        webhook_id=cfg.get("PAYPAL_WEBHOOK_ID"),
        environment=cfg.get("PAYPAL_ENVIRONMENT", "sandbox"),
        timeout=cfg.get("PROVIDER_TIMEOUT_SECONDS", 15.0),
        brand_name=cfg.get("BRAND_NAME", ""),
        base_app_url=cfg.get("APP_BASE_URL", ""),
    ))
    app.extensions["billing_providers"] = registry
    return registry


def get_registry() -> ProviderRegistry:
    return current_app.extensions["billing_providers"]


__all__ = [
    "BillingProvider",
    "Capability",
    "ProviderResult",
    "ProviderRegistry",
    "StripeProvider",
    "PayPalProvider",
    "init_providers",
    "get_registry",
]
