"""
Registry of configured payment providers.
"""
from typing import Dict, Iterable, Optional

from app.models.enums import Provider
from app.services.billing.providers.base import PaymentProvider


class ProviderSet:
    """Maps each Provider to its adapter, chosen once at the boundary"""

    def __init__(self, adapters: Iterable[PaymentProvider]):
        self._adapters: Dict[Provider, PaymentProvider] = {a.provider: a for a in adapters}

    def get(self, provider) -> PaymentProvider:
        """Return the adapter for a provider (enum or stored string value)"""
        key = Provider(provider)
        try:
            return self._adapters[key]
        except KeyError:
            raise LookupError(f"No adapter configured for provider {key.value}")

    def __contains__(self, provider) -> bool:
        return Provider(provider) in self._adapters


_provider_set: Optional[ProviderSet] = None


def get_provider_set() -> ProviderSet:
    """Get or create the provider set from settings (lazy initialization)"""
    global _provider_set
    if _provider_set is None:
        from app.services.billing.providers.paypal_provider import PayPalProvider
        from app.services.billing.providers.stripe_provider import StripeProvider
        _provider_set = ProviderSet([StripeProvider(), PayPalProvider()])
    return _provider_set
