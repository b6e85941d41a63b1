"""Routing of payment methods to provider adapters."""

import logging

import httpx

from app import config
from app.errors import ConfigurationError
from app.services.payment_providers import (
    ADAPTER_CLASSES,
    PaymentMethod,
    ProviderAdapter,
    ProviderName,
    ProviderSettings,
)

logger = logging.getLogger("immopay")


def route_for(method: PaymentMethod) -> ProviderName:
    """Static method → provider routing. Every PaymentMethod has one arm."""
    match method:
        case (
            PaymentMethod.CARD
            | PaymentMethod.ORANGE_MONEY
            | PaymentMethod.MTN_MONEY
            | PaymentMethod.WAVE
            | PaymentMethod.MOOV
        ):
            return ProviderName.FEDAPAY
        case PaymentMethod.WAVE_DIRECT:
            return ProviderName.WAVE_CI
        case PaymentMethod.PAWAPAY_MTN | PaymentMethod.PAWAPAY_ORANGE:
            return ProviderName.PAWAPAY
        case PaymentMethod.KKIAPAY:
            return ProviderName.KKIAPAY
    raise ConfigurationError(f"Aucun fournisseur pour la méthode {method}")


def parse_payment_method(value: str | PaymentMethod) -> PaymentMethod:
    try:
        return PaymentMethod(value)
    except ValueError:
        raise ConfigurationError(f"Méthode de paiement non prise en charge: {value}") from None


def parse_provider_name(value: str | ProviderName) -> ProviderName:
    try:
        return ProviderName(value)
    except ValueError:
        raise ConfigurationError(f"Fournisseur inconnu: {value}") from None


class ProviderRegistry:
    """Configured adapters, looked up by payment method or provider name."""

    def __init__(self, adapters: dict[ProviderName, ProviderAdapter]):
        self._adapters = dict(adapters)

    def adapter_for(self, method: str | PaymentMethod) -> ProviderAdapter:
        provider = route_for(parse_payment_method(method))
        return self.adapter_named(provider)

    def adapter_named(self, provider: str | ProviderName) -> ProviderAdapter:
        name = parse_provider_name(provider)
        adapter = self._adapters.get(name)
        if adapter is None:
            raise ConfigurationError(f"Fournisseur {name.value} non configuré")
        return adapter

    @property
    def providers(self) -> list[ProviderName]:
        return sorted(self._adapters, key=lambda p: p.value)

    def enabled_methods(self) -> list[PaymentMethod]:
        return [m for m in PaymentMethod if route_for(m) in self._adapters]


def _callback_url(provider: ProviderName) -> str:
    return f"{config.SITE_URL.rstrip('/')}/api/webhooks/{provider.value}"


def load_provider_settings() -> list[ProviderSettings]:
    """Provider settings from the environment. Providers without credentials are left out."""
    candidates = [
        ProviderSettings(
            name=ProviderName.FEDAPAY,
            api_key=config.FEDAPAY_SECRET_KEY,
            base_url=config.FEDAPAY_BASE_URL,
            api_version=config.FEDAPAY_API_VERSION,
            sandbox=config.FEDAPAY_SECRET_KEY.startswith("sk_sandbox_"),
            webhook_secret=config.FEDAPAY_WEBHOOK_SECRET,
            callback_url=_callback_url(ProviderName.FEDAPAY),
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        ),
        ProviderSettings(
            name=ProviderName.WAVE_CI,
            api_key=config.WAVE_API_KEY,
            base_url=config.WAVE_BASE_URL,
            api_version=config.WAVE_API_VERSION,
            webhook_secret=config.WAVE_WEBHOOK_SECRET,
            callback_url=_callback_url(ProviderName.WAVE_CI),
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        ),
        ProviderSettings(
            name=ProviderName.PAWAPAY,
            api_key=config.PAWAPAY_API_TOKEN,
            base_url=config.PAWAPAY_BASE_URL,
            api_version=config.PAWAPAY_API_VERSION,
            sandbox=config.PAWAPAY_SANDBOX,
            callback_url=_callback_url(ProviderName.PAWAPAY),
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        ),
        ProviderSettings(
            name=ProviderName.KKIAPAY,
            api_key=config.KKIAPAY_PRIVATE_KEY,
            public_key=config.KKIAPAY_PUBLIC_KEY,
            base_url=config.KKIAPAY_BASE_URL,
            api_version=config.KKIAPAY_API_VERSION,
            sandbox=config.KKIAPAY_SANDBOX,
            webhook_secret=config.KKIAPAY_WEBHOOK_SECRET,
            callback_url=_callback_url(ProviderName.KKIAPAY),
            timeout=config.PROVIDER_TIMEOUT_SECONDS,
        ),
    ]
    return [s for s in candidates if s.api_key]


def build_registry(
    settings: list[ProviderSettings], client: httpx.Client | None = None
) -> ProviderRegistry:
    adapters = {s.name: ADAPTER_CLASSES[s.name](s, client=client) for s in settings}
    for name in ProviderName:
        if name not in adapters:
            logger.warning("Payment provider %s not configured", name.value)
    return ProviderRegistry(adapters)
