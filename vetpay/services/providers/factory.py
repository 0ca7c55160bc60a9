"""Provider selection by name."""

import httpx

from vetpay.common.config import CommonSettings
from vetpay.common.errors import ProviderNotConfiguredError, UnsupportedProviderError
from vetpay.common.logging import get_logger
from vetpay.services.providers.base import PaymentProvider
from vetpay.services.providers.manual import ManualPaymentProvider
from vetpay.services.providers.mercadopago import MercadoPagoClient, MercadoPagoProvider
from vetpay.services.providers.webpay_plus import WebpayPlusClient, WebpayPlusProvider


PROVIDER_NAMES = ("manual", "webpay_plus", "mercadopago")


class ProviderFactory:
    """Builds providers lazily and keeps one instance per name.

    `transport` is handed to every provider HTTP client; tests pass an
    `httpx.MockTransport` here.
    """

    def __init__(self, settings: CommonSettings, transport: httpx.BaseTransport | None = None) -> None:
        self.settings = settings
        self.transport = transport
        self._providers: dict[str, PaymentProvider] = {}

    def make(self, name: str) -> PaymentProvider:
        if name not in PROVIDER_NAMES:
            raise UnsupportedProviderError(f"Unsupported provider: {name}")
        if name not in self._providers:
            self._providers[name] = self._build(name)
        return self._providers[name]

    def _build(self, name: str) -> PaymentProvider:
        logger = get_logger(f"providers.{name}")
        if name == "manual":
            return ManualPaymentProvider(logger)
        if name == "webpay_plus":
            client = WebpayPlusClient(
                commerce_code=self.settings.webpay_commerce_code,
                api_key=self.settings.webpay_api_key,
                base_url=self.settings.webpay_api_url,
                timeout=self.settings.provider_timeout_seconds,
                transport=self.transport,
            )
            return WebpayPlusProvider(self.settings, client, logger)
        if not self.settings.mercadopago_access_token:
            raise ProviderNotConfiguredError("MercadoPago access token is not configured (MERCADOPAGO_ACCESS_TOKEN)")
        client = MercadoPagoClient(
            access_token=self.settings.mercadopago_access_token,
            base_url=self.settings.mercadopago_api_url,
            timeout=self.settings.provider_timeout_seconds,
            transport=self.transport,
        )
        return MercadoPagoProvider(self.settings, client, logger)

    def close(self) -> None:
        """Release the HTTP connection pools of every provider built so far."""

        for provider in self._providers.values():
            client = getattr(provider, "client", None)
            if client is not None:
                client.close()
        self._providers.clear()
