"""Central environment-driven settings for the payments service.

The process loads this once at startup. Provider credentials and webhook
secrets are optional; a provider without credentials refuses to start
payments (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


WEBPAY_HOSTS = {
    "integration": "https://webpay3gint.transbank.cl",
    "production": "https://webpay3g.transbank.cl",
}


class CommonSettings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "vetpay-payments"
    log_level: str = "INFO"
    database_url: str = "sqlite:///./vetpay.db"
    auto_create_schema: bool = False
    app_name: str = "ConnyVet"
    app_url: str = "http://localhost:8000"
    frontend_url: str | None = None
    default_currency: str = "CLP"
    provider_timeout_seconds: float = 10.0

    mercadopago_access_token: str | None = None
    mercadopago_webhook_secret: str | None = None
    mercadopago_api_url: str = "https://api.mercadopago.com"
    mercadopago_environment: str = "sandbox"

    # Transbank's public integration credentials.
    webpay_commerce_code: str = "597055555532"
    webpay_api_key: str = "579B532A7440BB0C9079DED94D31EA1615BACEB56610332264630D42D0A36B1C"
    webpay_environment: str = "integration"

    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @property
    def webpay_api_url(self) -> str:
        return WEBPAY_HOSTS.get(self.webpay_environment, WEBPAY_HOSTS["integration"])

    @property
    def redirect_base_url(self) -> str:
        """Front-end base for browser redirects after hosted checkout."""

        return (self.frontend_url or self.app_url).rstrip("/")


settings = CommonSettings()
