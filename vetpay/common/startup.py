"""Startup-time checks and redacted config logging."""

import os

from vetpay.common.config import CommonSettings, settings as default_settings
from vetpay.common.logging import logger

SECRET_MARKERS = ("KEY", "SECRET", "PASSWORD", "TOKEN")


def _safe_env(name: str) -> str:
    value = os.getenv(name)
    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def provider_readiness(settings: CommonSettings) -> dict[str, str]:
    """Which providers can take payments with the current credentials."""

    return {
        "manual": "ready",
        "webpay_plus": f"ready ({settings.webpay_environment})",
        "mercadopago": (
            f"ready ({settings.mercadopago_environment})" if settings.mercadopago_access_token else "unconfigured"
        ),
    }


def log_startup_config(service_name: str, keys: list[str], settings: CommonSettings | None = None) -> None:
    """Log selected env keys (secrets redacted) and provider readiness."""

    settings = settings or default_settings
    config = {"service": service_name}
    for key in keys:
        config[key] = _safe_env(key)
    logger.info("startup_config=%s providers=%s", config, provider_readiness(settings))
    if settings.mercadopago_access_token and not settings.mercadopago_webhook_secret:
        logger.warning(
            "insecure_webhooks MERCADOPAGO_WEBHOOK_SECRET is unset; x-signature verification is disabled"
        )
