"""Thin httpx wrapper shared by provider API clients.

Every call is bounded by the configured timeout, timed into Prometheus, and
any transport/HTTP/decoding failure is re-raised as `ExternalProviderError`
with the original exception chained.
"""

import logging
from time import perf_counter
from typing import Any

import httpx

from vetpay.common.config import settings
from vetpay.common.errors import ExternalProviderError
from vetpay.common.metrics import provider_errors_total, provider_request_duration_seconds


class ProviderHTTPClient:
    """JSON-over-HTTP client for one provider API."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        headers: dict[str, str],
        timeout: float,
        transport: httpx.BaseTransport | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.provider = provider
        self.logger = logger or logging.getLogger(f"vetpay.providers.{provider}.http")
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    def request(self, method: str, path: str, operation: str, **kwargs: Any) -> dict[str, Any]:
        start = perf_counter()
        try:
            resp = self._client.request(method, path, **kwargs)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as exc:
            self._fail(operation, retryable=True)
            self.logger.error("provider_timeout provider=%s operation=%s", self.provider, operation)
            raise ExternalProviderError(
                f"{self.provider} {operation} timed out", provider=self.provider, retryable=True
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            retryable = status >= 500 or status == 429
            self._fail(operation, retryable=retryable)
            self.logger.error(
                "provider_http_error provider=%s operation=%s status=%s body=%s",
                self.provider,
                operation,
                status,
                exc.response.text[:500],
            )
            raise ExternalProviderError(
                f"{self.provider} {operation} failed with HTTP {status}",
                provider=self.provider,
                retryable=retryable,
                upstream_status=status,
            ) from exc
        except httpx.HTTPError as exc:
            self._fail(operation, retryable=True)
            self.logger.error("provider_transport_error provider=%s operation=%s error=%s", self.provider, operation, exc)
            raise ExternalProviderError(
                f"{self.provider} {operation} failed: {exc}", provider=self.provider, retryable=True
            ) from exc
        except ValueError as exc:
            self._fail(operation, retryable=False)
            raise ExternalProviderError(
                f"{self.provider} {operation} returned a non-JSON body", provider=self.provider
            ) from exc
        finally:
            provider_request_duration_seconds.labels(
                service=settings.service_name,
                provider=self.provider,
                operation=operation,
            ).observe(max(0.0, perf_counter() - start))
        if not isinstance(body, dict):
            raise ExternalProviderError(
                f"{self.provider} {operation} returned an unexpected body", provider=self.provider
            )
        return body

    def _fail(self, operation: str, retryable: bool) -> None:
        provider_errors_total.labels(
            service=settings.service_name,
            provider=self.provider,
            operation=operation,
            retryable=str(retryable).lower(),
        ).inc()

    def close(self) -> None:
        self._client.close()
