"""
Outbound HTTP for gateway adapters.

Every call has a timeout and a small retry budget. Retries only happen when
the failure proves the provider did not execute the request (connection
refused, 429, 503), or when the caller marks the request as safe to repeat
(status lookups). Anything else that leaves the outcome unknown raises
``GatewayAmbiguous`` and is left for manual reconciliation.
"""

import asyncio
import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from paycore.config import settings
from paycore.errors import GatewayAmbiguous, GatewayRejected, RetryExhausted

logger = logging.getLogger(__name__)

# Status codes that guarantee the request was not executed
_NOT_EXECUTED_STATUSES = {429, 503}


class GatewayHttpClient:
    """Thin async client for one provider's REST API."""

    def __init__(
        self,
        provider: str,
        base_url: str,
        *,
        headers: Optional[Mapping[str, str]] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        backoff_seconds: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self._base_url = base_url.rstrip("/")
        self._headers = dict(headers or {})
        self._timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self._max_attempts = max(1, max_attempts if max_attempts is not None else settings.gateway_max_attempts)
        self._backoff = backoff_seconds if backoff_seconds is not None else settings.gateway_backoff_seconds
        self._transport = transport

    async def request(
        self,
        method: str,
        path: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        form: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        safe: bool = False,
    ) -> httpx.Response:
        """
        Perform a request and return the 2xx response.

        Args:
            safe: the call has no side effects (or is idempotent on the
                provider side) and may be repeated after an ambiguous failure.

        Raises:
            GatewayRejected: 4xx from the provider.
            GatewayAmbiguous: unsafe call failed after it may have executed.
            RetryExhausted: every attempt failed without executing.
        """
        url = f"{self._base_url}{path}"
        last_error = ""

        for attempt in range(1, self._max_attempts + 1):
            try:
                async with httpx.AsyncClient(
                    timeout=self._timeout,
                    transport=self._transport,
                    headers={"Accept": "application/json", **self._headers},
                ) as client:
                    response = await client.request(
                        method,
                        url,
                        json=json_body,
                        data=form,
                        params=params,
                        headers=headers,
                    )
            except (httpx.ConnectError, httpx.ConnectTimeout, httpx.PoolTimeout) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    f"{self.provider} {method} {path} not delivered (attempt {attempt}/{self._max_attempts}): {last_error}"
                )
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                if not safe:
                    logger.error(f"{self.provider} {method} {path} outcome unknown: {last_error}")
                    raise GatewayAmbiguous(
                        f"{self.provider} did not answer; the request may have been executed",
                        details={"provider": self.provider, "path": path, "error": last_error},
                    ) from exc
                logger.warning(
                    f"{self.provider} {method} {path} failed (attempt {attempt}/{self._max_attempts}): {last_error}"
                )
            else:
                if response.is_success:
                    return response

                if response.status_code in _NOT_EXECUTED_STATUSES or (safe and response.status_code >= 500):
                    last_error = f"HTTP {response.status_code}"
                    logger.warning(
                        f"{self.provider} {method} {path} returned {response.status_code} "
                        f"(attempt {attempt}/{self._max_attempts})"
                    )
                elif response.status_code >= 500:
                    logger.error(f"{self.provider} {method} {path} returned {response.status_code}, outcome unknown")
                    raise GatewayAmbiguous(
                        f"{self.provider} returned HTTP {response.status_code}; the request may have been executed",
                        details={"provider": self.provider, "path": path, "status_code": response.status_code},
                    )
                else:
                    logger.warning(f"{self.provider} {method} {path} rejected with {response.status_code}")
                    raise GatewayRejected(
                        f"{self.provider} rejected the request",
                        details={
                            "provider": self.provider,
                            "status_code": response.status_code,
                            "body": response.text[:500],
                        },
                    )

            if attempt < self._max_attempts and self._backoff > 0:
                await asyncio.sleep(self._backoff * (2 ** (attempt - 1)))

        raise RetryExhausted(
            f"{self.provider} is unavailable, please try another payment method",
            details={"provider": self.provider, "path": path, "attempts": self._max_attempts, "error": last_error},
        )
