"""
DomainApiClient - Generic client for domain APIs.

Responsibility:
- Implements the domain function protocol (POST {api_endpoint})
- Serializes {function, parameters} -> JSON
- Deserializes JSON -> DomainOutput
- Converts network errors and non-2xx replies to ExternalCallError
- Retries transient failures only for idempotent functions
"""

import asyncio
import logging
import os
import random
from typing import Any

import httpx

from observability.logger import Observability
from shared.errors import ExternalCallError
from shared.models import Domain, DomainOutput

logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {429, 500, 502, 503, 504}


class DomainApiClient:
    """Async client for the per-domain function endpoint."""

    def __init__(
        self,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff_seconds: float = 0.25,
        jitter_seconds: float = 0.1,
        transport: httpx.AsyncBaseTransport | None = None,
        observability: Observability | None = None,
    ):
        self.timeout = timeout if timeout is not None else float(os.getenv("DOMAIN_API_TIMEOUT_SECONDS", "30"))
        self.max_retries = max_retries if max_retries is not None else int(os.getenv("DOMAIN_API_MAX_RETRIES", "2"))
        self.backoff_seconds = max(0.0, backoff_seconds)
        self.jitter_seconds = max(0.0, jitter_seconds)
        self.observability = observability or Observability()
        self._client = httpx.AsyncClient(timeout=self.timeout, transport=transport)

    async def call(
        self,
        domain: Domain,
        function: str,
        parameters: dict[str, Any],
        *,
        idempotent: bool = False,
        session_id: str | None = None,
    ) -> DomainOutput:
        """
        Invoke one domain function.
        POST {api_endpoint} {"function": ..., "parameters": {...}}
        """
        if not domain.api_endpoint:
            raise ExternalCallError("domain_api", f"Domain '{domain.id}' has no API endpoint configured")

        headers = {"Content-Type": "application/json"}
        if domain.api_auth_token:
            headers["Authorization"] = f"Bearer {domain.api_auth_token}"
        payload = {"function": function, "parameters": parameters}
        attempts = 1 + (max(0, self.max_retries) if idempotent else 0)
        obs = self.observability.span(session_id=session_id, domain_id=domain.id)

        for attempt in range(1, attempts + 1):
            try:
                with obs.measure(
                    "domain_api_call",
                    {"function": function, "attempt": attempt, "idempotent": idempotent},
                ):
                    return await self._post(domain.api_endpoint, payload, headers, function)
            except ExternalCallError as exc:
                if not exc.retryable or attempt >= attempts:
                    raise
                sleep_seconds = self.backoff_seconds * (2 ** (attempt - 1))
                if self.jitter_seconds > 0:
                    sleep_seconds += random.uniform(0.0, self.jitter_seconds)
                logger.warning(
                    "Domain API call %s failed (attempt %d/%d): %s. Retrying in %.2fs",
                    function,
                    attempt,
                    attempts,
                    exc,
                    sleep_seconds,
                )
                await asyncio.sleep(sleep_seconds)

        raise ExternalCallError("domain_api", f"Function '{function}' failed")

    async def _post(
        self,
        url: str,
        payload: dict[str, Any],
        headers: dict[str, str],
        function: str,
    ) -> DomainOutput:
        logger.info("Calling domain API: %s function=%s", url, function)
        try:
            response = await self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise ExternalCallError("domain_api", f"Timeout calling '{function}': {e}", retryable=True) from e
        except httpx.RequestError as e:
            logger.error("Network error calling domain API '%s': %r", url, e)
            raise ExternalCallError("domain_api", f"Network error calling '{function}': {e}", retryable=True) from e

        if response.status_code < 200 or response.status_code >= 300:
            logger.error("Domain API error %s: %s", response.status_code, response.text[:500])
            raise ExternalCallError(
                "domain_api",
                f"'{function}' returned status {response.status_code}",
                retryable=response.status_code in _TRANSIENT_STATUS,
                status_code=response.status_code,
                details={"body": response.text[:500]},
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExternalCallError(
                "domain_api",
                f"'{function}' returned a non-JSON body",
                status_code=response.status_code,
            ) from e
        if not isinstance(data, dict) or "success" not in data:
            raise ExternalCallError(
                "domain_api",
                f"'{function}' returned an unexpected payload",
                status_code=response.status_code,
                details={"body": data},
            )
        return DomainOutput(
            success=bool(data.get("success")),
            data=data.get("data"),
            error=data.get("error"),
            metadata={"status_code": response.status_code},
        )

    async def aclose(self) -> None:
        await self._client.aclose()
