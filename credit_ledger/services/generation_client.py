"""
Generation Client - the metered external operation.

The provider is opaque: it receives the request parameters and either
returns a result reference or fails.
"""

from typing import Protocol

import httpx
from structlog import get_logger

from credit_ledger.exceptions import (
    ProviderError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RateLimitedError,
)
from credit_ledger.models.api import GenerationParams
from credit_ledger.services.token_cache import CLOUD_PLATFORM_SCOPE, TokenCache

logger = get_logger(__name__)


class GenerationClient(Protocol):
    """Anything that can run one paid generation."""

    async def invoke(self, params: GenerationParams, timeout: float) -> str:
        """Run the operation and return its result reference."""
        ...


class HttpGenerationClient:
    """Posts generation requests to a configured HTTP endpoint."""

    def __init__(
        self,
        endpoint: str,
        http_client: httpx.AsyncClient,
        token_cache: TokenCache | None = None,
    ) -> None:
        self.endpoint = endpoint
        self.http_client = http_client
        self.token_cache = token_cache

    async def invoke(self, params: GenerationParams, timeout: float) -> str:
        """
        Raises:
            ProviderTimeoutError: The provider did not answer within `timeout`
            ProviderUnavailableError: No endpoint configured, or a 5xx
            RateLimitedError: The provider throttled the call
            ProviderError: Any other rejection or a response without a result
        """
        if not self.endpoint:
            raise ProviderUnavailableError("Generation endpoint not configured")

        headers: dict[str, str] = {}
        if self.token_cache is not None:
            token = await self.token_cache.get_token(CLOUD_PLATFORM_SCOPE)
            headers["Authorization"] = f"Bearer {token}"

        try:
            response = await self.http_client.post(
                self.endpoint,
                json=params.model_dump(exclude_none=True),
                headers=headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("Generation provider timed out") from exc
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(f"Generation provider unreachable: {exc}") from exc

        if response.status_code == 429:
            raise RateLimitedError("Generation provider rate limit")
        if response.status_code >= 500:
            raise ProviderUnavailableError(
                f"Generation provider error: {response.status_code}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            logger.warning(
                "generation_rejected",
                status=response.status_code,
                error=response.text[:500],
            )
            raise ProviderError(
                f"Generation rejected: {response.status_code}", status_code=response.status_code
            )

        body = response.json()
        result_ref = body.get("result_ref") or body.get("resultRef") or body.get("id")
        if not result_ref:
            raise ProviderError("Generation response missing result reference")
        return str(result_ref)
