"""
Token Cache - shared OAuth2 access tokens for outbound Google APIs.

NO DICTIONARIES - cached entries are plain strings keyed by service account
and scope.

Every instance of the service reads and writes the same Redis keys, so a
token minted by one instance is reused by all of them until it nears expiry.
Nothing is kept in process memory.
"""

import time

import httpx
import jwt
import redis.asyncio as aioredis
from structlog import get_logger

from credit_ledger.exceptions import ProviderTimeoutError, TokenExchangeError
from credit_ledger.observability.metrics import metrics

logger = get_logger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
FIREBASE_MESSAGING_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"
ASSERTION_LIFETIME_SECONDS = 3600


class TokenCache:
    """
    Redis-backed cache of service-account access tokens.

    Miss path: sign an RS256 assertion with the service account key, exchange
    it at the token endpoint and store the access token with
    TTL = expires_in - safety margin.
    """

    TOKEN_URI = "https://oauth2.googleapis.com/token"

    def __init__(
        self,
        redis: aioredis.Redis,
        client_email: str,
        private_key: str,
        http_client: httpx.AsyncClient,
        safety_margin_seconds: int = 300,
        timeout_seconds: float = 15.0,
        token_uri: str | None = None,
    ) -> None:
        self.redis = redis
        self.client_email = client_email
        self.private_key = private_key
        self.http_client = http_client
        self.safety_margin_seconds = safety_margin_seconds
        self.timeout_seconds = timeout_seconds
        self.token_uri = token_uri or self.TOKEN_URI

    def cache_key(self, scope: str) -> str:
        return f"oauth_token:{self.client_email}:{scope}"

    async def get_token(self, scope: str) -> str:
        """
        Return a bearer token for `scope`, minting one on a cache miss.

        Raises:
            TokenExchangeError: If the token endpoint rejects the assertion
            ProviderTimeoutError: If the token endpoint does not answer in time
        """
        key = self.cache_key(scope)
        cached = await self.redis.get(key)
        if cached:
            metrics.record_token_cache(hit=True)
            return cached if isinstance(cached, str) else cached.decode("utf-8")

        metrics.record_token_cache(hit=False)
        access_token, expires_in = await self._exchange(self._build_assertion(scope))

        ttl = expires_in - self.safety_margin_seconds
        if ttl > 0:
            await self.redis.set(key, access_token, ex=ttl)
        else:
            logger.warning(
                "access_token_not_cached",
                scope=scope,
                expires_in=expires_in,
                safety_margin_seconds=self.safety_margin_seconds,
            )

        logger.info("access_token_minted", scope=scope, ttl_seconds=max(ttl, 0))
        return access_token

    async def invalidate(self, scope: str) -> None:
        """Evict a token the provider rejected."""
        await self.redis.delete(self.cache_key(scope))
        logger.info("access_token_invalidated", scope=scope)

    def _build_assertion(self, scope: str) -> str:
        now = int(time.time())
        payload = {
            "iss": self.client_email,
            "sub": self.client_email,
            "aud": self.token_uri,
            "scope": scope,
            "iat": now,
            "exp": now + ASSERTION_LIFETIME_SECONDS,
        }
        return jwt.encode(payload, self.private_key, algorithm="RS256")

    async def _exchange(self, assertion: str) -> tuple[str, int]:
        try:
            response = await self.http_client.post(
                self.token_uri,
                data={"grant_type": JWT_BEARER_GRANT, "assertion": assertion},
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise ProviderTimeoutError("Token endpoint timed out") from exc
        except httpx.HTTPError as exc:
            raise TokenExchangeError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code != 200:
            logger.error(
                "access_token_exchange_failed",
                status=response.status_code,
                error=response.text[:500],
            )
            raise TokenExchangeError(
                f"Token exchange failed: {response.status_code}",
                status_code=response.status_code,
            )

        body = response.json()
        access_token = body.get("access_token")
        if not access_token:
            raise TokenExchangeError("Token response missing access_token")
        return access_token, int(body.get("expires_in", ASSERTION_LIFETIME_SECONDS))
