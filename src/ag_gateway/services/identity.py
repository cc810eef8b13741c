"""Verification of external OAuth identity credentials."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from jose import JOSEError, jwt

from ag_gateway.core.errors import AuthError, ConfigError
from ag_gateway.core.settings import Settings, settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IdentityClaims:
    subject: str
    email: str | None


class IdentityVerifier:
    """Verify ID tokens with a shared secret or a JWKS discovery document.

    Keys fetched from the JWKS URL are cached in memory for
    ``jwks_cache_ttl_seconds``. If a refresh fails the previous keys stay in
    use so a brief provider outage does not lock everyone out.
    """

    def __init__(
        self,
        config: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = config or settings
        self._transport = transport
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._lock = asyncio.Lock()
        self._jwks: dict[str, Any] | None = None
        self._jwks_fetched_at = 0.0

    @property
    def configured(self) -> bool:
        return bool(self._settings.identity_jwt_secret or self._settings.identity_jwks_url)

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._settings.identity_http_timeout_seconds),
                transport=self._transport,
            )
        return self._client

    async def reset(self) -> None:
        """Forget cached keys and drop the HTTP client."""
        async with self._lock:
            client, self._client = self._client, None
            self._jwks = None
            self._jwks_fetched_at = 0.0
        if client is not None:
            await client.aclose()

    async def aclose(self) -> None:
        await self.reset()

    async def _signing_keys(self) -> dict[str, Any]:
        url = self._settings.identity_jwks_url
        if not url:
            raise ConfigError("Identity JWKS URL is not configured")

        async with self._lock:
            now = self._clock()
            fresh_for = self._settings.jwks_cache_ttl_seconds
            if self._jwks is not None and now - self._jwks_fetched_at < fresh_for:
                return self._jwks
            try:
                client = await self._ensure_client()
                response = await client.get(url)
                response.raise_for_status()
                document = response.json()
                if not isinstance(document, dict) or not isinstance(document.get("keys"), list):
                    raise ValueError("JWKS document has no key list")
            except (httpx.HTTPError, ValueError) as exc:
                if self._jwks is not None:
                    logger.warning("JWKS refresh failed, reusing cached keys: %s", exc)
                    return self._jwks
                logger.error("JWKS fetch failed with no cached keys: %s", exc)
                raise AuthError("Identity provider keys unavailable") from exc
            self._jwks = document
            self._jwks_fetched_at = now
            return document

    def _decode(self, credential: str, key: Any, algorithms: list[str]) -> dict[str, Any]:
        audience = self._settings.identity_audience
        options = {"verify_aud": bool(audience), "verify_at_hash": False}
        return jwt.decode(
            credential,
            key,
            algorithms=algorithms,
            audience=audience or None,
            issuer=self._settings.identity_issuer or None,
            options=options,
        )

    async def verify(self, credential: str) -> IdentityClaims:
        """Return the verified subject and email of ``credential``.

        Raises:
            ConfigError: If neither a secret nor a JWKS URL is configured.
            AuthError: If the credential does not verify.
        """
        if not self.configured:
            raise ConfigError("Identity verification is not configured")
        if not credential:
            raise AuthError("Identity credential missing")

        try:
            if self._settings.identity_jwt_secret:
                claims = self._decode(credential, self._settings.identity_jwt_secret, ["HS256"])
            else:
                keys = await self._signing_keys()
                claims = self._decode(credential, keys, list(self._settings.identity_algorithms))
        except JOSEError as exc:
            logger.info("Identity credential rejected: %s", exc)
            raise AuthError("Invalid identity credential") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthError("Identity credential has no subject")
        email = claims.get("email")
        return IdentityClaims(subject=subject, email=email if isinstance(email, str) else None)
