"""Browser origin allow-list and response security headers."""

from __future__ import annotations

import logging
from urllib.parse import urlsplit

from ag_gateway.core.errors import OriginRejected
from ag_gateway.core.settings import Settings, settings

logger = logging.getLogger(__name__)

LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})

SECURITY_HEADERS = {
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
}


class OriginPolicy:
    """Decide whether a browser origin may talk to the gateway."""

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings
        self._allowed = frozenset(
            origin.rstrip("/") for origin in self._settings.cors_allowed_origins
        )

    def is_allowed(self, origin: str) -> bool:
        normalized = origin.rstrip("/")
        if normalized in self._allowed:
            return True
        if not self._settings.cors_allow_localhost:
            return False
        try:
            host = urlsplit(normalized).hostname
        except ValueError:
            return False
        return host in LOCAL_HOSTS

    def base_headers(self) -> dict[str, str]:
        return {
            **SECURITY_HEADERS,
            "Access-Control-Allow-Methods": ", ".join(self._settings.cors_allow_methods),
            "Access-Control-Allow-Headers": ", ".join(self._settings.cors_allow_headers),
        }

    def check(self, origin: str | None) -> dict[str, str]:
        """Return the headers for a response to ``origin``.

        Requests without an Origin header (native apps, server-to-server)
        pass. Unlisted origins are rejected in production and served without
        CORS headers elsewhere.

        Raises:
            OriginRejected: For an unlisted origin in production.
        """
        headers = self.base_headers()
        if not origin:
            return headers
        if self.is_allowed(origin):
            headers["Access-Control-Allow-Origin"] = origin
            headers["Vary"] = "Origin"
            return headers
        if self._settings.is_production:
            logger.warning("Rejected request from origin %s", origin)
            raise OriginRejected("Origin not allowed")
        logger.info("Unlisted origin %s served without CORS headers", origin)
        return headers
