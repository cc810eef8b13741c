"""Error taxonomy for the trust gateway.

Every pipeline stage raises one of these exceptions and returns immediately.
The orchestrator renders them as ``{"error": code, "details": text}`` with the
matching HTTP status; nothing else from an exception reaches the client.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for errors that map onto a protocol response."""

    http_status: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(
        self,
        details: str,
        *,
        code: str | None = None,
        retry_after: int | None = None,
    ) -> None:
        super().__init__(details)
        self.details = details
        if code is not None:
            self.code = code
        self.retry_after = retry_after

    def as_body(self) -> dict[str, Any]:
        """Return the JSON body sent to the client."""
        return {"error": self.code, "details": self.details}

    def __str__(self) -> str:
        return f"{self.code}: {self.details}"


class ConfigError(GatewayError):
    """A required secret or credential is missing."""

    http_status = 500
    code = "CONFIG_ERROR"


class BadRequest(GatewayError):
    """The request body or route discriminator is malformed."""

    http_status = 400
    code = "BAD_REQUEST"


class AuthError(GatewayError):
    """Missing, invalid, expired or unregistered credentials."""

    http_status = 401
    code = "UNAUTHORIZED"


class OriginRejected(GatewayError):
    """The browser origin is not on the allow-list."""

    http_status = 403
    code = "ORIGIN_REJECTED"


class CsrfRejected(GatewayError):
    """CSRF token or request freshness check failed."""

    http_status = 403
    code = "CSRF_REJECTED"


class AdminRequired(GatewayError):
    """An admin-only action was attempted by a non-admin session."""

    http_status = 403
    code = "ADMIN_REQUIRED"


class EntitlementInvalid(GatewayError):
    """The billing authority did not confirm the purchase."""

    http_status = 402
    code = "ENTITLEMENT_INVALID"


class EntitlementOracleUnavailable(EntitlementInvalid):
    """The billing authority could not be reached; treated as invalid."""

    code = "ENTITLEMENT_ORACLE_UNAVAILABLE"


class DuplicateTransaction(GatewayError):
    """The transaction id was already processed; an idempotent no-op."""

    http_status = 409
    code = "DUPLICATE_TRANSACTION"

    def as_body(self) -> dict[str, Any]:
        body = super().as_body()
        body.update({"success": True, "duplicate": True})
        return body


class RateLimited(GatewayError):
    """A rate-limit policy was exceeded."""

    http_status = 429
    code = "RATE_LIMITED"


class RateLimiterUnavailable(GatewayError):
    """The counter store could not be reached."""

    http_status = 503
    code = "RATE_LIMITER_UNAVAILABLE"


class LedgerWriteError(GatewayError):
    """The ledger insert failed for a reason other than a duplicate."""

    http_status = 500
    code = "LEDGER_WRITE_FAILED"


class GrantError(GatewayError):
    """The purchase was audited but the entitlement could not be applied."""

    http_status = 500
    code = "GRANT_FAILED"
