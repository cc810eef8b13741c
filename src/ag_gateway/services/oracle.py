"""Google Play entitlement oracle.

Every purchase claim is confirmed against the Android Publisher API before it
is written to the ledger. Any failure to get a definite "yes" (timeouts,
transport errors, non-2xx responses, missing credentials) is a "no".
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any
from urllib.parse import quote

import httpx
from jose import JOSEError, jwt

from ag_gateway.core.security import fingerprint
from ag_gateway.core.settings import Settings, settings

logger = logging.getLogger(__name__)

ANDROID_PUBLISHER_SCOPE = "https://www.googleapis.com/auth/androidpublisher"
PRODUCT_KIND_SUBSCRIPTION = "subscription"
PRODUCT_KIND_ONE_TIME = "one_time"

PAYMENT_STATE_RECEIVED = 1
PURCHASE_STATE_PURCHASED = 0
ACKNOWLEDGED = 1

# Refresh the cached access token this many seconds before Google expires it.
_TOKEN_EXPIRY_MARGIN_SECONDS = 60
_ASSERTION_LIFETIME_SECONDS = 3600
_UNKNOWN_PURCHASE_STATUSES = frozenset({400, 404, 410})


class Verdict(str, Enum):
    """Outcome of a purchase check."""

    VALID = "valid"
    INVALID = "invalid"
    UNAVAILABLE = "unavailable"


class OracleError(RuntimeError):
    """Raised internally when the billing API cannot give a usable answer."""


class PurchaseNotFound(OracleError):
    """The billing API does not know the purchase token."""


def _as_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class SubscriptionPurchase:
    """Fields of ``purchases.subscriptions.get`` the grant decision depends on."""

    payment_state: int | None
    cancel_reason: int | None
    acknowledgement_state: int | None
    expiry_time_millis: int | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> SubscriptionPurchase:
        return cls(
            payment_state=_as_int(payload.get("paymentState")),
            cancel_reason=_as_int(payload.get("cancelReason")),
            acknowledgement_state=_as_int(payload.get("acknowledgementState")),
            expiry_time_millis=_as_int(payload.get("expiryTimeMillis")),
        )

    def is_active(self, now_millis: int, *, acknowledgement_required: bool) -> bool:
        """Paid (trials excluded), not canceled, acknowledged if required, unexpired."""
        if self.payment_state != PAYMENT_STATE_RECEIVED:
            return False
        if self.cancel_reason is not None:
            return False
        if acknowledgement_required and self.acknowledgement_state != ACKNOWLEDGED:
            return False
        return self.expiry_time_millis is not None and self.expiry_time_millis > now_millis


@dataclass(frozen=True)
class ProductPurchase:
    """Fields of ``purchases.products.get`` the grant decision depends on."""

    purchase_state: int | None
    acknowledgement_state: int | None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> ProductPurchase:
        return cls(
            purchase_state=_as_int(payload.get("purchaseState")),
            acknowledgement_state=_as_int(payload.get("acknowledgementState")),
        )

    def is_valid(self) -> bool:
        # One-time purchases count once purchased; acknowledgement is not checked.
        return self.purchase_state == PURCHASE_STATE_PURCHASED


@dataclass(frozen=True)
class ServiceAccount:
    client_email: str
    private_key: str
    private_key_id: str | None
    token_uri: str

    @classmethod
    def from_json(cls, raw: str, default_token_uri: str) -> ServiceAccount:
        try:
            data = json.loads(raw)
        except ValueError as exc:
            raise OracleError("Service account JSON is not valid JSON") from exc
        if not isinstance(data, dict):
            raise OracleError("Service account JSON must be an object")
        client_email = data.get("client_email")
        private_key = data.get("private_key")
        if not client_email or not private_key:
            raise OracleError("Service account JSON lacks client_email or private_key")
        return cls(
            client_email=str(client_email),
            private_key=str(private_key),
            private_key_id=data.get("private_key_id"),
            token_uri=str(data.get("token_uri") or default_token_uri),
        )


class GooglePlayOracle:
    """Verify purchases with the Android Publisher API.

    The HTTP client is created lazily and can be dropped with :meth:`reset`
    or closed with :meth:`aclose`; nothing is created at import time.
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
        self._client_lock = asyncio.Lock()
        self._access_token: str | None = None
        self._access_token_expires_at = 0.0

    def product_kind(self, product_id: str) -> str | None:
        if product_id in self._settings.subscription_products:
            return PRODUCT_KIND_SUBSCRIPTION
        if product_id in self._settings.one_time_products:
            return PRODUCT_KIND_ONE_TIME
        return None

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    timeout=httpx.Timeout(self._settings.oracle_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    async def reset(self) -> None:
        """Drop the client and cached credentials; the next call rebuilds them."""
        async with self._client_lock:
            client, self._client = self._client, None
            self._access_token = None
            self._access_token_expires_at = 0.0
        if client is not None:
            await client.aclose()

    async def aclose(self) -> None:
        await self.reset()

    def _service_account(self) -> ServiceAccount:
        raw = self._settings.google_service_account_json
        if not raw:
            raise OracleError("Google service account credentials are not configured")
        return ServiceAccount.from_json(raw, self._settings.google_oauth_token_uri)

    def _build_assertion(self, account: ServiceAccount, now: int) -> str:
        claims = {
            "iss": account.client_email,
            "scope": ANDROID_PUBLISHER_SCOPE,
            "aud": account.token_uri,
            "iat": now,
            "exp": now + _ASSERTION_LIFETIME_SECONDS,
        }
        headers = {"kid": account.private_key_id} if account.private_key_id else None
        try:
            return jwt.encode(claims, account.private_key, algorithm="RS256", headers=headers)
        except (JOSEError, ValueError, TypeError) as exc:
            raise OracleError("Service account private key is unusable") from exc

    async def _get_access_token(self, client: httpx.AsyncClient) -> str:
        now = self._clock()
        if self._access_token and now < self._access_token_expires_at:
            return self._access_token

        account = self._service_account()
        assertion = self._build_assertion(account, int(now))
        response = await client.post(
            account.token_uri,
            data={
                "grant_type": "urn:ietf:params:oauth:grant-type:jwt-bearer",
                "assertion": assertion,
            },
        )
        if response.status_code != httpx.codes.OK:
            raise OracleError(f"Token exchange failed with HTTP {response.status_code}")
        payload = response.json()
        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not token:
            raise OracleError("Token exchange returned no access token")
        expires_in = _as_int(payload.get("expires_in")) or _ASSERTION_LIFETIME_SECONDS
        self._access_token = str(token)
        self._access_token_expires_at = now + max(0, expires_in - _TOKEN_EXPIRY_MARGIN_SECONDS)
        return self._access_token

    def _purchase_url(self, kind: str, product_id: str, purchase_token: str) -> str:
        collection = "subscriptions" if kind == PRODUCT_KIND_SUBSCRIPTION else "products"
        return (
            f"{self._settings.google_play_api_base.rstrip('/')}/applications/"
            f"{quote(self._settings.google_play_package_name, safe='')}/purchases/{collection}/"
            f"{quote(product_id, safe='')}/tokens/{quote(purchase_token, safe='')}"
        )

    async def fetch_purchase(
        self,
        kind: str,
        product_id: str,
        purchase_token: str,
    ) -> dict[str, Any]:
        """Return the raw purchase resource from the Android Publisher API."""
        client = await self._ensure_client()
        access_token = await self._get_access_token(client)
        response = await client.get(
            self._purchase_url(kind, product_id, purchase_token),
            headers={"Authorization": f"Bearer {access_token}"},
        )
        if response.status_code == httpx.codes.UNAUTHORIZED:
            # Force a fresh token exchange on the next call.
            self._access_token = None
        if response.status_code in _UNKNOWN_PURCHASE_STATUSES:
            raise PurchaseNotFound(f"Purchase lookup returned HTTP {response.status_code}")
        if not response.is_success:
            raise OracleError(f"Purchase lookup failed with HTTP {response.status_code}")
        payload = response.json()
        if not isinstance(payload, dict):
            raise OracleError("Purchase lookup returned a non-object body")
        return payload

    async def _verify(self, kind: str, product_id: str, purchase_token: str) -> bool:
        payload = await self.fetch_purchase(kind, product_id, purchase_token)
        if kind == PRODUCT_KIND_SUBSCRIPTION:
            subscription = SubscriptionPurchase.from_payload(payload)
            return subscription.is_active(
                int(self._clock() * 1000),
                acknowledgement_required=self._settings.acknowledgement_required,
            )
        return ProductPurchase.from_payload(payload).is_valid()

    async def check(self, product_id: str, purchase_token: str) -> Verdict:
        """Classify a purchase claim as valid, invalid, or unverifiable."""
        kind = self.product_kind(product_id)
        if kind is None:
            logger.info("Rejecting unknown product %s", product_id)
            return Verdict.INVALID

        token_ref = fingerprint(purchase_token)
        try:
            valid = await asyncio.wait_for(
                self._verify(kind, product_id, purchase_token),
                timeout=self._settings.oracle_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("Billing oracle timed out for %s (token %s)", product_id, token_ref)
            return Verdict.UNAVAILABLE
        except PurchaseNotFound:
            logger.info("Billing oracle has no purchase %s (token %s)", product_id, token_ref)
            return Verdict.INVALID
        except (httpx.HTTPError, OracleError, ValueError) as exc:
            logger.warning(
                "Billing oracle unavailable for %s (token %s): %s", product_id, token_ref, exc
            )
            return Verdict.UNAVAILABLE

        if not valid:
            logger.info("Billing oracle rejected %s (token %s)", product_id, token_ref)
            return Verdict.INVALID
        return Verdict.VALID

    async def verify(self, product_id: str, purchase_token: str) -> bool:
        """Return True only when Google confirms an active, paid entitlement."""
        return await self.check(product_id, purchase_token) is Verdict.VALID
