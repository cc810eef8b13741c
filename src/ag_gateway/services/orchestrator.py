"""Per-request protocol state machine.

Every request runs through the same ordered stages:

    ORIGIN_CHECK -> WEBHOOK path
                 -> RATE_LIMIT(global) -> handshake | token verification -> route

Purchase requests continue with RATE_LIMIT(burst) -> RATE_LIMIT(sustained)
-> CSRF -> ENTITLEMENT_VERIFY -> LEDGER_COMMIT -> GRANT. Each stage raises a
:class:`~ag_gateway.core.errors.GatewayError` to short-circuit the rest;
:meth:`ProtocolOrchestrator.dispatch` renders it.
"""

from __future__ import annotations

import json
import logging
import math
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, TypeVar

from pydantic import ValidationError
from sqlalchemy.orm import Session

from ag_gateway.core.errors import (
    AdminRequired,
    AuthError,
    BadRequest,
    ConfigError,
    CsrfRejected,
    DuplicateTransaction,
    EntitlementInvalid,
    EntitlementOracleUnavailable,
    GatewayError,
    LedgerWriteError,
    RateLimited,
    RateLimiterUnavailable,
)
from ag_gateway.core.security import constant_time_equals, fingerprint
from ag_gateway.core.settings import Settings, settings
from ag_gateway.models.purchase import PURCHASE_STATUS_SUCCESS
from ag_gateway.schemas.protocol import (
    AdminGrantRequest,
    AdminRevokeSessionsRequest,
    FetchPaymentsRequest,
    ForceSyncRequest,
    ProtocolBody,
    SessionInitRequest,
    VerifyPurchaseRequest,
)
from ag_gateway.services.entitlements import (
    TIER_FREE,
    TIER_RANKS,
    EntitlementService,
    Holder,
    account_holder,
    device_holder,
    holder_for,
)
from ag_gateway.services.identity import IdentityVerifier
from ag_gateway.services.ledger import (
    AlreadyProcessed,
    Committed,
    Failed,
    PurchaseLedger,
    PurchaseRecord,
)
from ag_gateway.services.oracle import GooglePlayOracle, Verdict
from ag_gateway.services.origin import OriginPolicy
from ag_gateway.services.rate_limit import (
    RateLimiter,
    RateLimitPolicy,
    get_counter_store,
    global_policy,
    purchase_burst_policy,
    purchase_sustained_policy,
)
from ag_gateway.services.revocation import RevocationStore
from ag_gateway.services.tokens import SessionClaims, TokenService
from ag_gateway.services.webhooks import (
    BillingNotification,
    NotificationProcessor,
    WebhookAuthenticator,
)

logger = logging.getLogger(__name__)

ROUTE_SESSION_INIT = "session_init"
ROUTE_SERVER_TIME = "server_time"
ROUTE_USAGE_FETCH = "usage_fetch"
ROUTE_SUBSCRIPTION_STATUS = "check_subscription_status"
ROUTE_SESSION_REVOKE = "session_revoke"
ROUTE_VERIFY_PURCHASE = "verify_purchase"
ROUTE_ADMIN_STATS = "admin_get_stats"
ROUTE_ADMIN_PAYMENTS = "admin_fetch_payments"
ROUTE_ADMIN_GRANT = "admin_grant_access"
ROUTE_ADMIN_FORCE_SYNC = "admin_force_sync_purchase"
ROUTE_ADMIN_REVOKE_SESSIONS = "admin_revoke_sessions"
ROUTE_BILLING_NOTIFICATION = "billing_notification"

PUBLIC_ROUTES = frozenset({ROUTE_SERVER_TIME, ROUTE_USAGE_FETCH, ROUTE_SUBSCRIPTION_STATUS})
ADMIN_CSRF_ROUTES = frozenset(
    {ROUTE_ADMIN_GRANT, ROUTE_ADMIN_FORCE_SYNC, ROUTE_ADMIN_REVOKE_SESSIONS}
)
ADMIN_ROUTES = ADMIN_CSRF_ROUTES | {ROUTE_ADMIN_STATS, ROUTE_ADMIN_PAYMENTS}
KNOWN_ROUTES = (
    PUBLIC_ROUTES
    | ADMIN_ROUTES
    | {
        ROUTE_SESSION_INIT,
        ROUTE_SESSION_REVOKE,
        ROUTE_VERIFY_PURCHASE,
        ROUTE_BILLING_NOTIFICATION,
    }
)

HEADER_ORIGIN = "origin"
HEADER_AUTHORIZATION = "authorization"
HEADER_CSRF = "x-csrf-token"
HEADER_TIMESTAMP = "x-ag-timestamp"
HEADER_DEVICE_ID = "x-ag-device-id"
HEADER_SIGNATURE = "x-ag-signature"
HEADER_WEBHOOK_SIGNATURE = "x-ag-webhook-signature"

ADMIN_GRANT_PRODUCT = "admin_grant"

# Timestamps above this are read as milliseconds.
_MILLISECOND_THRESHOLD = 10**12

BodyT = TypeVar("BodyT", bound=ProtocolBody)


@dataclass
class InboundRequest:
    """Transport-independent view of one call to the protocol endpoint."""

    body: bytes
    headers: dict[str, str] = field(default_factory=dict)
    client_host: str | None = None

    @classmethod
    def build(
        cls,
        body: bytes,
        headers: Mapping[str, str],
        client_host: str | None = None,
    ) -> InboundRequest:
        return cls(
            body=body,
            headers={key.lower(): value for key, value in headers.items()},
            client_host=client_host,
        )

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None

    def bearer_token(self) -> str | None:
        authorization = self.header(HEADER_AUTHORIZATION)
        if not authorization:
            return None
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()


@dataclass
class ProtocolResponse:
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


class ProtocolOrchestrator:
    """Route protocol requests through the trust pipeline."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        tokens: TokenService,
        rate_limiter: RateLimiter,
        oracle: GooglePlayOracle,
        identity: IdentityVerifier,
        origin_policy: OriginPolicy | None = None,
        webhook_authenticator: WebhookAuthenticator | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = config or settings
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.oracle = oracle
        self.identity = identity
        self.origin_policy = origin_policy or OriginPolicy(self._settings)
        self.webhook_authenticator = webhook_authenticator or WebhookAuthenticator(self._settings)
        self._clock = clock

    async def aclose(self) -> None:
        await self.oracle.aclose()
        await self.identity.aclose()

    # --- entry point -------------------------------------------------------------

    async def dispatch(self, db: Session, request: InboundRequest) -> ProtocolResponse:
        """Run one request through the pipeline and render the outcome."""
        headers = self.origin_policy.base_headers()
        route = "unknown"
        try:
            headers = self.origin_policy.check(request.header(HEADER_ORIGIN))
            payload, route = self._parse_body(request.body)
            if route == ROUTE_BILLING_NOTIFICATION:
                result = self._handle_billing_notification(db, request, payload)
            else:
                result = await self._handle_session_path(db, request, route, payload)
            return ProtocolResponse(200, result, headers)
        except GatewayError as exc:
            return self._render_error(exc, route, headers)
        except Exception:
            logger.exception("Unhandled error while processing %s", route)
            return ProtocolResponse(
                500,
                {"error": "INTERNAL_ERROR", "details": "Internal server error"},
                headers,
            )

    def _render_error(
        self,
        exc: GatewayError,
        route: str,
        headers: dict[str, str],
    ) -> ProtocolResponse:
        if exc.http_status >= 500:
            logger.error("%s failed: %s", route, exc)
        else:
            logger.info("%s rejected: %s", route, exc)
        response_headers = dict(headers)
        if exc.retry_after is not None:
            response_headers["Retry-After"] = str(exc.retry_after)
        return ProtocolResponse(exc.http_status, exc.as_body(), response_headers)

    def _parse_body(self, raw: bytes) -> tuple[dict[str, Any], str]:
        try:
            payload = json.loads(raw or b"null")
        except (UnicodeDecodeError, ValueError) as exc:
            raise BadRequest("Request body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise BadRequest("Request body must be a JSON object")
        envelope = self._validate(ProtocolBody, payload)
        if envelope.type not in KNOWN_ROUTES:
            raise BadRequest(f"Unknown request type: {envelope.type[:64]}")
        return payload, envelope.type

    @staticmethod
    def _validate(model: type[BodyT], payload: dict[str, Any]) -> BodyT:
        try:
            return model.model_validate(payload)
        except ValidationError as exc:
            fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
            raise BadRequest(f"Invalid request body: {fields}") from exc

    # --- webhook path ------------------------------------------------------------

    def _handle_billing_notification(
        self,
        db: Session,
        request: InboundRequest,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        self.webhook_authenticator.authenticate(
            request.body,
            request.header(HEADER_WEBHOOK_SIGNATURE),
        )
        notification = BillingNotification.from_body(payload)
        outcome = NotificationProcessor(db, self._settings).apply(notification)
        return {"success": True, **outcome}

    # --- session path ------------------------------------------------------------

    def _client_key(self, request: InboundRequest) -> str:
        device_id = request.header(HEADER_DEVICE_ID)
        if device_id:
            return f"device:{device_id}"
        token = request.bearer_token()
        if token:
            return f"token:{fingerprint(token)}"
        return f"ip:{request.client_host or 'unknown'}"

    def _enforce_global_limit(self, request: InboundRequest) -> None:
        """General traffic fails open when the counter store is down."""
        policy = global_policy(self._settings)
        try:
            decision = self.rate_limiter.check_and_increment(self._client_key(request), policy)
        except RateLimiterUnavailable:
            logger.warning("Rate limiter unavailable; admitting general request")
            return
        if not decision.allowed:
            raise RateLimited("Too many requests", retry_after=decision.retry_after_seconds)

    def _enforce_purchase_limit(self, key: str, policy: RateLimitPolicy) -> None:
        """Purchase traffic fails closed: an unreachable store propagates as 503."""
        decision = self.rate_limiter.check_and_increment(key, policy)
        if not decision.allowed:
            raise RateLimited(
                "Too many purchase attempts",
                retry_after=decision.retry_after_seconds,
            )

    async def _handle_session_path(
        self,
        db: Session,
        request: InboundRequest,
        route: str,
        payload: dict[str, Any],
    ) -> Any:
        self._enforce_global_limit(request)

        if route == ROUTE_SESSION_INIT:
            return await self._session_init(db, request, payload)
        if route == ROUTE_SERVER_TIME:
            return {"serverTime": int(self._clock() * 1000)}
        if route in PUBLIC_ROUTES:
            return self._tier_lookup(db, request, route)

        session = self._require_session(db, request)
        if route == ROUTE_SESSION_REVOKE:
            self._check_csrf(request, session)
            revoked = RevocationStore(db, clock=self._clock).revoke(session.token)
            return {"success": True, "revoked": revoked}
        if route == ROUTE_VERIFY_PURCHASE:
            return await self._verify_purchase(db, request, session, payload)

        self._require_admin(session)
        if route in ADMIN_CSRF_ROUTES:
            self._check_csrf(request, session)
        if route == ROUTE_ADMIN_STATS:
            return self._admin_stats(db)
        if route == ROUTE_ADMIN_PAYMENTS:
            return self._admin_payments(db, payload)
        if route == ROUTE_ADMIN_GRANT:
            return self._admin_grant(db, session, payload)
        if route == ROUTE_ADMIN_REVOKE_SESSIONS:
            return self._admin_revoke_sessions(db, session, payload)
        return await self._admin_force_sync(db, payload)

    def _require_session(self, db: Session, request: InboundRequest) -> SessionClaims:
        token = request.bearer_token()
        if not token:
            raise AuthError("Missing bearer token")
        claims = self.tokens.verify_session(db, token)
        if claims is None:
            raise AuthError("Invalid or expired session")
        return claims

    def _require_admin(self, session: SessionClaims) -> None:
        if not session.is_authenticated or session.subject_id not in self._settings.admin_uids:
            logger.warning("Admin route denied for subject %s", fingerprint(session.subject_id))
            raise AdminRequired("Administrator access required")

    def _check_csrf(
        self,
        request: InboundRequest,
        session: SessionClaims,
        *,
        require_timestamp: bool = False,
    ) -> None:
        if not self.tokens.verify_csrf(request.header(HEADER_CSRF), session.subject_id):
            raise CsrfRejected("CSRF token missing or invalid")
        if require_timestamp and not self._timestamp_is_fresh(request.header(HEADER_TIMESTAMP)):
            raise CsrfRejected("Request timestamp missing or outside the allowed window")

    def _timestamp_is_fresh(self, raw: str | None) -> bool:
        if raw is None:
            return False
        try:
            value = float(raw)
        except ValueError:
            return False
        if not math.isfinite(value):
            return False
        seconds = value / 1000 if value >= _MILLISECOND_THRESHOLD else value
        tolerance = self._settings.request_timestamp_tolerance_seconds
        return abs(self._clock() - seconds) <= tolerance

    # --- routes ------------------------------------------------------------------

    async def _session_init(
        self,
        db: Session,
        request: InboundRequest,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        expected_signature = self._settings.protocol_signature
        if not expected_signature:
            raise ConfigError("Protocol signature is not configured")
        if not constant_time_equals(request.header(HEADER_SIGNATURE), expected_signature):
            raise AuthError("Invalid protocol signature")
        device_id = request.header(HEADER_DEVICE_ID)
        if not device_id:
            raise AuthError("Device id header required")

        body = self._validate(SessionInitRequest, payload)
        if body.credential:
            identity = await self.identity.verify(body.credential)
            subject_id, email, authenticated = identity.subject, identity.email, True
        else:
            subject_id, email, authenticated = device_id, None, False

        issued = self.tokens.issue_pair(
            db,
            subject_id=subject_id,
            device_id=device_id,
            is_authenticated=authenticated,
            email=email,
        )
        holder = holder_for(subject_id, device_id, is_authenticated=authenticated)
        tier = EntitlementService(db).tier_for(holder)
        logger.info(
            "Session issued for %s (authenticated=%s)", fingerprint(subject_id), authenticated
        )
        return {
            "success": True,
            "sessionToken": issued.session_token,
            "csrfToken": issued.csrf_token,
            "expiresAt": issued.expires_at * 1000,
            "profile": {
                "google_uid": subject_id if authenticated else None,
                "email": email,
                "tier": tier,
                "is_pro": tier != TIER_FREE,
            },
        }

    def _tier_lookup(self, db: Session, request: InboundRequest, route: str) -> dict[str, Any]:
        device_id = request.header(HEADER_DEVICE_ID)
        holder: Holder | None = None
        token = request.bearer_token()
        if token:
            session = self.tokens.verify_session(db, token)
            if session is not None:
                holder = holder_for(
                    session.subject_id,
                    device_id,
                    is_authenticated=session.is_authenticated,
                )
        if holder is None and device_id:
            holder = device_holder(device_id)
        if holder is None:
            raise BadRequest("A session or device id is required")

        tier = EntitlementService(db).tier_for(holder)
        body: dict[str, Any] = {"tier": tier, "isPro": tier != TIER_FREE}
        if route == ROUTE_SUBSCRIPTION_STATUS:
            body["active"] = tier != TIER_FREE
        return body

    async def _verify_purchase(
        self,
        db: Session,
        request: InboundRequest,
        session: SessionClaims,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        device_id = request.header(HEADER_DEVICE_ID)
        if not device_id:
            raise AuthError("Device id header required")

        limit_key = f"subject:{session.subject_id}"
        self._enforce_purchase_limit(limit_key, purchase_burst_policy(self._settings))
        self._enforce_purchase_limit(limit_key, purchase_sustained_policy(self._settings))
        self._check_csrf(request, session, require_timestamp=True)

        body = self._validate(VerifyPurchaseRequest, payload)
        tier = self._tier_for_product(body.product_id)
        await self._confirm_with_oracle(body.product_id, body.purchase_token)

        result = PurchaseLedger(db).commit(
            PurchaseRecord(
                transaction_id=body.transaction_id,
                device_id=device_id,
                subject_id=session.subject_id if session.is_authenticated else None,
                product_id=body.product_id,
                purchase_token=body.purchase_token,
                status=PURCHASE_STATUS_SUCCESS,
            )
        )
        if isinstance(result, AlreadyProcessed):
            raise DuplicateTransaction("Transaction already processed")
        if isinstance(result, Failed):
            raise LedgerWriteError("Purchase could not be recorded")

        holder = (
            account_holder(session.subject_id)
            if session.is_authenticated
            else device_holder(device_id)
        )
        EntitlementService(db).grant(holder, tier, body.transaction_id)
        return {"success": True, "tier": tier, "transactionId": body.transaction_id}

    def _tier_for_product(self, product_id: str) -> str:
        tier = self._settings.product_tiers.get(product_id)
        if tier is None:
            raise EntitlementInvalid("Unknown product")
        return tier

    async def _confirm_with_oracle(self, product_id: str, purchase_token: str) -> None:
        verdict = await self.oracle.check(product_id, purchase_token)
        if verdict is Verdict.UNAVAILABLE:
            raise EntitlementOracleUnavailable("Purchase could not be verified")
        if verdict is not Verdict.VALID:
            raise EntitlementInvalid("Purchase is not valid")

    def _admin_stats(self, db: Session) -> dict[str, Any]:
        ledger_counts = PurchaseLedger(db).status_counts()
        return {
            "transactions": ledger_counts,
            "totalTransactions": sum(ledger_counts.values()),
            "tiers": EntitlementService(db).tier_counts(),
            "activeSessions": RevocationStore(db, clock=self._clock).active_count(),
        }

    def _admin_payments(self, db: Session, payload: dict[str, Any]) -> list[dict[str, Any]]:
        body = self._validate(FetchPaymentsRequest, payload)
        rows = PurchaseLedger(db).recent(limit=body.limit, status=body.status)
        return [row.as_dict() for row in rows]

    def _admin_grant(
        self,
        db: Session,
        session: SessionClaims,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        body = self._validate(AdminGrantRequest, payload)
        holder = self._target_holder(body.target_uid, body.target_device_id)
        if body.target_tier not in TIER_RANKS or body.target_tier == TIER_FREE:
            raise BadRequest("Unknown target tier")

        transaction_id = f"admin_grant:{uuid.uuid4().hex}"
        result = PurchaseLedger(db).commit(
            PurchaseRecord(
                transaction_id=transaction_id,
                device_id=body.target_device_id,
                subject_id=body.target_uid,
                product_id=ADMIN_GRANT_PRODUCT,
                purchase_token=f"admin:{session.subject_id}",
                status=PURCHASE_STATUS_SUCCESS,
            )
        )
        if not isinstance(result, Committed):
            raise LedgerWriteError("Grant could not be audited")

        EntitlementService(db).grant(holder, body.target_tier, transaction_id)
        logger.info(
            "Admin %s granted %s to %s", fingerprint(session.subject_id), body.target_tier, holder
        )
        return {"success": True, "tier": body.target_tier, "transactionId": transaction_id}

    def _admin_revoke_sessions(
        self,
        db: Session,
        session: SessionClaims,
        payload: dict[str, Any],
    ) -> dict[str, Any]:
        body = self._validate(AdminRevokeSessionsRequest, payload)
        revoked = RevocationStore(db, clock=self._clock).revoke_subject(body.target_uid)
        logger.info(
            "Admin %s revoked %d session(s) of %s",
            fingerprint(session.subject_id),
            revoked,
            fingerprint(body.target_uid),
        )
        return {"success": True, "revoked": revoked}

    async def _admin_force_sync(self, db: Session, payload: dict[str, Any]) -> dict[str, Any]:
        body = self._validate(ForceSyncRequest, payload)
        holder = self._target_holder(body.target_google_uid, body.target_device_id)
        tier = self._tier_for_product(body.product_id)
        await self._confirm_with_oracle(body.product_id, body.purchase_token)

        transaction_id = body.transaction_id or f"recovery_{int(self._clock() * 1000)}"
        result = PurchaseLedger(db).commit(
            PurchaseRecord(
                transaction_id=transaction_id,
                device_id=body.target_device_id,
                subject_id=body.target_google_uid,
                product_id=body.product_id,
                purchase_token=body.purchase_token,
                status=PURCHASE_STATUS_SUCCESS,
            )
        )
        if isinstance(result, Failed):
            raise LedgerWriteError("Purchase could not be recorded")

        EntitlementService(db).grant(holder, tier, transaction_id)
        return {
            "success": True,
            "duplicate": isinstance(result, AlreadyProcessed),
            "tier": tier,
            "transactionId": transaction_id,
        }

    @staticmethod
    def _target_holder(subject_id: str | None, device_id: str | None) -> Holder:
        if subject_id:
            return account_holder(subject_id)
        if device_id:
            return device_holder(device_id)
        raise BadRequest("A target account or device is required")


def build_orchestrator(config: Settings | None = None) -> ProtocolOrchestrator:
    """Wire the production collaborators from settings."""
    cfg = config or settings
    return ProtocolOrchestrator(
        cfg,
        tokens=TokenService(cfg),
        rate_limiter=RateLimiter(get_counter_store(cfg)),
        oracle=GooglePlayOracle(cfg),
        identity=IdentityVerifier(cfg),
        origin_policy=OriginPolicy(cfg),
        webhook_authenticator=WebhookAuthenticator(cfg),
    )
