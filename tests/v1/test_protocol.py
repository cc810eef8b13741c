# tests/v1/test_protocol.py
"""End-to-end tests for the multiplexed protocol endpoint."""

from __future__ import annotations

from typing import Any

from fastapi.testclient import TestClient
from nacl.signing import SigningKey
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from ag_gateway.models.purchase import PurchaseTransaction
from ag_gateway.services.entitlements import EntitlementService, account_holder, device_holder
from ag_gateway.services.oracle import Verdict
from ag_gateway.services.orchestrator import ProtocolOrchestrator
from ag_gateway.services.origin import OriginPolicy
from ag_gateway.services.webhooks import WebhookAuthenticator
from tests.conftest import (
    ADMIN_UID,
    DEVICE_ID,
    PROTOCOL_SIGNATURE,
    FakeClock,
    FakeCounterStore,
    FakeOracle,
    build_settings,
    handshake,
    make_identity_credential,
    session_headers,
)

ENDPOINT = "/api/index"


def _purchase(transaction_id: str, product_id: str = "lifetime_pro_access") -> dict[str, Any]:
    return {
        "type": "verify_purchase",
        "purchaseToken": f"token-{transaction_id}",
        "productId": product_id,
        "transactionId": transaction_id,
    }


def _ledger_rows(db_session: Session) -> int:
    return db_session.scalar(select(func.count()).select_from(PurchaseTransaction)) or 0


# --- handshake -------------------------------------------------------------------


def test_anonymous_handshake_issues_tokens(client: TestClient) -> None:
    """Test that a signed handshake without a credential returns a device session."""
    body = handshake(client)

    assert body["success"] is True
    assert body["sessionToken"] and body["csrfToken"]
    assert body["profile"] == {"google_uid": None, "email": None, "tier": "free", "is_pro": False}
    assert body["expiresAt"] > 10**12


def test_handshake_with_credential_binds_account(client: TestClient) -> None:
    """Test that a verified identity credential becomes the session subject."""
    credential = make_identity_credential("google-uid-7", "seven@example.com")

    body = handshake(client, credential=credential)

    assert body["profile"]["google_uid"] == "google-uid-7"
    assert body["profile"]["email"] == "seven@example.com"


def test_handshake_rejects_bad_signature(client: TestClient) -> None:
    """Test that the protocol signature header is enforced."""
    response = client.post(
        ENDPOINT,
        json={"type": "session_init"},
        headers={"x-ag-signature": "wrong", "x-ag-device-id": DEVICE_ID},
    )

    assert response.status_code == 401
    assert response.json()["error"] == "UNAUTHORIZED"


def test_handshake_rejects_bad_credential(client: TestClient) -> None:
    """Test that an unverifiable identity credential is refused."""
    response = client.post(
        ENDPOINT,
        json={"type": "session_init", "credential": make_identity_credential("u", secret="nope")},
        headers={"x-ag-signature": PROTOCOL_SIGNATURE, "x-ag-device-id": DEVICE_ID},
    )

    assert response.status_code == 401


# --- request envelope ------------------------------------------------------------


def test_unknown_type_is_bad_request(client: TestClient) -> None:
    """Test that an unrecognised route discriminator yields 400."""
    response = client.post(ENDPOINT, json={"type": "make_coffee"})

    assert response.status_code == 400
    assert response.json()["error"] == "BAD_REQUEST"


def test_non_object_body_is_bad_request(client: TestClient) -> None:
    """Test that only JSON objects are accepted."""
    assert client.post(ENDPOINT, content=b"[1, 2]").status_code == 400
    assert client.post(ENDPOINT, content=b"{not json").status_code == 400


def test_protected_route_requires_bearer(client: TestClient) -> None:
    """Test that protected routes without a session token yield 401."""
    response = client.post(ENDPOINT, json=_purchase("tx-1"), headers={"x-ag-device-id": DEVICE_ID})

    assert response.status_code == 401


def test_server_time_is_public(client: TestClient, clock: FakeClock) -> None:
    """Test that server_time needs no session."""
    response = client.post(ENDPOINT, json={"type": "server_time"})

    assert response.status_code == 200
    assert response.json() == {"serverTime": int(clock() * 1000)}


# --- purchase pipeline -----------------------------------------------------------


def test_purchase_grants_once_and_duplicate_is_noop(
    client: TestClient,
    clock: FakeClock,
    db_session: Session,
) -> None:
    """Test that a replayed transaction id returns 409 and leaves one ledger row."""
    session = handshake(client)
    headers = session_headers(session, clock)

    first = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)
    second = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)

    assert first.status_code == 200
    assert first.json() == {"success": True, "tier": "lifetime", "transactionId": "tx-1"}
    assert second.status_code == 409
    assert second.json()["duplicate"] is True
    assert _ledger_rows(db_session) == 1
    assert EntitlementService(db_session).tier_for(device_holder(DEVICE_ID)) == "lifetime"


def test_purchase_burst_limit_returns_retry_after(client: TestClient, clock: FakeClock) -> None:
    """Test that the sixth purchase inside the burst window is throttled."""
    session = handshake(client)
    headers = session_headers(session, clock)

    statuses = [
        client.post(ENDPOINT, json=_purchase(f"tx-{i}"), headers=headers).status_code
        for i in range(5)
    ]
    throttled = client.post(ENDPOINT, json=_purchase("tx-6"), headers=headers)

    assert statuses == [200] * 5
    assert throttled.status_code == 429
    assert throttled.json()["error"] == "RATE_LIMITED"
    assert int(throttled.headers["Retry-After"]) > 0


def test_purchase_rejected_by_oracle_stays_retryable(
    client: TestClient,
    clock: FakeClock,
    fake_oracle: FakeOracle,
    db_session: Session,
) -> None:
    """Test that a failed verification writes nothing so the client may retry."""
    session = handshake(client)
    headers = session_headers(session, clock)

    fake_oracle.verdict = Verdict.INVALID
    rejected = client.post(ENDPOINT, json=_purchase("tx-9"), headers=headers)
    fake_oracle.verdict = Verdict.UNAVAILABLE
    unavailable = client.post(ENDPOINT, json=_purchase("tx-9"), headers=headers)
    fake_oracle.verdict = Verdict.VALID
    accepted = client.post(ENDPOINT, json=_purchase("tx-9"), headers=headers)

    assert rejected.status_code == 402
    assert rejected.json()["error"] == "ENTITLEMENT_INVALID"
    assert unavailable.status_code == 402
    assert unavailable.json()["error"] == "ENTITLEMENT_ORACLE_UNAVAILABLE"
    assert accepted.status_code == 200
    assert _ledger_rows(db_session) == 1


def test_unknown_product_is_rejected_without_oracle_call(
    client: TestClient,
    clock: FakeClock,
    fake_oracle: FakeOracle,
) -> None:
    """Test that products outside the catalogue never reach the oracle."""
    session = handshake(client)

    response = client.post(
        ENDPOINT,
        json=_purchase("tx-1", product_id="free_money"),
        headers=session_headers(session, clock),
    )

    assert response.status_code == 402
    assert fake_oracle.calls == []


def test_purchase_csrf_mismatch_is_forbidden(client: TestClient, clock: FakeClock) -> None:
    """Test that a CSRF token from another session is refused."""
    mine = handshake(client)
    theirs = handshake(client, device_id="device-other")
    headers = session_headers(mine, clock)
    headers["x-csrf-token"] = theirs["csrfToken"]

    response = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)

    assert response.status_code == 403
    assert response.json()["error"] == "CSRF_REJECTED"


def test_purchase_stale_timestamp_is_forbidden(client: TestClient, clock: FakeClock) -> None:
    """Test that requests outside the freshness window are refused."""
    session = handshake(client)
    headers = session_headers(session, clock)
    headers["x-ag-timestamp"] = str(int((clock() - 600) * 1000))

    response = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)

    assert response.status_code == 403


def test_limiter_outage_fails_open_for_general_and_closed_for_purchase(
    client: TestClient,
    clock: FakeClock,
    counter_store: FakeCounterStore,
) -> None:
    """Test the fail-open and fail-closed split when the counter store is down."""
    session = handshake(client)
    counter_store.down = True

    general = client.post(ENDPOINT, json={"type": "server_time"})
    headers = session_headers(session, clock)
    purchase = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)

    assert general.status_code == 200
    assert purchase.status_code == 503
    assert purchase.json()["error"] == "RATE_LIMITER_UNAVAILABLE"


def test_authenticated_purchase_grants_account(
    client: TestClient,
    clock: FakeClock,
    db_session: Session,
) -> None:
    """Test that signed-in purchases follow the account rather than the device."""
    session = handshake(client, credential=make_identity_credential("google-uid-3"))
    headers = session_headers(session, clock)
    body = _purchase("tx-1", product_id="monthly_pro_pass")

    response = client.post(ENDPOINT, json=body, headers=headers)
    repeat = client.post(ENDPOINT, json=body, headers=headers)

    assert response.status_code == 200
    assert repeat.status_code == 409
    assert repeat.json()["duplicate"] is True
    assert _ledger_rows(db_session) == 1
    service = EntitlementService(db_session)
    assert service.tier_for(account_holder("google-uid-3")) == "pro"
    assert service.tier_for(device_holder(DEVICE_ID)) == "free"


# --- session lifecycle and tier lookups ------------------------------------------


def test_session_revoke_invalidates_token(client: TestClient, clock: FakeClock) -> None:
    """Test that a revoked session token is refused afterwards."""
    session = handshake(client)
    headers = session_headers(session, clock)

    revoked = client.post(ENDPOINT, json={"type": "session_revoke"}, headers=headers)
    after = client.post(ENDPOINT, json=_purchase("tx-1"), headers=headers)

    assert revoked.json() == {"success": True, "revoked": True}
    assert after.status_code == 401


def test_session_revoke_requires_csrf(client: TestClient, clock: FakeClock) -> None:
    """Test that a bearer token alone cannot revoke its session."""
    session = handshake(client)
    headers = session_headers(session, clock)
    bearer_only = {"Authorization": headers["Authorization"]}

    refused = client.post(ENDPOINT, json={"type": "session_revoke"}, headers=bearer_only)
    still_live = client.post(ENDPOINT, json={"type": "session_revoke"}, headers=headers)

    assert refused.status_code == 403
    assert refused.json()["error"] == "CSRF_REJECTED"
    assert still_live.json() == {"success": True, "revoked": True}


def test_subscription_status_reflects_grant(client: TestClient, clock: FakeClock) -> None:
    """Test the public tier lookup before and after a purchase."""
    session = handshake(client)
    lookup = {"type": "check_subscription_status"}
    device = {"x-ag-device-id": DEVICE_ID}

    before = client.post(ENDPOINT, json=lookup, headers=device).json()
    client.post(ENDPOINT, json=_purchase("tx-1"), headers=session_headers(session, clock))
    after = client.post(ENDPOINT, json=lookup, headers=device).json()

    assert before == {"tier": "free", "isPro": False, "active": False}
    assert after == {"tier": "lifetime", "isPro": True, "active": True}


def test_tier_lookup_needs_an_identifier(client: TestClient) -> None:
    """Test that usage_fetch without session or device id is a bad request."""
    assert client.post(ENDPOINT, json={"type": "usage_fetch"}).status_code == 400


# --- admin routes ----------------------------------------------------------------


def _admin_session(client: TestClient) -> dict[str, Any]:
    return handshake(client, credential=make_identity_credential(ADMIN_UID))


def test_admin_routes_refuse_regular_users(client: TestClient, clock: FakeClock) -> None:
    """Test that non-admin sessions get 403 on admin routes."""
    session = handshake(client, credential=make_identity_credential("google-uid-1"))

    response = client.post(
        ENDPOINT,
        json={"type": "admin_get_stats"},
        headers=session_headers(session, clock),
    )

    assert response.status_code == 403
    assert response.json()["error"] == "ADMIN_REQUIRED"


def test_admin_stats_and_payments(client: TestClient, clock: FakeClock) -> None:
    """Test the admin dashboard read routes."""
    buyer = handshake(client)
    client.post(ENDPOINT, json=_purchase("tx-1"), headers=session_headers(buyer, clock))
    admin_headers = session_headers(_admin_session(client), clock)

    stats = client.post(ENDPOINT, json={"type": "admin_get_stats"}, headers=admin_headers)
    payments = client.post(
        ENDPOINT,
        json={"type": "admin_fetch_payments", "limit": 10},
        headers=admin_headers,
    )

    assert stats.status_code == 200
    assert stats.json()["totalTransactions"] == 1
    assert stats.json()["tiers"]["lifetime"] == 1
    assert stats.json()["activeSessions"] == 2
    assert [row["transaction_id"] for row in payments.json()] == ["tx-1"]


def test_admin_grant_requires_csrf_and_audits(
    client: TestClient,
    clock: FakeClock,
    db_session: Session,
) -> None:
    """Test that manual grants need CSRF and leave an audit row."""
    headers = session_headers(_admin_session(client), clock)
    body = {"type": "admin_grant_access", "targetUid": "google-uid-5", "targetTier": "pro"}

    missing_csrf = client.post(
        ENDPOINT,
        json=body,
        headers={"Authorization": headers["Authorization"]},
    )
    granted = client.post(ENDPOINT, json=body, headers=headers)

    assert missing_csrf.status_code == 403
    assert granted.status_code == 200
    assert granted.json()["transactionId"].startswith("admin_grant:")
    assert _ledger_rows(db_session) == 1
    assert EntitlementService(db_session).tier_for(account_holder("google-uid-5")) == "pro"


def test_admin_force_sync_tolerates_duplicates(client: TestClient, clock: FakeClock) -> None:
    """Test that replaying a purchase twice reports the duplicate but still succeeds."""
    headers = session_headers(_admin_session(client), clock)
    body = {
        "type": "admin_force_sync_purchase",
        "purchaseToken": "lost-token",
        "productId": "monthly_pro_pass",
        "transactionId": "GPA.1234",
        "targetDeviceId": "device-lost",
    }

    first = client.post(ENDPOINT, json=body, headers=headers).json()
    second = client.post(ENDPOINT, json=body, headers=headers).json()

    assert first["duplicate"] is False
    assert first["tier"] == "pro"
    assert first["transactionId"] == "GPA.1234"
    assert second["duplicate"] is True


def test_admin_revoke_sessions_signs_out_subject(client: TestClient, clock: FakeClock) -> None:
    """Test that an admin can revoke every session of an account."""
    credential = make_identity_credential("google-uid-8")
    phone = handshake(client, credential=credential)
    tablet = handshake(client, device_id="device-tablet", credential=credential)
    admin_headers = session_headers(_admin_session(client), clock)
    body = {"type": "admin_revoke_sessions", "targetUid": "google-uid-8"}

    without_csrf = client.post(
        ENDPOINT,
        json=body,
        headers={"Authorization": admin_headers["Authorization"]},
    )
    revoked = client.post(ENDPOINT, json=body, headers=admin_headers)
    phone_after = client.post(
        ENDPOINT,
        json=_purchase("tx-1"),
        headers=session_headers(phone, clock),
    )
    tablet_after = client.post(
        ENDPOINT,
        json={"type": "session_revoke"},
        headers=session_headers(tablet, clock, device_id="device-tablet"),
    )

    assert without_csrf.status_code == 403
    assert revoked.json() == {"success": True, "revoked": 2}
    assert phone_after.status_code == 401
    assert tablet_after.status_code == 401


# --- billing notifications -------------------------------------------------------


def test_billing_notification_signature_enforced(
    client: TestClient,
    orchestrator: ProtocolOrchestrator,
) -> None:
    """Test that a tampered notification is refused and a signed one accepted."""
    key = SigningKey.generate()
    orchestrator.webhook_authenticator = WebhookAuthenticator(
        build_settings(
            environment="production",
            billing_webhook_public_key=key.verify_key.encode().hex(),
        )
    )
    raw = b'{"type":"billing_notification","notification":{"testNotification":{}}}'
    signature = key.sign(raw).signature.hex()
    headers = {"content-type": "application/json", "x-ag-webhook-signature": signature}

    tampered = client.post(ENDPOINT, content=raw.replace(b"{}", b"[]"), headers=headers)
    unsigned = client.post(ENDPOINT, content=raw, headers={"content-type": "application/json"})
    accepted = client.post(ENDPOINT, content=raw, headers=headers)

    assert tampered.status_code == 401
    assert tampered.json()["error"] == "WEBHOOK_SIGNATURE_INVALID"
    assert unsigned.status_code == 401
    assert accepted.status_code == 200
    assert accepted.json() == {"success": True, "action": "acknowledged", "revoked": 0}


# --- origin handling -------------------------------------------------------------


def test_allowed_origin_is_echoed(client: TestClient) -> None:
    """Test CORS and security headers on a response to a listed origin."""
    response = client.post(
        ENDPOINT,
        json={"type": "server_time"},
        headers={"Origin": "capacitor://localhost"},
    )

    assert response.headers["access-control-allow-origin"] == "capacitor://localhost"
    assert response.headers["x-content-type-options"] == "nosniff"


def test_unlisted_origin_rejected_in_production(
    client: TestClient,
    orchestrator: ProtocolOrchestrator,
) -> None:
    """Test that production refuses unknown origins for requests and preflights."""
    orchestrator.origin_policy = OriginPolicy(build_settings(environment="production"))

    response = client.post(
        ENDPOINT,
        json={"type": "server_time"},
        headers={"Origin": "https://evil.example"},
    )
    preflight = client.options(ENDPOINT, headers={"Origin": "https://evil.example"})

    assert response.status_code == 403
    assert response.json()["error"] == "ORIGIN_REJECTED"
    assert preflight.status_code == 403


def test_preflight_for_allowed_origin(client: TestClient) -> None:
    """Test that preflight answers 204 with the allowed headers."""
    response = client.options(ENDPOINT, headers={"Origin": "https://pdf-tools-pro.vercel.app"})

    assert response.status_code == 204
    assert response.headers["access-control-max-age"] == "86400"
    assert "x-csrf-token" in response.headers["access-control-allow-headers"]
