# tests/conftest.py
from __future__ import annotations

import math
import time
from collections.abc import Generator, Iterator
from typing import Any

import pytest
import redis
from fastapi import FastAPI
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ag_gateway.core.settings import Settings
from ag_gateway.db.session import Base
from ag_gateway.db.session import get_db as app_get_session
from ag_gateway.main import app as fastapi_app
from ag_gateway.services.identity import IdentityVerifier
from ag_gateway.services.oracle import Verdict
from ag_gateway.services.orchestrator import ProtocolOrchestrator
from ag_gateway.services.rate_limit import RateLimiter
from ag_gateway.services.tokens import TokenService

TEST_DB_URL = "sqlite://"
SESSION_SECRET = "test-session-secret-0123456789abcdef"
PROTOCOL_SIGNATURE = "ag-protocol-test-signature"
IDENTITY_SECRET = "test-identity-secret-fedcba9876543210"
ADMIN_UID = "admin-google-uid"
DEVICE_ID = "device-1234"


class FakeClock:
    """Manually advanced replacement for ``time.time``."""

    def __init__(self, start: float | None = None) -> None:
        self.now = float(start if start is not None else time.time())

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCounterStore:
    """In-memory stand-in for the Redis INCR/EXPIRE/TTL commands."""

    def __init__(self, clock: FakeClock) -> None:
        self._clock = clock
        self.values: dict[str, int] = {}
        self.expiry: dict[str, float] = {}
        self.down = False

    def _check(self) -> None:
        if self.down:
            raise redis.ConnectionError("counter store unreachable")

    def _purge(self, name: str) -> None:
        deadline = self.expiry.get(name)
        if deadline is not None and self._clock() >= deadline:
            self.values.pop(name, None)
            self.expiry.pop(name, None)

    def incr(self, name: str, amount: int = 1) -> int:
        self._check()
        self._purge(name)
        self.values[name] = self.values.get(name, 0) + amount
        return self.values[name]

    def expire(self, name: str, time: int) -> bool:
        self._check()
        if name not in self.values:
            return False
        self.expiry[name] = self._clock() + time
        return True

    def ttl(self, name: str) -> int:
        self._check()
        self._purge(name)
        if name not in self.values:
            return -2
        if name not in self.expiry:
            return -1
        return math.ceil(self.expiry[name] - self._clock())


class FakeOracle:
    """Billing oracle returning a configurable verdict."""

    def __init__(self) -> None:
        self.verdict = Verdict.VALID
        self.calls: list[tuple[str, str]] = []

    async def check(self, product_id: str, purchase_token: str) -> Verdict:
        self.calls.append((product_id, purchase_token))
        return self.verdict

    async def verify(self, product_id: str, purchase_token: str) -> bool:
        return await self.check(product_id, purchase_token) is Verdict.VALID

    async def aclose(self) -> None:
        return None


def build_settings(**overrides: Any) -> Settings:
    values: dict[str, Any] = {
        "session_token_secret": SESSION_SECRET,
        "protocol_signature": PROTOCOL_SIGNATURE,
        "identity_jwt_secret": IDENTITY_SECRET,
        "admin_uids": [ADMIN_UID],
        "environment": "development",
        "database_url": TEST_DB_URL,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[call-arg]


def make_identity_credential(
    subject: str,
    email: str | None = None,
    *,
    secret: str = IDENTITY_SECRET,
    audience: str = "authenticated",
    expires_in: int = 3600,
) -> str:
    """Return an HS256 ID token as issued by the external identity provider."""
    now = int(time.time())
    claims: dict[str, Any] = {"sub": subject, "aud": audience, "iat": now, "exp": now + expires_in}
    if email:
        claims["email"] = email
    return jwt.encode(claims, secret, algorithm="HS256")


@pytest.fixture()
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings() -> Settings:
    """Provide an isolated Settings instance with test secrets."""
    return build_settings()


@pytest.fixture()
def counter_store(clock: FakeClock) -> FakeCounterStore:
    return FakeCounterStore(clock)


@pytest.fixture()
def fake_oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture()
def token_service(test_settings: Settings, clock: FakeClock) -> TokenService:
    return TokenService(test_settings, clock=clock)


@pytest.fixture()
def orchestrator(
    test_settings: Settings,
    token_service: TokenService,
    counter_store: FakeCounterStore,
    fake_oracle: FakeOracle,
    clock: FakeClock,
) -> ProtocolOrchestrator:
    return ProtocolOrchestrator(
        test_settings,
        tokens=token_service,
        rate_limiter=RateLimiter(counter_store),
        oracle=fake_oracle,  # type: ignore[arg-type]
        identity=IdentityVerifier(test_settings),
        clock=clock,
    )


@pytest.fixture()
def app(orchestrator: ProtocolOrchestrator) -> Iterator[FastAPI]:
    original = fastapi_app.state.orchestrator
    fastapi_app.state.orchestrator = orchestrator
    try:
        yield fastapi_app
    finally:
        fastapi_app.state.orchestrator = original


@pytest.fixture(autouse=True)
def override_session_dependency(db_session: Session) -> Iterator[None]:
    def _get_session_override() -> Generator[Session, None, None]:
        yield db_session

    fastapi_app.dependency_overrides[app_get_session] = _get_session_override
    try:
        yield
    finally:
        fastapi_app.dependency_overrides.pop(app_get_session, None)


@pytest.fixture()
def client(app: FastAPI) -> Iterator[TestClient]:
    with TestClient(app, base_url="http://test") as test_client:
        yield test_client


def handshake(
    client: TestClient,
    *,
    device_id: str = DEVICE_ID,
    credential: str | None = None,
) -> dict[str, Any]:
    """Run ``session_init`` and return the decoded response body."""
    body: dict[str, Any] = {"type": "session_init"}
    if credential is not None:
        body["credential"] = credential
    response = client.post(
        "/api/index",
        json=body,
        headers={"x-ag-signature": PROTOCOL_SIGNATURE, "x-ag-device-id": device_id},
    )
    assert response.status_code == 200, response.text
    return response.json()


def session_headers(
    session: dict[str, Any],
    clock: FakeClock,
    *,
    device_id: str = DEVICE_ID,
) -> dict[str, str]:
    """Headers for an authenticated state-changing request."""
    return {
        "Authorization": f"Bearer {session['sessionToken']}",
        "x-csrf-token": session["csrfToken"],
        "x-ag-timestamp": str(int(clock() * 1000)),
        "x-ag-device-id": device_id,
    }
