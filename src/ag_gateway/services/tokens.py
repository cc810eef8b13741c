"""Signed session and CSRF tokens.

Tokens are ``base64(payload) + "." + hex(hmac_sha256(payload))`` where the
payload is compact JSON. The codec only proves that
the bytes were produced with the shared secret and are not expired. Session
and CSRF semantics (revocation lookup, purpose markers, subject binding) live
in :class:`TokenService`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from ag_gateway.core.errors import ConfigError
from ag_gateway.core.settings import Settings, settings
from ag_gateway.services.revocation import RevocationStore

logger = logging.getLogger(__name__)

PURPOSE_SESSION = "session"
PURPOSE_CSRF = "csrf"

Clock = Callable[[], float]


class SignedTokenCodec:
    """Issue and verify HMAC-signed compact tokens."""

    def __init__(self, secret: str | None, *, clock: Clock = time.time) -> None:
        if not secret:
            raise ConfigError("Session signing secret is not configured")
        self._key = secret.encode("utf-8")
        self._clock = clock

    def _sign(self, payload_bytes: bytes) -> str:
        return hmac.new(self._key, payload_bytes, hashlib.sha256).hexdigest()

    def issue(self, payload: dict[str, Any]) -> str:
        """Serialize and sign ``payload``."""
        payload_bytes = json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")
        encoded = base64.b64encode(payload_bytes).decode("ascii")
        return f"{encoded}.{self._sign(payload_bytes)}"

    def verify(self, token: str | None) -> dict[str, Any] | None:
        """Return the payload of a valid, unexpired token, otherwise None."""
        if not token or not isinstance(token, str):
            return None
        parts = token.split(".")
        if len(parts) != 2:
            return None
        encoded, signature = parts
        try:
            payload_bytes = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            return None

        expected = self._sign(payload_bytes)
        # compare_digest is constant time and rejects length mismatches outright.
        if not hmac.compare_digest(signature.encode("ascii", "replace"), expected.encode("ascii")):
            return None

        try:
            payload = json.loads(payload_bytes)
        except (UnicodeDecodeError, ValueError):
            return None
        if not isinstance(payload, dict):
            return None

        expires_at = payload.get("exp")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if self._clock() > expires_at:
            return None
        return payload


@dataclass(frozen=True)
class SessionClaims:
    """Verified contents of a session token."""

    subject_id: str
    is_authenticated: bool
    email: str | None
    issued_at: int
    expires_at: int
    jti: str
    token: str


@dataclass(frozen=True)
class IssuedTokens:
    """Session/CSRF pair handed out by a handshake."""

    session_token: str
    csrf_token: str
    expires_at: int


class TokenService:
    """Session and CSRF issuance and verification rules."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        clock: Clock = time.time,
    ) -> None:
        self._settings = config or settings
        self._clock = clock
        self._codec: SignedTokenCodec | None = None

    @property
    def codec(self) -> SignedTokenCodec:
        # Built on first use so a missing secret surfaces as a ConfigError per request.
        if self._codec is None:
            self._codec = SignedTokenCodec(self._settings.session_token_secret, clock=self._clock)
        return self._codec

    def issue_pair(
        self,
        db: Session,
        *,
        subject_id: str,
        device_id: str | None,
        is_authenticated: bool,
        email: str | None = None,
    ) -> IssuedTokens:
        """Issue a session token and its CSRF companion, registering the session."""
        now = int(self._clock())
        session_exp = now + self._settings.session_ttl_seconds
        session_jti = secrets.token_hex(16)
        session_token = self.codec.issue(
            {
                "sub": subject_id,
                "auth": bool(is_authenticated),
                "email": email,
                "iat": now,
                "exp": session_exp,
                "jti": session_jti,
                "purpose": PURPOSE_SESSION,
            }
        )
        csrf_token = self.codec.issue(
            {
                "sub": subject_id,
                "purpose": PURPOSE_CSRF,
                "iat": now,
                "exp": now + self._settings.csrf_ttl_seconds,
                "jti": secrets.token_hex(16),
            }
        )
        RevocationStore(db, clock=self._clock).register(
            subject_id,
            session_token,
            device_id,
            session_exp,
            jti=session_jti,
        )
        return IssuedTokens(
            session_token=session_token,
            csrf_token=csrf_token,
            expires_at=session_exp,
        )

    def verify_session(self, db: Session, token: str | None) -> SessionClaims | None:
        """Verify signature, expiry and server-side registration of a session token."""
        payload = self.codec.verify(token)
        if payload is None or token is None:
            return None
        if payload.get("purpose", PURPOSE_SESSION) != PURPOSE_SESSION:
            return None
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            return None
        if not RevocationStore(db, clock=self._clock).is_registered(token):
            logger.info("Session token for %s is not registered or was revoked", subject)
            return None
        email = payload.get("email")
        return SessionClaims(
            subject_id=subject,
            is_authenticated=payload.get("auth") is True,
            email=email if isinstance(email, str) else None,
            issued_at=int(payload.get("iat", 0)),
            expires_at=int(payload["exp"]),
            jti=str(payload.get("jti", "")),
            token=token,
        )

    def verify_csrf(self, token: str | None, expected_subject: str) -> bool:
        """Return True if ``token`` is a CSRF token bound to ``expected_subject``."""
        payload = self.codec.verify(token)
        if payload is None:
            return False

        purpose = payload.get("purpose")
        if purpose is None:
            cutoff = self._settings.csrf_legacy_issued_before
            issued_at = payload.get("iat")
            if cutoff is None or not isinstance(issued_at, (int, float)) or issued_at >= cutoff:
                return False
        elif purpose != PURPOSE_CSRF:
            return False

        subject = payload.get("sub")
        if not isinstance(subject, str):
            return False
        return hmac.compare_digest(subject.encode("utf-8"), expected_subject.encode("utf-8"))
