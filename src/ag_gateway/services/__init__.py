# src/ag_gateway/services/__init__.py
"""Trust-boundary services for the Anti-Gravity gateway."""

from .entitlements import EntitlementService
from .identity import IdentityVerifier
from .ledger import PurchaseLedger
from .oracle import GooglePlayOracle
from .orchestrator import ProtocolOrchestrator, build_orchestrator
from .origin import OriginPolicy
from .rate_limit import RateLimiter
from .revocation import RevocationStore
from .tokens import SignedTokenCodec, TokenService
from .webhooks import NotificationProcessor, WebhookAuthenticator

__all__ = [
    "EntitlementService",
    "GooglePlayOracle",
    "IdentityVerifier",
    "NotificationProcessor",
    "OriginPolicy",
    "ProtocolOrchestrator",
    "PurchaseLedger",
    "RateLimiter",
    "RevocationStore",
    "SignedTokenCodec",
    "TokenService",
    "WebhookAuthenticator",
    "build_orchestrator",
]
