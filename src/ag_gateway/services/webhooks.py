"""Server-to-server billing notifications."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from ag_gateway.core.errors import AuthError, BadRequest
from ag_gateway.core.security import fingerprint, verify_webhook_signature
from ag_gateway.core.settings import Settings, settings
from ag_gateway.services.entitlements import EntitlementService
from ag_gateway.services.ledger import PurchaseLedger

logger = logging.getLogger(__name__)

NOTIFICATION_SUBSCRIPTION = "subscription"
NOTIFICATION_VOIDED = "voided"
NOTIFICATION_ONE_TIME = "one_time"
NOTIFICATION_TEST = "test"
NOTIFICATION_UNKNOWN = "unknown"

SUBSCRIPTION_REVOKED = 12
SUBSCRIPTION_EXPIRED = 13
REVOKING_SUBSCRIPTION_TYPES = frozenset({SUBSCRIPTION_REVOKED, SUBSCRIPTION_EXPIRED})


class WebhookAuthenticator:
    """Apply the signature policy to inbound notifications."""

    def __init__(self, config: Settings | None = None) -> None:
        self._settings = config or settings

    def authenticate(self, raw_body: bytes, signature: str | None) -> None:
        """Raise :class:`AuthError` unless the body is acceptably authenticated."""
        public_key = self._settings.billing_webhook_public_key
        required = self._settings.webhook_signature_required

        if not public_key:
            if required:
                logger.error("Billing webhook rejected: no verification key configured")
                raise AuthError("Webhook signature cannot be verified", code="WEBHOOK_AUTH_MISSING")
            logger.warning("Billing webhook signature verification skipped: no key configured")
            return

        # With a key configured every notification must be signed.
        if not signature:
            logger.warning("Unsigned billing webhook rejected")
            raise AuthError("Webhook signature missing", code="WEBHOOK_AUTH_MISSING")

        if not verify_webhook_signature(raw_body, signature, public_key):
            logger.warning("Billing webhook signature mismatch")
            raise AuthError("Invalid webhook signature", code="WEBHOOK_SIGNATURE_INVALID")


@dataclass(frozen=True)
class BillingNotification:
    """The parts of a developer notification this service acts on."""

    kind: str
    package_name: str | None
    notification_type: int | None
    purchase_token: str | None
    product_id: str | None

    @classmethod
    def from_body(cls, body: dict[str, Any]) -> BillingNotification:
        """Parse either a Pub/Sub push envelope or an already-decoded notification.

        Raises:
            BadRequest: If the body does not contain a notification.
        """
        payload = body.get("notification")
        message = body.get("message")
        if payload is None and isinstance(message, dict):
            payload = _decode_pubsub_data(message.get("data"))
        if not isinstance(payload, dict):
            raise BadRequest("Notification payload missing")

        package_name = payload.get("packageName")
        subscription = payload.get("subscriptionNotification")
        if isinstance(subscription, dict):
            return cls(
                kind=NOTIFICATION_SUBSCRIPTION,
                package_name=package_name,
                notification_type=_int_or_none(subscription.get("notificationType")),
                purchase_token=subscription.get("purchaseToken"),
                product_id=subscription.get("subscriptionId"),
            )
        voided = payload.get("voidedPurchaseNotification")
        if isinstance(voided, dict):
            return cls(
                kind=NOTIFICATION_VOIDED,
                package_name=package_name,
                notification_type=None,
                purchase_token=voided.get("purchaseToken"),
                product_id=None,
            )
        one_time = payload.get("oneTimeProductNotification")
        if isinstance(one_time, dict):
            return cls(
                kind=NOTIFICATION_ONE_TIME,
                package_name=package_name,
                notification_type=_int_or_none(one_time.get("notificationType")),
                purchase_token=one_time.get("purchaseToken"),
                product_id=one_time.get("sku"),
            )
        kind = NOTIFICATION_TEST if "testNotification" in payload else NOTIFICATION_UNKNOWN
        return cls(kind, package_name, None, None, None)

    @property
    def revokes_entitlement(self) -> bool:
        if self.kind == NOTIFICATION_VOIDED:
            return True
        return (
            self.kind == NOTIFICATION_SUBSCRIPTION
            and self.notification_type in REVOKING_SUBSCRIPTION_TYPES
        )


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _decode_pubsub_data(data: Any) -> Any:
    if not isinstance(data, str):
        return None
    try:
        return json.loads(base64.b64decode(data, validate=True))
    except (binascii.Error, ValueError) as exc:
        raise BadRequest("Notification data is not base64-encoded JSON") from exc


class NotificationProcessor:
    """Apply authenticated billing notifications to entitlements."""

    def __init__(self, db: Session, config: Settings | None = None) -> None:
        self._settings = config or settings
        self._ledger = PurchaseLedger(db)
        self._entitlements = EntitlementService(db)

    def apply(self, notification: BillingNotification) -> dict[str, Any]:
        expected_package = self._settings.google_play_package_name
        if notification.package_name and notification.package_name != expected_package:
            logger.warning("Ignoring notification for package %s", notification.package_name)
            return {"action": "ignored", "revoked": 0}

        if not notification.revokes_entitlement or not notification.purchase_token:
            logger.info(
                "Acknowledged %s notification (type %s)",
                notification.kind,
                notification.notification_type,
            )
            return {"action": "acknowledged", "revoked": 0}

        revoked = 0
        for row in self._ledger.find_by_purchase_token(notification.purchase_token):
            revoked += self._entitlements.revoke_for_transaction(row.transaction_id)
        logger.info(
            "Processed %s notification for token %s: %d entitlement(s) revoked",
            notification.kind,
            fingerprint(notification.purchase_token),
            revoked,
        )
        return {"action": "revoked", "revoked": revoked}
