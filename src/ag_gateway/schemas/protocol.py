"""Request body schemas for the single protocol endpoint."""

from pydantic import BaseModel, ConfigDict, Field

_MAX_TOKEN_LENGTH = 4096


class ProtocolBody(BaseModel):
    """Common envelope; ``type`` selects the route."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    type: str = Field(..., min_length=1, max_length=64)


class SessionInitRequest(ProtocolBody):
    """Handshake body; ``credential`` is an optional OAuth ID token."""

    credential: str | None = Field(None, max_length=_MAX_TOKEN_LENGTH)


class VerifyPurchaseRequest(ProtocolBody):
    """Purchase claim forwarded from the client's billing library."""

    purchase_token: str = Field(
        ...,
        alias="purchaseToken",
        min_length=1,
        max_length=_MAX_TOKEN_LENGTH,
    )
    product_id: str = Field(..., alias="productId", min_length=1, max_length=255)
    transaction_id: str = Field(..., alias="transactionId", min_length=1, max_length=255)


class AdminGrantRequest(ProtocolBody):
    """Manual tier grant issued from the admin dashboard."""

    target_uid: str | None = Field(None, alias="targetUid", max_length=255)
    target_device_id: str | None = Field(None, alias="targetDeviceId", max_length=255)
    target_tier: str = Field("lifetime", alias="targetTier", max_length=32)


class ForceSyncRequest(ProtocolBody):
    """Administrative replay of a purchase that never reached the ledger."""

    purchase_token: str = Field(
        ...,
        alias="purchaseToken",
        min_length=1,
        max_length=_MAX_TOKEN_LENGTH,
    )
    product_id: str = Field(..., alias="productId", min_length=1, max_length=255)
    transaction_id: str | None = Field(None, alias="transactionId", max_length=255)
    target_google_uid: str | None = Field(None, alias="targetGoogleUid", max_length=255)
    target_device_id: str | None = Field(None, alias="targetDeviceId", max_length=255)


class FetchPaymentsRequest(ProtocolBody):
    """Ledger listing filters for the admin dashboard."""

    limit: int = Field(50, ge=1, le=500)
    status: str | None = Field(None, max_length=16)


class AdminRevokeSessionsRequest(ProtocolBody):
    """Revoke every live session of one account."""

    target_uid: str = Field(..., alias="targetUid", min_length=1, max_length=255)
