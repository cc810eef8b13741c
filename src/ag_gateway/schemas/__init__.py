"""Pydantic schemas for protocol request bodies."""

from .protocol import (
    AdminGrantRequest,
    AdminRevokeSessionsRequest,
    FetchPaymentsRequest,
    ForceSyncRequest,
    ProtocolBody,
    SessionInitRequest,
    VerifyPurchaseRequest,
)

__all__ = [
    "AdminGrantRequest",
    "AdminRevokeSessionsRequest",
    "FetchPaymentsRequest",
    "ForceSyncRequest",
    "ProtocolBody",
    "SessionInitRequest",
    "VerifyPurchaseRequest",
]
