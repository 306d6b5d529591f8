"""
Verification record schemas.

Defines the record pinned for every store call, the request/response
bodies of the public API, and the tagged results returned by the record
store. Wire field names are camelCase; Python attributes are snake_case.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from vault.app.core.credentials import StorageMode


# Metadata tag value marking pins written by this service.
RECORD_TYPE_MARKER = "user_verification"

# Prefix of the synthetic content hash returned in mock mode.
MOCK_HASH_PREFIX = "mock_"


# ---------------------------------------------------------------------------
# Stored content
# ---------------------------------------------------------------------------

class VerificationRecord(BaseModel):
    """
    Immutable identity-verification record.

    A later write for the same nullifier creates a new pinned record;
    existing records are never modified.
    """

    nullifier: str = Field(..., min_length=1)

    verification_data: Any = Field(
        ...,
        alias="verificationData",
        description="Opaque caller-defined payload",
    )

    user_address: str = Field(..., alias="userAddress")

    timestamp: str = Field(
        ...,
        description="Creation time (ISO-8601 UTC), assigned by the writer",
    )

    document_type: int = Field(..., alias="documentType")

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
    )

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Public API bodies
# ---------------------------------------------------------------------------

class StoreRequest(BaseModel):
    verification_data: Any = Field(..., alias="verificationData")
    user_address: str = Field(..., alias="userAddress", min_length=1)
    document_type: int = Field(..., alias="documentType", ge=0)

    model_config = ConfigDict(populate_by_name=True)


# ---------------------------------------------------------------------------
# Tagged results (INTERNAL CONTRACTS)
# ---------------------------------------------------------------------------

class RecordOutcome(str, Enum):
    STORED = "stored"
    FOUND = "found"
    NOT_FOUND = "not_found"
    STORE_ERROR = "store_error"
    FETCH_ERROR = "fetch_error"


class StoreResult(BaseModel):
    """Outcome of a store call. Never raised, always returned."""

    outcome: RecordOutcome
    mode: StorageMode
    nullifier: str
    content_hash: Optional[str] = None
    error: Optional[str] = None
    upstream_status: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return self.outcome == RecordOutcome.STORED


class RetrieveResult(BaseModel):
    """Outcome of a retrieve call. Never raised, always returned."""

    outcome: RecordOutcome
    mode: StorageMode
    nullifier: str
    user_data: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Pinned document exactly as fetched from the gateway",
    )
    content_hash: Optional[str] = None
    message: Optional[str] = None
    error: Optional[str] = None
    upstream_status: Optional[int] = None

    model_config = ConfigDict(frozen=True)

    @property
    def ok(self) -> bool:
        return self.outcome == RecordOutcome.FOUND
