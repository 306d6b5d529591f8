import logging
from typing import Annotated, Optional

import httpx
from fastapi import APIRouter, Depends, Header, Path, Request, status
from fastapi.responses import ORJSONResponse

from vault.app.api.correlation import CORRELATION_HEADER, resolve_correlation_id
from vault.app.core.config import Settings, get_settings
from vault.app.core.credentials import StorageMode
from vault.app.schemas.records import RecordOutcome, StoreRequest
from vault.app.services.errors import VaultError
from vault.app.services.nullifier_mapping import NullifierMappingService
from vault.app.services.record_store import NullifierRecordStore

logger = logging.getLogger("vault.api")

router = APIRouter(tags=["Verification Records"])

NullifierPath = Annotated[
    str,
    Path(min_length=1, max_length=256, description="Nullifier lookup key"),
]

# =============================================================================
# Dependency providers
# =============================================================================

def get_correlation_id(
    request: Request,
    x_correlation_id: Annotated[
        Optional[str],
        Header(description="Audit trace ID"),
    ] = None,
) -> str:
    """Extract or generate a correlation ID for end-to-end traceability."""
    resolved = getattr(request.state, "correlation_id", None)
    if resolved is not None:
        return resolved
    return resolve_correlation_id(x_correlation_id)


def get_http_client(request: Request) -> httpx.AsyncClient:
    client = getattr(request.app.state, "http_client", None)
    if client is None:
        raise RuntimeError("http client not initialized")
    return client


def get_mapping_service(
    request: Request,
    http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> NullifierMappingService:
    return NullifierMappingService(
        http_client=http_client,
        settings_provider=lambda: settings,
        lock=request.app.state.mapping_lock,
    )


def get_record_store(
    http_client: Annotated[httpx.AsyncClient, Depends(get_http_client)],
    settings: Annotated[Settings, Depends(get_settings)],
    mapping: Annotated[
        NullifierMappingService,
        Depends(get_mapping_service),
    ],
) -> NullifierRecordStore:
    """
    Build the record store for a single request.

    Settings are resolved per request, so the storage mode tracks the
    environment without a restart.
    """
    return NullifierRecordStore(
        http_client=http_client,
        settings_provider=lambda: settings,
        mapping=mapping,
    )


def _json(
    content: dict,
    correlation_id: str,
    status_code: int = status.HTTP_200_OK,
) -> ORJSONResponse:
    return ORJSONResponse(
        content=content,
        status_code=status_code,
        headers={CORRELATION_HEADER: correlation_id},
    )


# =============================================================================
# /users/{nullifier}
# =============================================================================

@router.post(
    "/users/{nullifier}",
    summary="Store a verification record under a nullifier",
    responses={
        200: {"description": "Record pinned (or accepted by mock storage)"},
        422: {"description": "Invalid request body"},
        500: {"description": "Pinning service failure"},
    },
)
async def store_user_verification(
    nullifier: NullifierPath,
    body: StoreRequest,
    store: Annotated[NullifierRecordStore, Depends(get_record_store)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> ORJSONResponse:
    logger.info(
        "store_verification_requested",
        extra={"trace_id": correlation_id, "nullifier": nullifier},
    )

    result = await store.store(
        nullifier,
        verification_data=body.verification_data,
        user_address=body.user_address,
        document_type=body.document_type,
        correlation_id=correlation_id,
    )

    if not result.ok:
        logger.error(
            "store_verification_failed",
            extra={
                "trace_id": correlation_id,
                "nullifier": nullifier,
                "status_code": result.upstream_status,
            },
        )
        return _json(
            {"success": False, "error": result.error},
            correlation_id,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    message = (
        "User verification data stored in mock storage"
        if result.mode == StorageMode.MOCK
        else "User verification data stored successfully"
    )
    return _json(
        {
            "success": True,
            "ipfsHash": result.content_hash,
            "nullifier": nullifier,
            "message": message,
        },
        correlation_id,
    )


@router.get(
    "/users/{nullifier}",
    summary="Retrieve the current verification record for a nullifier",
    responses={
        200: {"description": "Record found"},
        404: {"description": "No record for this nullifier (or mock mode)"},
        500: {"description": "Pin index or gateway failure"},
    },
)
async def retrieve_user_verification(
    nullifier: NullifierPath,
    store: Annotated[NullifierRecordStore, Depends(get_record_store)],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> ORJSONResponse:
    logger.info(
        "retrieve_verification_requested",
        extra={"trace_id": correlation_id, "nullifier": nullifier},
    )

    result = await store.retrieve(nullifier, correlation_id=correlation_id)

    if result.outcome == RecordOutcome.FOUND:
        return _json(
            {
                "success": True,
                "userData": result.user_data,
                "ipfsHash": result.content_hash,
            },
            correlation_id,
        )

    if result.outcome == RecordOutcome.NOT_FOUND:
        return _json(
            {"success": False, "message": result.message},
            correlation_id,
            status.HTTP_404_NOT_FOUND,
        )

    logger.error(
        "retrieve_verification_failed",
        extra={
            "trace_id": correlation_id,
            "nullifier": nullifier,
            "status_code": result.upstream_status,
        },
    )
    return _json(
        {"success": False, "error": result.error},
        correlation_id,
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )


# =============================================================================
# /mapping
# =============================================================================

@router.get(
    "/mapping/{nullifier}",
    summary="Look up a nullifier in the pinned nullifier mapping",
)
async def lookup_mapping_entry(
    nullifier: NullifierPath,
    mapping: Annotated[
        NullifierMappingService,
        Depends(get_mapping_service),
    ],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> ORJSONResponse:
    try:
        entry, snapshot = await mapping.lookup(
            nullifier,
            correlation_id=correlation_id,
        )
    except VaultError as exc:
        logger.error(
            "mapping_lookup_failed",
            extra={
                "trace_id": correlation_id,
                "nullifier": nullifier,
                "status_code": exc.status_code,
            },
        )
        return _json(
            {"success": False, "error": str(exc)},
            correlation_id,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if entry is None:
        return _json(
            {
                "success": False,
                "nullifier": nullifier,
                "error": "Nullifier not found in mapping",
            },
            correlation_id,
            status.HTTP_404_NOT_FOUND,
        )

    return _json(
        {
            "success": True,
            "nullifier": nullifier,
            "data": entry,
            "mappingHash": snapshot.content_hash,
            "mappingLink": snapshot.link,
        },
        correlation_id,
    )


@router.post(
    "/mapping",
    summary="Return the entire pinned nullifier mapping",
)
async def get_full_mapping(
    mapping: Annotated[
        NullifierMappingService,
        Depends(get_mapping_service),
    ],
    correlation_id: Annotated[str, Depends(get_correlation_id)],
) -> ORJSONResponse:
    try:
        snapshot = await mapping.current(correlation_id=correlation_id)
    except VaultError as exc:
        logger.error(
            "mapping_fetch_failed",
            extra={"trace_id": correlation_id, "status_code": exc.status_code},
        )
        return _json(
            {"success": False, "error": str(exc)},
            correlation_id,
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    return _json(
        {
            "success": True,
            "mapping": snapshot.entries,
            "totalEntries": len(snapshot.entries),
            "mappingHash": snapshot.content_hash,
            "mappingLink": snapshot.link,
        },
        correlation_id,
    )
