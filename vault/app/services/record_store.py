"""
Nullifier-indexed verification record store.

Writes pin each record as its own JSON document, tagged with the
nullifier so the pin index can find it again. Reads query the index,
select the current entry, and fetch its content from the public gateway.

Without pinning credentials the store runs in mock mode: writes return a
synthetic hash and reads always report absence. The mode is re-evaluated
on every call from a freshly provided Settings.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, NamedTuple, Optional

import httpx

from vault.app.core.config import Settings
from vault.app.core.credentials import StorageMode, resolve_auth_headers
from vault.app.schemas.records import (
    MOCK_HASH_PREFIX,
    RECORD_TYPE_MARKER,
    RecordOutcome,
    RetrieveResult,
    StoreResult,
    VerificationRecord,
)
from vault.app.services.errors import FetchError, StoreError, VaultError
from vault.app.services.nullifier_mapping import NullifierMappingService
from vault.app.services.pinata_api import PinataClient
from vault.app.services.selection import select_current_pin
from vault.app.utils.timestamps import format_timestamp, utc_now

logger = logging.getLogger("vault.record_store")

SettingsProvider = Callable[[], Settings]


class WriteReceipt(NamedTuple):
    mode: StorageMode
    content_hash: str
    record: VerificationRecord


class ReadReceipt(NamedTuple):
    mode: StorageMode
    payload: Optional[Dict[str, Any]]
    content_hash: Optional[str]


def _pinata_client(
    http_client: httpx.AsyncClient,
    settings: Settings,
) -> Optional[PinataClient]:
    headers = resolve_auth_headers(settings)
    if headers is None:
        return None
    return PinataClient(
        http_client=http_client,
        settings=settings,
        auth_headers=headers,
    )


# ----------------------------------------------------------------------
# Writer
# ----------------------------------------------------------------------

class RecordWriter:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings_provider: SettingsProvider,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._http_client = http_client
        self._settings_provider = settings_provider
        self._clock = clock

    async def write(
        self,
        *,
        nullifier: str,
        verification_data: Any,
        user_address: str,
        document_type: int,
        correlation_id: str,
    ) -> WriteReceipt:
        """
        Pin a new record for `nullifier`.

        Raises StoreError if the pin endpoint rejects the record or is
        unreachable. Mock mode never raises.
        """
        record = VerificationRecord(
            nullifier=nullifier,
            verification_data=verification_data,
            user_address=user_address,
            timestamp=format_timestamp(self._clock()),
            document_type=document_type,
        )

        pinata = _pinata_client(self._http_client, self._settings_provider())

        if pinata is None:
            logger.warning(
                "mock_store_no_pinning_credentials",
                extra={"trace_id": correlation_id, "nullifier": nullifier},
            )
            return WriteReceipt(
                StorageMode.MOCK,
                f"{MOCK_HASH_PREFIX}{nullifier}",
                record,
            )

        content_hash = await pinata.pin_json(
            content=record.to_wire(),
            name=nullifier,
            keyvalues={
                "nullifier": nullifier,
                "userAddress": user_address,
                "type": RECORD_TYPE_MARKER,
                "timestamp": record.timestamp,
                "route": f"/{nullifier}",
            },
            correlation_id=correlation_id,
        )

        logger.info(
            "record_pinned",
            extra={
                "trace_id": correlation_id,
                "nullifier": nullifier,
                "content_hash": content_hash,
            },
        )
        return WriteReceipt(StorageMode.REAL, content_hash, record)


# ----------------------------------------------------------------------
# Reader
# ----------------------------------------------------------------------

class RecordReader:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings_provider: SettingsProvider,
    ):
        self._http_client = http_client
        self._settings_provider = settings_provider

    async def read(
        self,
        nullifier: str,
        *,
        correlation_id: str,
    ) -> ReadReceipt:
        """
        Resolve the current record for `nullifier`.

        A receipt without a payload means not found. Raises FetchError if
        the index query or the gateway fetch fails.

        The pinned document is returned exactly as fetched. It is only
        checked to be a JSON object written for this nullifier.
        """
        settings = self._settings_provider()
        pinata = _pinata_client(self._http_client, settings)

        if pinata is None:
            logger.warning(
                "mock_retrieve_no_pinning_credentials",
                extra={"trace_id": correlation_id, "nullifier": nullifier},
            )
            return ReadReceipt(StorageMode.MOCK, None, None)

        rows = await pinata.list_pins(
            keyvalues={
                "nullifier": nullifier,
                "type": RECORD_TYPE_MARKER,
            },
            correlation_id=correlation_id,
        )

        current = select_current_pin(rows, policy=settings.latest_policy)
        if current is None:
            logger.info(
                "record_not_found",
                extra={"trace_id": correlation_id, "nullifier": nullifier},
            )
            return ReadReceipt(StorageMode.REAL, None, None)

        content_hash = current.get("ipfs_pin_hash")
        if not content_hash:
            raise FetchError("Pin index row has no content hash")

        payload = await pinata.fetch_content(
            content_hash,
            correlation_id=correlation_id,
        )

        if not isinstance(payload, dict):
            raise FetchError(
                f"Pinned content is not a verification record: {content_hash}"
            )

        if payload.get("nullifier") != nullifier:
            raise FetchError(
                f"Pinned record {content_hash} belongs to another nullifier"
            )

        logger.info(
            "record_retrieved",
            extra={
                "trace_id": correlation_id,
                "nullifier": nullifier,
                "content_hash": content_hash,
                "candidates": len(rows),
                "latest_policy": settings.latest_policy.value,
            },
        )
        return ReadReceipt(StorageMode.REAL, payload, content_hash)


# ----------------------------------------------------------------------
# Facade
# ----------------------------------------------------------------------

class NullifierRecordStore:
    """
    Store/retrieve boundary.

    Every upstream failure is converted into a tagged result here; no
    exception escapes `store` or `retrieve`. No retries are attempted.
    """

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings_provider: SettingsProvider,
        mapping: Optional[NullifierMappingService] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._settings_provider = settings_provider
        self.writer = RecordWriter(
            http_client=http_client,
            settings_provider=settings_provider,
            clock=clock,
        )
        self.reader = RecordReader(
            http_client=http_client,
            settings_provider=settings_provider,
        )
        self.mapping = mapping

    async def store(
        self,
        nullifier: str,
        *,
        verification_data: Any,
        user_address: str,
        document_type: int,
        correlation_id: str,
    ) -> StoreResult:
        try:
            receipt = await self.writer.write(
                nullifier=nullifier,
                verification_data=verification_data,
                user_address=user_address,
                document_type=document_type,
                correlation_id=correlation_id,
            )
        except StoreError as exc:
            return StoreResult(
                outcome=RecordOutcome.STORE_ERROR,
                mode=StorageMode.REAL,
                nullifier=nullifier,
                error=str(exc),
                upstream_status=exc.status_code,
            )

        if receipt.mode == StorageMode.REAL:
            await self._record_in_mapping(receipt, correlation_id)

        return StoreResult(
            outcome=RecordOutcome.STORED,
            mode=receipt.mode,
            nullifier=nullifier,
            content_hash=receipt.content_hash,
        )

    async def retrieve(
        self,
        nullifier: str,
        *,
        correlation_id: str,
    ) -> RetrieveResult:
        try:
            receipt = await self.reader.read(
                nullifier,
                correlation_id=correlation_id,
            )
        except FetchError as exc:
            return RetrieveResult(
                outcome=RecordOutcome.FETCH_ERROR,
                mode=StorageMode.REAL,
                nullifier=nullifier,
                error=str(exc),
                upstream_status=exc.status_code,
            )

        if receipt.payload is None:
            message = (
                "Mock storage - user data not available"
                if receipt.mode == StorageMode.MOCK
                else "User verification data not found"
            )
            return RetrieveResult(
                outcome=RecordOutcome.NOT_FOUND,
                mode=receipt.mode,
                nullifier=nullifier,
                message=message,
            )

        return RetrieveResult(
            outcome=RecordOutcome.FOUND,
            mode=receipt.mode,
            nullifier=nullifier,
            user_data=receipt.payload,
            content_hash=receipt.content_hash,
        )

    async def _record_in_mapping(
        self,
        receipt: WriteReceipt,
        correlation_id: str,
    ) -> None:
        if self.mapping is None:
            return
        if not self._settings_provider().update_mapping_on_store:
            return

        record = receipt.record
        try:
            await self.mapping.update(
                record.nullifier,
                verification_data=record.verification_data,
                user_address=record.user_address,
                document_type=record.document_type,
                timestamp=record.timestamp,
                correlation_id=correlation_id,
            )
        except VaultError as exc:
            # The record itself is pinned; the mapping is a derived index.
            logger.warning(
                "nullifier_mapping_update_failed",
                extra={
                    "trace_id": correlation_id,
                    "nullifier": record.nullifier,
                    "status_code": exc.status_code,
                    "error_type": type(exc).__name__,
                },
            )
