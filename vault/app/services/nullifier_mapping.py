"""
Pinned nullifier mapping.

Maintains one JSON document on the pinning service, keyed by nullifier,
holding the latest record fields for every nullifier written through it.
It gives callers an explicit latest-pointer that does not depend on the
ordering of the pin index.

Every update pins a new version of the whole document. Older versions
stay pinned; this service never unpins anything.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, NamedTuple, Optional

import httpx

from vault.app.core.config import LatestPolicy, Settings
from vault.app.core.credentials import StorageMode, resolve_auth_headers
from vault.app.services.errors import FetchError
from vault.app.services.pinata_api import PinataClient
from vault.app.services.selection import select_current_pin
from vault.app.utils.timestamps import format_timestamp, utc_now

logger = logging.getLogger("vault.nullifier_mapping")

MAPPING_NAME = "nullifier-mapping"
MAPPING_TYPE_MARKER = "nullifier_mapping"


class MappingSnapshot(NamedTuple):
    mode: StorageMode
    entries: Dict[str, Dict[str, Any]]
    content_hash: Optional[str]
    link: Optional[str]


class MappingUpdate(NamedTuple):
    mode: StorageMode
    content_hash: Optional[str]
    skipped: bool
    total_entries: int


class NullifierMappingService:
    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        settings_provider: Callable[[], Settings],
        clock: Callable[[], datetime] = utc_now,
        lock: Optional[asyncio.Lock] = None,
    ):
        self._http_client = http_client
        # Serializes read-modify-write cycles sharing this lock. Writers in
        # other processes are not coordinated.
        self._lock = lock or asyncio.Lock()
        self._settings_provider = settings_provider
        self._clock = clock

    def _pinata(self) -> Optional[PinataClient]:
        settings = self._settings_provider()
        headers = resolve_auth_headers(settings)
        if headers is None:
            return None
        return PinataClient(
            http_client=self._http_client,
            settings=settings,
            auth_headers=headers,
        )

    async def _load(
        self,
        pinata: PinataClient,
        correlation_id: str,
    ) -> MappingSnapshot:
        rows = await pinata.list_pins(
            name=MAPPING_NAME,
            keyvalues={"type": MAPPING_TYPE_MARKER},
            correlation_id=correlation_id,
        )

        # Versions are always resolved by their own lastUpdated tag.
        latest = select_current_pin(
            rows,
            policy=LatestPolicy.TIMESTAMP,
            time_key="lastUpdated",
        )
        if latest is None:
            logger.info(
                "nullifier_mapping_absent",
                extra={"trace_id": correlation_id},
            )
            return MappingSnapshot(StorageMode.REAL, {}, None, None)

        content_hash = latest.get("ipfs_pin_hash")
        if not content_hash:
            raise FetchError("Mapping index row has no content hash")

        entries = await pinata.fetch_content(
            content_hash,
            correlation_id=correlation_id,
        )
        if not isinstance(entries, dict):
            raise FetchError(f"Mapping content is not an object: {content_hash}")

        logger.info(
            "nullifier_mapping_loaded",
            extra={
                "trace_id": correlation_id,
                "content_hash": content_hash,
                "total_entries": len(entries),
            },
        )
        return MappingSnapshot(
            StorageMode.REAL,
            entries,
            content_hash,
            pinata.gateway_link(content_hash),
        )

    async def current(self, *, correlation_id: str) -> MappingSnapshot:
        """Fetch the latest mapping version. Empty in mock mode."""
        pinata = self._pinata()
        if pinata is None:
            return MappingSnapshot(StorageMode.MOCK, {}, None, None)
        return await self._load(pinata, correlation_id)

    async def lookup(
        self,
        nullifier: str,
        *,
        correlation_id: str,
    ) -> tuple[Optional[Dict[str, Any]], MappingSnapshot]:
        snapshot = await self.current(correlation_id=correlation_id)
        return snapshot.entries.get(nullifier), snapshot

    async def update(
        self,
        nullifier: str,
        *,
        verification_data: Any,
        user_address: str,
        document_type: int,
        correlation_id: str,
        timestamp: Optional[str] = None,
        skip_if_exists: bool = False,
    ) -> MappingUpdate:
        """
        Record the given fields under `nullifier` and pin the new version.

        Raises FetchError when the current version cannot be loaded and
        StoreError when the new version cannot be pinned.
        """
        pinata = self._pinata()
        if pinata is None:
            logger.warning(
                "nullifier_mapping_update_skipped_mock_mode",
                extra={"trace_id": correlation_id},
            )
            return MappingUpdate(StorageMode.MOCK, None, True, 0)

        async with self._lock:
            snapshot = await self._load(pinata, correlation_id)
            entries = dict(snapshot.entries)

            if skip_if_exists and nullifier in entries:
                logger.info(
                    "nullifier_mapping_entry_exists",
                    extra={"trace_id": correlation_id, "nullifier": nullifier},
                )
                return MappingUpdate(
                    StorageMode.REAL,
                    snapshot.content_hash,
                    True,
                    len(entries),
                )

            now = self._clock()
            entries[nullifier] = {
                "verificationData": verification_data,
                "userAddress": user_address,
                "timestamp": timestamp or format_timestamp(now),
                "documentType": document_type,
            }

            content_hash = await pinata.pin_json(
                content=entries,
                name=MAPPING_NAME,
                keyvalues={
                    "type": MAPPING_TYPE_MARKER,
                    "totalEntries": str(len(entries)),
                    "lastUpdated": format_timestamp(now),
                    "version": str(int(now.timestamp() * 1000)),
                },
                correlation_id=correlation_id,
            )

        logger.info(
            "nullifier_mapping_updated",
            extra={
                "trace_id": correlation_id,
                "nullifier": nullifier,
                "content_hash": content_hash,
                "total_entries": len(entries),
            },
        )
        return MappingUpdate(StorageMode.REAL, content_hash, False, len(entries))
