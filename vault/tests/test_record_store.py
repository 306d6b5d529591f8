import json

import pytest

from vault.app.core.config import LatestPolicy
from vault.app.core.credentials import StorageMode
from vault.app.schemas.records import RecordOutcome
from vault.app.services.nullifier_mapping import NullifierMappingService
from vault.app.services.record_store import NullifierRecordStore
from vault.tests.fixtures.fake_pinata import (
    GATEWAY_ENDPOINT,
    LIST_ENDPOINT,
    PIN_ENDPOINT,
    FakePinata,
    make_settings,
    mock_settings,
    ticking_clock,
)

pytestmark = pytest.mark.anyio


def _store(pinata, settings, **kwargs):
    return NullifierRecordStore(
        http_client=pinata.client(),
        settings_provider=lambda: settings,
        clock=ticking_clock(),
        **kwargs,
    )


async def _write(store, nullifier, data, *, address="0xabc", document_type=3):
    return await store.store(
        nullifier,
        verification_data=data,
        user_address=address,
        document_type=document_type,
        correlation_id="trace-1",
    )


async def test_write_then_read_returns_the_written_payload():
    pinata = FakePinata()
    store = _store(pinata, make_settings())

    stored = await _write(store, "123", {"a": 1})
    assert stored.outcome == RecordOutcome.STORED
    assert stored.mode == StorageMode.REAL
    assert stored.content_hash.startswith("Qm")

    found = await store.retrieve("123", correlation_id="trace-2")

    assert found.outcome == RecordOutcome.FOUND
    assert found.content_hash == stored.content_hash
    assert found.user_data["nullifier"] == "123"
    assert found.user_data["verificationData"] == {"a": 1}
    assert found.user_data["userAddress"] == "0xabc"
    assert found.user_data["documentType"] == 3
    assert found.user_data["timestamp"] == "2025-01-01T00:00:00.000Z"


async def test_pin_carries_content_and_index_tags():
    pinata = FakePinata()
    store = _store(pinata, make_settings())

    await _write(store, "n-1", {"age": 21}, address="0xdef", document_type=1)

    (request,) = pinata.requests_to(PIN_ENDPOINT)
    body = json.loads(request.content)

    assert request.headers["Authorization"] == "Bearer test-jwt"
    assert body["pinataContent"] == {
        "nullifier": "n-1",
        "verificationData": {"age": 21},
        "userAddress": "0xdef",
        "timestamp": "2025-01-01T00:00:00.000Z",
        "documentType": 1,
    }
    assert body["pinataMetadata"] == {
        "name": "n-1",
        "keyvalues": {
            "nullifier": "n-1",
            "userAddress": "0xdef",
            "type": "user_verification",
            "timestamp": "2025-01-01T00:00:00.000Z",
            "route": "/n-1",
        },
    }


async def test_read_of_unknown_nullifier_is_not_found():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "other", {"a": 1})

    result = await store.retrieve("never-written", correlation_id="t")

    assert result.outcome == RecordOutcome.NOT_FOUND
    assert result.mode == StorageMode.REAL
    assert result.user_data is None
    assert pinata.requests_to(GATEWAY_ENDPOINT) == []


async def test_gateway_fetch_is_anonymous():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "123", {"a": 1})

    await store.retrieve("123", correlation_id="t")

    (request,) = pinata.requests_to(GATEWAY_ENDPOINT)
    assert "Authorization" not in request.headers


async def test_mock_mode_write_is_synthetic_and_offline():
    pinata = FakePinata()
    store = _store(pinata, mock_settings())

    result = await _write(store, "123", {"a": 1})

    assert result.outcome == RecordOutcome.STORED
    assert result.mode == StorageMode.MOCK
    assert result.content_hash == "mock_123"
    assert pinata.requests == []


async def test_mock_mode_read_is_always_not_found():
    pinata = FakePinata()
    store = _store(pinata, mock_settings())
    await _write(store, "123", {"a": 1})

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.NOT_FOUND
    assert result.mode == StorageMode.MOCK
    assert result.message == "Mock storage - user data not available"
    assert pinata.requests == []


async def test_credential_toggle_changes_mode_on_next_call():
    pinata = FakePinata()
    current = {"settings": mock_settings()}
    store = NullifierRecordStore(
        http_client=pinata.client(),
        settings_provider=lambda: current["settings"],
        clock=ticking_clock(),
    )

    first = await _write(store, "123", {"a": 1})
    assert first.mode == StorageMode.MOCK

    current["settings"] = make_settings()
    second = await _write(store, "123", {"a": 2})
    assert second.mode == StorageMode.REAL

    found = await store.retrieve("123", correlation_id="t")
    assert found.user_data["verificationData"] == {"a": 2}

    current["settings"] = mock_settings()
    hidden = await store.retrieve("123", correlation_id="t")
    assert hidden.outcome == RecordOutcome.NOT_FOUND
    assert hidden.mode == StorageMode.MOCK


async def test_key_pair_credentials_are_sent_to_pinning_service():
    pinata = FakePinata()
    settings = make_settings(
        pinata_jwt=None,
        pinata_api_key="key",
        pinata_secret_api_key="secret",
    )
    store = _store(pinata, settings)

    result = await _write(store, "123", {"a": 1})

    assert result.outcome == RecordOutcome.STORED
    (request,) = pinata.requests_to(PIN_ENDPOINT)
    assert request.headers["pinata_api_key"] == "key"
    assert request.headers["pinata_secret_api_key"] == "secret"


async def test_rejected_pin_surfaces_store_error_with_status():
    pinata = FakePinata()
    pinata.fail[PIN_ENDPOINT] = 403
    store = _store(pinata, make_settings())

    result = await _write(store, "123", {"a": 1})

    assert result.outcome == RecordOutcome.STORE_ERROR
    assert result.upstream_status == 403
    assert "403" in result.error
    assert result.content_hash is None
    # Surfaced on first occurrence
    assert len(pinata.requests_to(PIN_ENDPOINT)) == 1


async def test_unreachable_pin_endpoint_surfaces_store_error():
    pinata = FakePinata()
    pinata.unreachable.add(PIN_ENDPOINT)
    store = _store(pinata, make_settings())

    result = await _write(store, "123", {"a": 1})

    assert result.outcome == RecordOutcome.STORE_ERROR
    assert result.upstream_status is None
    assert "unreachable" in result.error


async def test_rejected_index_query_surfaces_fetch_error_with_status():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "123", {"a": 1})
    pinata.fail[LIST_ENDPOINT] = 500

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.upstream_status == 500
    assert len(pinata.requests_to(LIST_ENDPOINT)) == 1


async def test_rejected_gateway_fetch_surfaces_fetch_error_with_status():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "123", {"a": 1})
    pinata.fail[GATEWAY_ENDPOINT] = 504

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.upstream_status == 504
    assert "504" in result.error


async def test_unreachable_gateway_surfaces_fetch_error():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "123", {"a": 1})
    pinata.unreachable.add(GATEWAY_ENDPOINT)

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.upstream_status is None


async def test_foreign_content_under_record_tags_is_a_fetch_error():
    pinata = FakePinata()
    pinata.seed(
        {"unexpected": True},
        name="123",
        keyvalues={"nullifier": "123", "type": "user_verification"},
    )
    store = _store(pinata, make_settings())

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR


async def test_non_object_content_under_record_tags_is_a_fetch_error():
    pinata = FakePinata()
    pinata.seed(
        ["123"],
        name="123",
        keyvalues={"nullifier": "123", "type": "user_verification"},
    )
    store = _store(pinata, make_settings())

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.user_data is None


async def test_record_without_document_type_is_returned_as_pinned():
    pinned = {
        "nullifier": "123",
        "verificationData": {"a": 1},
        "userAddress": "0xabc",
        "timestamp": "2025-01-01T00:00:00.000Z",
    }
    pinata = FakePinata()
    content_hash = pinata.seed(
        pinned,
        name="123",
        keyvalues={"nullifier": "123", "type": "user_verification"},
    )
    store = _store(pinata, make_settings())

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FOUND
    assert result.content_hash == content_hash
    assert result.user_data == pinned


async def test_unknown_fields_in_pinned_record_are_kept():
    pinned = {
        "nullifier": "123",
        "verificationData": {"a": 1},
        "userAddress": "0xabc",
        "timestamp": "2025-01-01T00:00:00.000Z",
        "documentType": 3,
        "issuer": "gov",
    }
    pinata = FakePinata()
    pinata.seed(
        pinned,
        name="123",
        keyvalues={"nullifier": "123", "type": "user_verification"},
    )
    store = _store(pinata, make_settings())

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FOUND
    assert result.user_data["issuer"] == "gov"
    assert result.user_data == pinned


async def test_unreachable_index_query_surfaces_fetch_error():
    pinata = FakePinata()
    store = _store(pinata, make_settings())
    await _write(store, "123", {"a": 1})
    pinata.unreachable.add(LIST_ENDPOINT)

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.upstream_status is None
    assert "unreachable" in result.error
    assert pinata.requests_to(GATEWAY_ENDPOINT) == []


async def test_index_row_without_content_hash_is_a_fetch_error():
    pinata = FakePinata()
    pinata.seed(
        {"nullifier": "123"},
        name="123",
        keyvalues={"nullifier": "123", "type": "user_verification"},
    )
    pinata.pins[-1]["ipfs_pin_hash"] = None
    store = _store(pinata, make_settings())

    result = await store.retrieve("123", correlation_id="t")

    assert result.outcome == RecordOutcome.FETCH_ERROR
    assert result.upstream_status is None
    assert pinata.requests_to(GATEWAY_ENDPOINT) == []


async def test_latest_write_wins_even_when_index_returns_oldest_first():
    pinata = FakePinata(newest_first=False)
    store = _store(pinata, make_settings())

    await _write(store, "123", {"version": 1})
    latest = await _write(store, "123", {"version": 2})

    result = await store.retrieve("123", correlation_id="t")

    assert len(pinata.pins) == 2
    assert result.content_hash == latest.content_hash
    assert result.user_data["verificationData"] == {"version": 2}


async def test_index_order_policy_trusts_the_index():
    pinata = FakePinata(newest_first=False)
    store = _store(pinata, make_settings(latest_policy=LatestPolicy.INDEX_ORDER))

    first = await _write(store, "123", {"version": 1})
    await _write(store, "123", {"version": 2})

    result = await store.retrieve("123", correlation_id="t")

    assert result.content_hash == first.content_hash
    assert result.user_data["verificationData"] == {"version": 1}


async def test_index_query_filters_on_nullifier_and_type_marker():
    pinata = FakePinata()
    store = _store(pinata, make_settings(pin_list_page_limit=50))

    await store.retrieve("abc", correlation_id="t")

    (request,) = pinata.requests_to(LIST_ENDPOINT)
    params = request.url.params
    assert params["status"] == "pinned"
    assert params["pageLimit"] == "50"
    assert json.loads(params["metadata[keyvalues]"]) == {
        "nullifier": {"value": "abc", "op": "eq"},
        "type": {"value": "user_verification", "op": "eq"},
    }


async def test_store_updates_mapping_when_enabled():
    pinata = FakePinata()
    settings = make_settings(update_mapping_on_store=True)
    client = pinata.client()
    mapping = NullifierMappingService(
        http_client=client,
        settings_provider=lambda: settings,
    )
    store = NullifierRecordStore(
        http_client=client,
        settings_provider=lambda: settings,
        mapping=mapping,
        clock=ticking_clock(),
    )

    await _write(store, "123", {"a": 1})

    entry, snapshot = await mapping.lookup("123", correlation_id="t")
    assert entry["verificationData"] == {"a": 1}
    assert entry["timestamp"] == "2025-01-01T00:00:00.000Z"
    assert snapshot.content_hash is not None


async def test_mapping_failure_does_not_fail_the_store():
    pinata = FakePinata()
    settings = make_settings(update_mapping_on_store=True)
    client = pinata.client()
    store = NullifierRecordStore(
        http_client=client,
        settings_provider=lambda: settings,
        mapping=NullifierMappingService(
            http_client=client,
            settings_provider=lambda: settings,
        ),
        clock=ticking_clock(),
    )
    pinata.fail[LIST_ENDPOINT] = 503

    result = await _write(store, "123", {"a": 1})

    assert result.outcome == RecordOutcome.STORED
    assert len(pinata.pins) == 1


async def test_mapping_is_left_alone_when_disabled():
    pinata = FakePinata()
    settings = make_settings()
    client = pinata.client()
    store = NullifierRecordStore(
        http_client=client,
        settings_provider=lambda: settings,
        mapping=NullifierMappingService(
            http_client=client,
            settings_provider=lambda: settings,
        ),
        clock=ticking_clock(),
    )

    await _write(store, "123", {"a": 1})

    assert len(pinata.pins) == 1
    assert pinata.requests_to(LIST_ENDPOINT) == []
