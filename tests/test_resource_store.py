import asyncio
import json
import os
import uuid

import pytest
from cryptography.fernet import Fernet

import resource_store
from errors import ResourceNotFound, StorageUnavailable
from resource_store import (
    RESOURCE_TTL_SECONDS,
    FileResourceStore,
    InMemoryResourceStore,
    resource_id_from_uri,
    resource_uri,
)
from tests.conftest import OTHER_USER, TENANT, USER, FakeClock


@pytest.mark.asyncio
async def test_dual_response_preview_and_full_data(resources):
    rows = [{"row": i} for i in range(10)]
    dual = await resources.create_dual_response(rows, 3, "report", USER, TENANT, {"columns": ["a", "b"]})

    assert dual.preview == rows[:3]
    assert dual.total_count == 10
    payload = dual.to_dict()
    assert payload["resource"]["mimeType"] == "application/json"
    assert payload["metadata"]["totalCount"] == 10
    assert payload["metadata"]["columns"] == ["a", "b"]

    stored = await resources.retrieve(resource_id_from_uri(dual.uri), owner_user_id=USER)
    assert stored.data == rows
    assert stored.data[:3] == dual.preview
    assert stored.metadata.kind == "report"
    assert stored.metadata.tenant_id == TENANT


@pytest.mark.asyncio
async def test_resource_expires_after_one_hour(resources, clock):
    dual = await resources.create_dual_response([{"row": i} for i in range(10)], 3, "report", USER, TENANT)
    resource_id = resource_id_from_uri(dual.uri)

    clock.advance(RESOURCE_TTL_SECONDS - 1)
    assert (await resources.retrieve(resource_id)).metadata.resource_id == resource_id

    clock.advance(2)
    with pytest.raises(ResourceNotFound):
        await resources.retrieve(resource_id)


@pytest.mark.asyncio
async def test_never_issued_id_is_not_found(resources):
    with pytest.raises(ResourceNotFound) as excinfo:
        await resources.retrieve(str(uuid.uuid4()))
    assert excinfo.value.to_payload()["metadata"]["reason"] == "resourceNotFound"


@pytest.mark.asyncio
async def test_other_users_resource_looks_missing(resources):
    meta = await resources.store([{"x": 1}], "list", USER, TENANT)
    with pytest.raises(ResourceNotFound):
        await resources.retrieve(meta.resource_id, owner_user_id=OTHER_USER)


@pytest.mark.asyncio
async def test_sweep_and_delete(resources, clock):
    first = await resources.store([1], "list", USER, None)
    await resources.store([2], "list", USER, None)
    assert len(resources) == 2

    await resources.delete(first.resource_id)
    assert len(resources) == 1

    clock.advance(RESOURCE_TTL_SECONDS)
    assert await resources.sweep() == 1
    assert len(resources) == 0


@pytest.mark.asyncio
async def test_unknown_kind_rejected(resources):
    with pytest.raises(ValueError):
        await resources.store([], "spreadsheet", USER, None)


@pytest.mark.asyncio
async def test_large_payload_goes_to_blob_tier(monkeypatch, clock):
    monkeypatch.setattr(resource_store, "INLINE_MAX_BYTES", 64)
    store = InMemoryResourceStore(clock=clock, schedule_eviction=False)
    big = [{"description": "x" * 200}]
    meta = await store.store(big, "export", USER, TENANT)
    assert meta.storage_tier == "blob"
    assert (await store.retrieve(meta.resource_id)).data == big


def test_uri_helpers():
    uri = resource_uri("abc-123", "https://api.pip.test/")
    assert uri == "https://api.pip.test/resources/abc-123"
    assert resource_id_from_uri(uri) == "abc-123"
    assert resource_id_from_uri(uri + "/data") == "abc-123"
    assert resource_id_from_uri("https://api.pip.test/other/abc") is None


@pytest.mark.asyncio
async def test_file_store_round_trip_and_expiry(tmp_path):
    clock = FakeClock()
    store = FileResourceStore(str(tmp_path), clock=clock, base_url="https://api.pip.test")
    dual = await store.create_dual_response([{"i": i} for i in range(5)], 2, "list", USER, TENANT)
    resource_id = resource_id_from_uri(dual.uri)

    stored = await store.retrieve(resource_id, owner_user_id=USER)
    assert stored.data == [{"i": i} for i in range(5)]
    assert stored.metadata.storage_tier == "inline"

    with pytest.raises(ResourceNotFound):
        await store.retrieve(resource_id, owner_user_id=OTHER_USER)

    clock.advance(RESOURCE_TTL_SECONDS)
    with pytest.raises(ResourceNotFound):
        await store.retrieve(resource_id)
    assert not os.path.exists(tmp_path / f"{resource_id}.meta.json")


@pytest.mark.asyncio
async def test_file_store_encrypts_blobs(tmp_path, monkeypatch):
    monkeypatch.setattr(resource_store, "INLINE_MAX_BYTES", 16)
    store = FileResourceStore(str(tmp_path), clock=FakeClock(), encryption_key=Fernet.generate_key())
    meta = await store.store([{"secret": "patient ledger"}], "export", USER, TENANT)

    assert meta.storage_tier == "blob"
    raw = (tmp_path / f"{meta.resource_id}.blob").read_bytes()
    assert b"patient ledger" not in raw
    record = json.loads((tmp_path / f"{meta.resource_id}.meta.json").read_text())
    assert "data" not in record
    assert (await store.retrieve(meta.resource_id)).data == [{"secret": "patient ledger"}]


@pytest.mark.asyncio
async def test_file_store_rejects_path_like_ids(tmp_path):
    store = FileResourceStore(str(tmp_path), clock=FakeClock())
    with pytest.raises(ResourceNotFound):
        await store.retrieve("../../etc/passwd")


@pytest.mark.asyncio
async def test_file_store_sweep(tmp_path):
    clock = FakeClock()
    store = FileResourceStore(str(tmp_path), clock=clock)
    await store.store([1], "list", USER, None)
    clock.advance(RESOURCE_TTL_SECONDS + 1)
    assert await store.sweep() == 1
    assert os.listdir(tmp_path) == []


@pytest.mark.asyncio
async def test_concurrent_reads_see_identical_data(resources):
    rows = [{"invoice": f"INV-{i}", "amountDue": i * 10} for i in range(25)]
    meta = await resources.store(rows, "list", USER, TENANT)

    results = await asyncio.gather(*(resources.retrieve(meta.resource_id, owner_user_id=USER) for _ in range(20)))
    assert all(r.data == rows for r in results)
    assert len({id(r.data) for r in results}) == len(results)
    results[0].data.append({"invoice": "mutated"})
    assert (await resources.retrieve(meta.resource_id)).data == rows


@pytest.mark.asyncio
async def test_file_store_concurrent_reads(tmp_path):
    store = FileResourceStore(str(tmp_path), clock=FakeClock())
    meta = await store.store([{"row": i} for i in range(5)], "report", USER, TENANT)
    results = await asyncio.gather(*(store.retrieve(meta.resource_id, owner_user_id=USER) for _ in range(10)))
    assert {json.dumps(r.data) for r in results} == {json.dumps([{"row": i} for i in range(5)])}


@pytest.mark.parametrize("contents", [b"{not json", b'{"data": "[]"}', b'{"metadata": {"bogus": 1}}'])
@pytest.mark.asyncio
async def test_file_store_corrupt_metadata_is_storage_unavailable(tmp_path, contents):
    store = FileResourceStore(str(tmp_path), clock=FakeClock())
    meta = await store.store([{"row": 1}], "report", USER, TENANT)
    (tmp_path / f"{meta.resource_id}.meta.json").write_bytes(contents)

    with pytest.raises(StorageUnavailable):
        await store.retrieve(meta.resource_id, owner_user_id=USER)
