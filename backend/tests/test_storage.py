from datetime import datetime, timezone

import pytest

from medtriage.core.errors import StorageError
from medtriage.services.storage import InMemoryDocumentStore, LocalBlobStore, safe_blob_name


@pytest.mark.asyncio
async def test_documents_are_copied_in_and_out():
    store = InMemoryDocumentStore()
    doc = {"userId": "u1", "imageInfo": {"url": None}}
    doc_id = await store.create("predictions", doc)
    doc["userId"] = "tampered"

    fetched = await store.get("predictions", doc_id)
    assert fetched == {"id": doc_id, "userId": "u1", "imageInfo": {"url": None}}

    fetched["imageInfo"]["url"] = "changed"
    assert (await store.get("predictions", doc_id))["imageInfo"]["url"] is None


@pytest.mark.asyncio
async def test_update_merges_dotted_paths():
    store = InMemoryDocumentStore()
    doc_id = await store.create("predictions", {"status": "processing", "imageInfo": {"size": 3}})
    await store.update("predictions", doc_id, {"status": "completed", "imageInfo.url": "http://x/1"})

    doc = await store.get("predictions", doc_id)
    assert doc["status"] == "completed"
    assert doc["imageInfo"] == {"size": 3, "url": "http://x/1"}


@pytest.mark.asyncio
async def test_update_and_duplicate_create_errors():
    store = InMemoryDocumentStore()
    with pytest.raises(StorageError):
        await store.update("patients", "missing", {"a": 1})

    await store.create("patients", {"name": "A"}, doc_id="p1")
    with pytest.raises(StorageError):
        await store.create("patients", {"name": "B"}, doc_id="p1")


@pytest.mark.asyncio
async def test_query_filters_orders_and_limits():
    store = InMemoryDocumentStore()
    for day, user, model in [(1, "u1", "pneumonia"), (3, "u1", "brainTumor"), (2, "u2", "pneumonia"), (5, "u1", None)]:
        await store.create(
            "predictions",
            {
                "userId": user,
                "createdAt": datetime(2024, 1, day, tzinfo=timezone.utc),
                "result": {"modelType": model} if model else None,
            },
        )
    await store.create("predictions", {"userId": "u1"})

    newest_first = await store.query("predictions", [("userId", "==", "u1")], order_by="createdAt")
    assert [doc.get("createdAt") and doc["createdAt"].day for doc in newest_first] == [5, 3, 1, None]

    pneumonia = await store.query("predictions", [("result.modelType", "==", "pneumonia")])
    assert {doc["userId"] for doc in pneumonia} == {"u1", "u2"}

    since = await store.query(
        "predictions",
        [("createdAt", ">=", datetime(2024, 1, 3, tzinfo=timezone.utc))],
        order_by="createdAt",
        descending=False,
        limit=1,
    )
    assert since[0]["createdAt"].day == 3

    with pytest.raises(StorageError):
        await store.query("predictions", [("userId", "!=", "u1")])


@pytest.mark.asyncio
async def test_delete_is_idempotent():
    store = InMemoryDocumentStore()
    doc_id = await store.create("predictions", {"a": 1})
    await store.delete("predictions", doc_id)
    await store.delete("predictions", doc_id)
    assert await store.get("predictions", doc_id) is None


def test_safe_blob_name_keeps_a_readable_stem():
    name = safe_blob_name("../../etc/chest x-ray (1).png")
    prefix, rest = name.split("/", 1)

    assert prefix == "medical-images"
    assert rest.endswith("_chest_x-ray_1_.png")
    assert "/" not in rest and ".." not in rest


@pytest.mark.asyncio
async def test_local_blob_store_round_trip(tmp_path):
    store = LocalBlobStore(tmp_path, "http://cdn.local/uploads/")
    blob = await store.upload(b"pixels", "medical-images/abc_scan.png", "image/png")

    assert blob.url == "http://cdn.local/uploads/medical-images/abc_scan.png"
    assert (tmp_path / "medical-images" / "abc_scan.png").read_bytes() == b"pixels"

    await store.delete(blob.name)
    assert not (tmp_path / "medical-images" / "abc_scan.png").exists()


@pytest.mark.asyncio
async def test_local_blob_store_rejects_escaping_names(tmp_path):
    store = LocalBlobStore(tmp_path / "root", "http://cdn.local")
    with pytest.raises(StorageError):
        await store.upload(b"x", "../outside.png", "image/png")
