import pytest

from conftest import settle
from marketsync.services.document_store import (
    AlreadyExistsError,
    CompositeIndex,
    DocumentStore,
    IndexMissingError,
    NotFoundError,
    OrderBy,
    PermissionDeniedError,
    Query,
    where,
)


@pytest.mark.asyncio
async def test_create_is_conditional(store):
    await store.create("items/a", {"name": "first"})
    with pytest.raises(AlreadyExistsError):
        await store.create("items/a", {"name": "second"})
    snapshot = await store.get("items/a")
    assert snapshot.get("name") == "first"


@pytest.mark.asyncio
async def test_update_with_dotted_keys_keeps_siblings(store):
    await store.create("conversations/a_b", {"unreadFor": {"a": False, "b": False}, "lastMessage": ""})
    await store.update("conversations/a_b", {"unreadFor.b": True, "lastMessage": "hi"})
    snapshot = await store.get("conversations/a_b")
    assert snapshot.data == {"unreadFor": {"a": False, "b": True}, "lastMessage": "hi"}


@pytest.mark.asyncio
async def test_update_missing_document_fails(store):
    with pytest.raises(NotFoundError):
        await store.update("items/missing", {"name": "x"})


@pytest.mark.asyncio
async def test_set_merge_preserves_other_fields(store):
    await store.set("users/u1", {"displayName": "Ada", "role": "user"})
    await store.set("users/u1", {"email": "ada@example.com"}, merge=True)
    snapshot = await store.get("users/u1")
    assert snapshot.data == {"displayName": "Ada", "role": "user", "email": "ada@example.com"}

    await store.set("users/u1", {"email": "new@example.com"})
    assert (await store.get("users/u1")).data == {"email": "new@example.com"}


@pytest.mark.asyncio
async def test_failed_batch_writes_nothing(store):
    await store.create("items/taken", {"v": 1})
    batch = store.batch()
    batch.create("items/fresh", {"v": 2})
    batch.create("items/taken", {"v": 3})
    with pytest.raises(AlreadyExistsError):
        await batch.commit()
    assert not (await store.get("items/fresh")).exists
    assert (await store.get("items/taken")).get("v") == 1


@pytest.mark.asyncio
async def test_transaction_error_discards_buffered_writes(store):
    await store.create("counters/c", {"value": 1})

    async def bump_then_fail(transaction):
        snapshot = await transaction.get("counters/c")
        transaction.update("counters/c", {"value": snapshot.get("value") + 1})
        raise RuntimeError("abort")

    with pytest.raises(RuntimeError):
        await store.run_transaction(bump_then_fail)
    assert (await store.get("counters/c")).get("value") == 1


@pytest.mark.asyncio
async def test_ordered_filtered_query_requires_declared_index(store):
    for doc_id, created_at in (("r1", "2026-01-01"), ("r2", "2026-03-01"), ("r3", "2026-02-01")):
        await store.create(f"serviceRequests/{doc_id}", {"providerId": "p1", "createdAt": created_at})
    query = Query("serviceRequests", (where("providerId", "==", "p1"),), OrderBy("createdAt", "desc"))

    with pytest.raises(IndexMissingError) as excinfo:
        await store.query(query)
    assert excinfo.value.index.describe() == "serviceRequests:providerId:createdAt"

    store.declare_index(CompositeIndex.parse("serviceRequests:providerId:createdAt"))
    snapshot = await store.query(query)
    assert snapshot.ids == ["r2", "r3", "r1"]


@pytest.mark.asyncio
async def test_order_only_query_needs_no_index(store):
    await store.create("items/b", {"rank": 2})
    await store.create("items/a", {"rank": 1})
    await store.create("items/c", {})
    snapshot = await store.query(Query("items", order_by=OrderBy("rank")))
    assert snapshot.ids == ["c", "a", "b"]


@pytest.mark.asyncio
async def test_array_contains_and_document_id_filters(store):
    await store.create("conversations/a_b", {"participants": ["a", "b"]})
    await store.create("conversations/a_c", {"participants": ["a", "c"]})
    snapshot = await store.query(Query("conversations", (where("participants", "array-contains", "b"),)))
    assert snapshot.ids == ["a_b"]
    snapshot = await store.query(Query("conversations", (where("__name__", "==", "a_c"),)))
    assert snapshot.ids == ["a_c"]


@pytest.mark.asyncio
async def test_blocked_collection_is_denied(tmp_path):
    store = DocumentStore(db_path=str(tmp_path / "blocked.sqlite3"), blocked_collections=["users"])
    try:
        with pytest.raises(PermissionDeniedError):
            await store.get("users/u1")
        with pytest.raises(PermissionDeniedError):
            await store.query(Query("users"))
    finally:
        store.close()


@pytest.mark.asyncio
async def test_listener_gets_initial_and_updated_results_until_unsubscribed(store):
    await store.create("items/a", {"v": 1})
    received, errors = [], []
    registration = store.listen(Query("items"), on_snapshot=received.append, on_error=errors.append)
    await settle()
    assert [snapshot.ids for snapshot in received] == [["a"]]

    await store.create("items/b", {"v": 2})
    await store.create("other/x", {"v": 3})
    await settle()
    assert [snapshot.ids for snapshot in received] == [["a"], ["a", "b"]]

    registration.unsubscribe()
    assert not registration.active
    assert store.listener_count == 0
    await store.create("items/c", {"v": 4})
    await settle()
    assert len(received) == 2
    assert errors == []


@pytest.mark.asyncio
async def test_listener_on_missing_parent_reports_not_found(store):
    received, errors = [], []
    store.listen(Query("conversations/nope/messages"), on_snapshot=received.append, on_error=errors.append)
    await settle()
    assert received == []
    assert len(errors) == 1
    assert isinstance(errors[0], NotFoundError)
    assert store.listener_count == 0


def test_composite_index_parse_normalizes_field_order():
    index = CompositeIndex.parse("notifications:read+recipientId:createdAt")
    assert index == CompositeIndex.parse("notifications:recipientId+read:createdAt")
    with pytest.raises(ValueError):
        CompositeIndex.parse("notifications:createdAt")
