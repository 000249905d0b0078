import asyncio

import pytest

from conftest import next_snapshot, settle
from marketsync.services.document_store import (
    CompositeIndex,
    DocumentSnapshot,
    DocumentStore,
    IndexMissingError,
    ListenerRegistration,
    NotFoundError,
    OrderBy,
    PermissionDeniedError,
    QuerySnapshot,
    where,
)
from marketsync.services.live_query import FALLBACK, INDEXED, LiveQuerySubscriber

REQUESTS = [
    ("r1", "p1", "2026-01-05T10:00:00"),
    ("r2", "p1", "2026-01-07T10:00:00"),
    ("r3", "p2", "2026-01-06T10:00:00"),
    ("r4", "p1", "2026-01-06T10:00:00"),
    ("r5", "p1", "2026-01-09T10:00:00"),
    ("r6", "p1", "2026-01-03T10:00:00"),
]
P1_NEWEST_FIRST = ["r5", "r2", "r4", "r1", "r6"]


async def _seed(store):
    for doc_id, provider_id, created_at in REQUESTS:
        await store.create(f"serviceRequests/{doc_id}", {"providerId": provider_id, "createdAt": created_at})


def _provider_subscription(subscriber, provider_id="p1"):
    return subscriber.subscribe(
        "serviceRequests",
        [where("providerId", "==", provider_id)],
        order_by=OrderBy("createdAt", "desc"),
    )


class ScriptedIndexStore(DocumentStore):
    """Ordered listens emit a stale snapshot around the index error."""

    def listen(self, query, on_snapshot, on_error):
        if query.order_by is None:
            return super().listen(query, on_snapshot, on_error)
        stale = QuerySnapshot(documents=[DocumentSnapshot(id="stale", path="serviceRequests/stale", data={})])
        loop = asyncio.get_running_loop()
        loop.call_soon(on_snapshot, stale)
        loop.call_soon(on_error, IndexMissingError("The query requires an index"))
        loop.call_soon(on_snapshot, stale)
        return ListenerRegistration(self, "scripted")


@pytest.mark.asyncio
async def test_missing_index_falls_back_to_client_side_order(store, subscriber):
    await _seed(store)
    async with _provider_subscription(subscriber) as subscription:
        snapshot = await next_snapshot(subscription)
        assert subscription.mode == FALLBACK
        assert snapshot.ids == P1_NEWEST_FIRST


@pytest.mark.asyncio
async def test_fallback_order_matches_indexed_order(tmp_path, store, subscriber):
    await _seed(store)
    indexed_store = DocumentStore(
        db_path=str(tmp_path / "indexed.sqlite3"),
        indexes=[CompositeIndex.parse("serviceRequests:providerId:createdAt")],
    )
    try:
        await _seed(indexed_store)
        async with _provider_subscription(LiveQuerySubscriber(indexed_store)) as indexed:
            primary = await next_snapshot(indexed)
            assert indexed.mode == INDEXED
        async with _provider_subscription(subscriber) as fallback:
            degraded = await next_snapshot(fallback)
        assert fallback.mode == FALLBACK
        assert len(primary.ids) == 5
        assert primary.ids == P1_NEWEST_FIRST
        assert degraded.ids == primary.ids
    finally:
        indexed_store.close()


@pytest.mark.asyncio
async def test_fallback_keeps_streaming_without_reswitching(store, subscriber):
    await _seed(store)
    async with _provider_subscription(subscriber) as subscription:
        await next_snapshot(subscription)
        await store.create("serviceRequests/r7", {"providerId": "p1", "createdAt": "2026-01-08T10:00:00"})
        second = await next_snapshot(subscription)
        await store.create("serviceRequests/r8", {"providerId": "p1"})
        third = await next_snapshot(subscription)
        assert second.ids == ["r5", "r7", "r2", "r4", "r1", "r6"]
        # Missing sort values order first ascending, so last when descending.
        assert third.ids == ["r5", "r7", "r2", "r4", "r1", "r6", "r8"]
        assert subscription.mode == FALLBACK
        assert subscription.active_listeners == 1


@pytest.mark.asyncio
async def test_primary_snapshots_around_index_error_are_discarded(tmp_path):
    store = ScriptedIndexStore(db_path=str(tmp_path / "scripted.sqlite3"))
    try:
        await _seed(store)
        subscription = _provider_subscription(LiveQuerySubscriber(store))
        await settle()
        snapshot = await next_snapshot(subscription)
        assert "stale" not in snapshot.ids
        assert snapshot.ids == P1_NEWEST_FIRST
        subscription.release()
        assert store.listener_count == 0
    finally:
        store.close()


@pytest.mark.asyncio
async def test_release_detaches_every_listener(store, subscriber):
    await _seed(store)
    subscription = _provider_subscription(subscriber)
    await next_snapshot(subscription)
    assert store.listener_count == 1

    subscription.release()
    subscription.release()
    assert subscription.released
    assert store.listener_count == 0
    assert subscription.active_listeners == 0
    with pytest.raises(StopAsyncIteration):
        await next_snapshot(subscription)


@pytest.mark.asyncio
async def test_release_before_first_delivery(store, subscriber):
    await _seed(store)
    subscription = _provider_subscription(subscriber)
    subscription.release()
    await settle()
    assert store.listener_count == 0
    snapshots = [snapshot async for snapshot in subscription]
    assert snapshots == []


@pytest.mark.asyncio
async def test_release_discards_undelivered_snapshots(store, subscriber):
    await _seed(store)
    subscription = _provider_subscription(subscriber)
    await settle()
    await store.create("serviceRequests/r7", {"providerId": "p1", "createdAt": "2026-01-08T10:00:00"})
    await settle()

    subscription.release()
    snapshots = [snapshot async for snapshot in subscription]
    assert snapshots == []


@pytest.mark.asyncio
async def test_permission_denied_is_terminal(tmp_path):
    store = DocumentStore(db_path=str(tmp_path / "blocked.sqlite3"), blocked_collections=["notifications"])
    try:
        subscription = LiveQuerySubscriber(store).subscribe(
            "notifications",
            [where("recipientId", "==", "u1")],
            order_by=OrderBy("createdAt", "desc"),
        )
        with pytest.raises(PermissionDeniedError):
            await next_snapshot(subscription)
        with pytest.raises(StopAsyncIteration):
            await next_snapshot(subscription)
        assert store.listener_count == 0
    finally:
        store.close()


@pytest.mark.asyncio
async def test_missing_parent_yields_one_empty_snapshot(store, subscriber):
    subscription = subscriber.subscribe("conversations/missing/messages", order_by=OrderBy("createdAt"))
    snapshots = [snapshot async for snapshot in subscription]
    assert len(snapshots) == 1
    assert snapshots[0].empty


@pytest.mark.asyncio
async def test_document_subscription_follows_updates(store, subscriber):
    await store.create("serviceRequests/r1", {"status": "Pending"})
    async with subscriber.subscribe_document("serviceRequests", "r1") as subscription:
        first = await next_snapshot(subscription)
        await store.update("serviceRequests/r1", {"status": "InProgress"})
        second = await next_snapshot(subscription)
    assert first.documents[0].get("status") == "Pending"
    assert second.documents[0].get("status") == "InProgress"


@pytest.mark.asyncio
async def test_fetch_falls_back_and_tolerates_missing_parent(store, subscriber):
    await _seed(store)
    snapshot = await subscriber.fetch(
        "serviceRequests",
        [where("providerId", "==", "p1")],
        order_by=OrderBy("createdAt", "desc"),
    )
    assert snapshot.ids == P1_NEWEST_FIRST
    assert (await subscriber.fetch("serviceRequests/missing/statusHistory")).empty


@pytest.mark.asyncio
async def test_fetch_without_order_propagates_other_errors(tmp_path):
    store = DocumentStore(db_path=str(tmp_path / "blocked.sqlite3"), blocked_collections=["serviceRequests"])
    try:
        with pytest.raises(PermissionDeniedError):
            await LiveQuerySubscriber(store).fetch("serviceRequests")
    finally:
        store.close()


def test_not_found_is_a_store_error():
    assert issubclass(NotFoundError, ValueError)
