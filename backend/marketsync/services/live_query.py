"""Live query subscriptions that survive missing composite indexes.

A subscription first issues the ordered query. When the store rejects it for
lack of a composite index, the subscription re-listens with the filters only
and sorts every snapshot client-side by the requested key, so consumers see
the same sequence either way. The switch happens at most once per
subscription.
"""

import asyncio
import logging
from typing import Iterable, List, Optional, Union

from marketsync.services.document_store import (
    DOCUMENT_ID,
    DocumentStore,
    DocumentStoreError,
    IndexMissingError,
    ListenerRegistration,
    NotFoundError,
    OrderBy,
    Query,
    QuerySnapshot,
    FieldFilter,
    where,
)

logger = logging.getLogger(__name__)

INDEXED = "indexed"
FALLBACK = "fallback"

_END = object()


class Subscription:
    def __init__(self, store: DocumentStore, query: Query):
        self._store = store
        self._query = query
        self._queue: "asyncio.Queue[Union[QuerySnapshot, DocumentStoreError, object]]" = asyncio.Queue()
        self._registrations: List[ListenerRegistration] = []
        self._generation = 0
        self._mode = INDEXED
        self._released = False
        self._closed = False
        self._exhausted = False

    @property
    def query(self) -> Query:
        return self._query

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def released(self) -> bool:
        return self._released

    @property
    def active_listeners(self) -> int:
        return sum(1 for registration in self._registrations if registration.active)

    def release(self) -> None:
        """Detach every listener this subscription spawned and end iteration."""
        if self._released:
            return
        self._released = True
        self._detach()
        self._drain()
        self._queue.put_nowait(_END)

    def _start(self) -> None:
        self._listen(self._query, self._generation)

    def _listen(self, query: Query, generation: int) -> None:
        registration = self._store.listen(
            query,
            on_snapshot=lambda snapshot: self._on_snapshot(generation, snapshot),
            on_error=lambda exc: self._on_error(generation, exc),
        )
        self._registrations.append(registration)

    def _detach(self) -> None:
        for registration in self._registrations:
            registration.unsubscribe()

    def _on_snapshot(self, generation: int, snapshot: QuerySnapshot) -> None:
        if self._released or self._closed or generation != self._generation:
            return
        if self._mode == FALLBACK and self._query.order_by is not None:
            snapshot = QuerySnapshot(documents=self._query.order_by.sort(snapshot.documents))
        self._queue.put_nowait(snapshot)

    def _on_error(self, generation: int, exc: DocumentStoreError) -> None:
        if self._released or self._closed or generation != self._generation:
            return
        if isinstance(exc, IndexMissingError) and self._mode == INDEXED and self._query.order_by is not None:
            logger.warning(
                "Index missing for %s, falling back to client-side ordering: %s",
                self._query.collection,
                exc,
            )
            self._degrade()
            return
        if isinstance(exc, NotFoundError):
            self._queue.put_nowait(QuerySnapshot())
            self._close()
            return
        logger.warning("Subscription on %s terminated: %s", self._query.collection, exc)
        self._queue.put_nowait(exc)
        self._close()

    def _degrade(self) -> None:
        self._mode = FALLBACK
        self._generation += 1
        self._detach()
        # Unconsumed primary snapshots are superseded by the fallback source.
        self._drain()
        self._listen(self._query.without_order(), self._generation)

    def _drain(self) -> None:
        while not self._queue.empty():
            self._queue.get_nowait()

    def _close(self) -> None:
        self._closed = True
        self._detach()
        self._queue.put_nowait(_END)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> QuerySnapshot:
        if self._exhausted:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _END:
            self._exhausted = True
            raise StopAsyncIteration
        if isinstance(item, DocumentStoreError):
            self._exhausted = True
            raise item
        return item

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class LiveQuerySubscriber:
    def __init__(self, store: DocumentStore):
        self._store = store

    def subscribe(
        self,
        collection: str,
        filters: Iterable[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
    ) -> Subscription:
        subscription = Subscription(self._store, Query(collection=collection, filters=tuple(filters), order_by=order_by))
        subscription._start()
        return subscription

    def subscribe_document(self, collection: str, doc_id: str) -> Subscription:
        return self.subscribe(collection, [where(DOCUMENT_ID, "==", doc_id)])

    async def fetch(
        self,
        collection: str,
        filters: Iterable[FieldFilter] = (),
        order_by: Optional[OrderBy] = None,
    ) -> QuerySnapshot:
        query = Query(collection=collection, filters=tuple(filters), order_by=order_by)
        try:
            return await self._store.query(query)
        except IndexMissingError as exc:
            if order_by is None:
                raise
            logger.warning("Index missing for %s, sorting client-side: %s", collection, exc)
            unordered = await self._store.query(query.without_order())
            return QuerySnapshot(documents=order_by.sort(unordered.documents))
        except NotFoundError:
            return QuerySnapshot()
