"""SQLite-backed document store with live query listeners.

Documents are JSON objects addressed by slash separated paths
(``collection/docId`` or ``collection/docId/subcollection/docId``). The store
mimics the behaviour of the managed backend the application talks to in
production: composite indexes must be declared before ordered, filtered
queries are accepted; security rules can block whole collections; listeners
receive the full result set after every committed write to their
collection.
"""

import asyncio
import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import date, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple, TypeVar
from uuid import uuid4

logger = logging.getLogger(__name__)

DOCUMENT_ID = "__name__"
FILTER_OPERATORS = {"==", "array-contains"}

T = TypeVar("T")


class DocumentStoreError(ValueError):
    """Base class for errors reported by the document store."""


class PermissionDeniedError(DocumentStoreError):
    pass


class IndexMissingError(DocumentStoreError):
    def __init__(self, message: str, index: Optional["CompositeIndex"] = None):
        super().__init__(message)
        self.index = index


class NotFoundError(DocumentStoreError):
    pass


class NetworkError(DocumentStoreError):
    pass


class AlreadyExistsError(DocumentStoreError):
    pass


class PreconditionFailedError(DocumentStoreError):
    pass


def split_document_path(path: str) -> Tuple[str, str]:
    segments = [segment for segment in path.strip("/").split("/") if segment]
    if len(segments) < 2 or len(segments) % 2:
        raise ValueError(f"Invalid document path: {path!r}")
    return "/".join(segments[:-1]), segments[-1]


def parent_document_path(collection: str) -> Optional[str]:
    segments = collection.strip("/").split("/")
    if len(segments) < 3:
        return None
    return "/".join(segments[:-1])


def collection_group(collection: str) -> str:
    return collection.strip("/").split("/")[-1]


def lookup_field(data: Dict[str, Any], field_path: str) -> Any:
    current: Any = data
    for part in field_path.split("."):
        if not isinstance(current, dict):
            return None
        current = current.get(part)
    return current


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"Value of type {type(value).__name__} is not storable")


@dataclass(frozen=True)
class FieldFilter:
    field: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in FILTER_OPERATORS:
            raise ValueError(f"Unsupported filter operator {self.op!r}. Allowed: ==, array-contains")

    def matches(self, doc_id: str, data: Dict[str, Any]) -> bool:
        actual = doc_id if self.field == DOCUMENT_ID else lookup_field(data, self.field)
        if self.op == "==":
            return actual == self.value
        return isinstance(actual, list) and self.value in actual


def where(field_path: str, op: str, value: Any) -> FieldFilter:
    return FieldFilter(field=field_path, op=op, value=value)


@dataclass(frozen=True)
class OrderBy:
    field: str
    direction: str = "asc"

    def __post_init__(self) -> None:
        if self.direction not in {"asc", "desc"}:
            raise ValueError("Invalid sort direction. Allowed: asc, desc")

    @property
    def descending(self) -> bool:
        return self.direction == "desc"

    def sort(self, documents: Iterable["DocumentSnapshot"]) -> List["DocumentSnapshot"]:
        # Missing values order before present ones; ties break on document id
        # in the same direction as the key.
        def key(document: "DocumentSnapshot") -> Tuple[bool, Any, str]:
            value = document.get(self.field)
            return (value is not None, value if value is not None else 0, document.id)

        return sorted(documents, key=key, reverse=self.descending)


@dataclass(frozen=True)
class CompositeIndex:
    collection: str
    fields: Tuple[str, ...]
    order_field: str

    @classmethod
    def parse(cls, declaration: str) -> "CompositeIndex":
        parts = declaration.strip().split(":")
        if len(parts) != 3 or not all(parts):
            raise ValueError(f"Invalid index declaration {declaration!r}; expected collection:field1+field2:orderField")
        collection, fields, order_field = parts
        return cls(
            collection=collection,
            fields=tuple(sorted(item for item in fields.split("+") if item)),
            order_field=order_field,
        )

    def describe(self) -> str:
        return f"{self.collection}:{'+'.join(self.fields)}:{self.order_field}"


@dataclass(frozen=True)
class Query:
    collection: str
    filters: Tuple[FieldFilter, ...] = ()
    order_by: Optional[OrderBy] = None

    def matches(self, doc_id: str, data: Dict[str, Any]) -> bool:
        return all(item.matches(doc_id, data) for item in self.filters)

    def without_order(self) -> "Query":
        return Query(collection=self.collection, filters=self.filters, order_by=None)

    def required_index(self) -> Optional[CompositeIndex]:
        if self.order_by is None:
            return None
        fields = sorted({item.field for item in self.filters if item.field != self.order_by.field})
        if not fields:
            return None
        return CompositeIndex(
            collection=collection_group(self.collection),
            fields=tuple(fields),
            order_field=self.order_by.field,
        )


@dataclass
class DocumentSnapshot:
    id: str
    path: str
    data: Optional[Dict[str, Any]]

    @property
    def exists(self) -> bool:
        return self.data is not None

    def get(self, field_path: str, default: Any = None) -> Any:
        if self.data is None:
            return default
        value = lookup_field(self.data, field_path)
        return default if value is None else value


@dataclass
class QuerySnapshot:
    documents: List[DocumentSnapshot] = field(default_factory=list)

    @property
    def ids(self) -> List[str]:
        return [document.id for document in self.documents]

    @property
    def empty(self) -> bool:
        return not self.documents

    def __len__(self) -> int:
        return len(self.documents)

    def __iter__(self) -> Iterator[DocumentSnapshot]:
        return iter(self.documents)


SnapshotCallback = Callable[[QuerySnapshot], None]
ErrorCallback = Callable[[DocumentStoreError], None]


@dataclass
class _Listener:
    query: Query
    on_snapshot: SnapshotCallback
    on_error: ErrorCallback
    loop: asyncio.AbstractEventLoop


class ListenerRegistration:
    def __init__(self, store: "DocumentStore", listener_id: str):
        self._store = store
        self._listener_id = listener_id

    @property
    def active(self) -> bool:
        return self._store._has_listener(self._listener_id)

    def unsubscribe(self) -> None:
        self._store._remove_listener(self._listener_id)


class _WriteSet:
    def __init__(self) -> None:
        self._ops: List[Tuple[str, str, Optional[Dict[str, Any]], bool]] = []

    def create(self, path: str, data: Dict[str, Any]):
        self._ops.append(("create", path, dict(data), False))
        return self

    def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        self._ops.append(("set", path, dict(data), merge))
        return self

    def update(self, path: str, fields: Dict[str, Any]):
        self._ops.append(("update", path, dict(fields), False))
        return self

    def delete(self, path: str):
        self._ops.append(("delete", path, None, False))
        return self


class WriteBatch(_WriteSet):
    """Group of writes applied atomically on ``commit``."""

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store
        self._committed = False

    async def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Batch already committed")
        self._committed = True
        await self._store._commit(self._ops)


class Transaction(_WriteSet):
    """Reads see committed state; writes are buffered until the callback returns."""

    def __init__(self, store: "DocumentStore"):
        super().__init__()
        self._store = store

    async def get(self, path: str) -> DocumentSnapshot:
        collection, _ = split_document_path(path)
        self._store._check_readable(collection)
        return self._store._read(path)


class DocumentStore:
    def __init__(
        self,
        db_path: str,
        indexes: Iterable[CompositeIndex] = (),
        blocked_collections: Iterable[str] = (),
    ) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = asyncio.Lock()
        self._indexes: Set[CompositeIndex] = set(indexes)
        self._blocked: Set[str] = {item.strip() for item in blocked_collections if item.strip()}
        self._listeners: Dict[str, _Listener] = {}
        self._init_db()
        logger.info("Document store opened at %s (%d composite indexes)", self.db_path, len(self._indexes))

    def _init_db(self) -> None:
        with self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    path TEXT PRIMARY KEY,
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    data_json TEXT NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection)")

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def declare_index(self, index: CompositeIndex) -> None:
        self._indexes.add(index)

    def new_id(self) -> str:
        return uuid4().hex[:20]

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def get(self, path: str) -> DocumentSnapshot:
        collection, _ = split_document_path(path)
        self._check_readable(collection)
        async with self._lock:
            return self._read(path)

    async def query(self, query: Query) -> QuerySnapshot:
        self._check_query(query)
        async with self._lock:
            return self._run_query(query)

    async def create(self, path: str, data: Dict[str, Any]) -> None:
        """Write ``data`` only if nothing exists at ``path``; raises AlreadyExistsError otherwise."""
        await self._commit([("create", path, dict(data), False)])

    async def set(self, path: str, data: Dict[str, Any], merge: bool = False) -> None:
        await self._commit([("set", path, dict(data), merge)])

    async def update(self, path: str, fields: Dict[str, Any]) -> None:
        await self._commit([("update", path, dict(fields), False)])

    async def delete(self, path: str) -> None:
        await self._commit([("delete", path, None, False)])

    async def run_transaction(self, callback: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ``callback`` with exclusive access; its writes commit atomically when it returns."""
        async with self._lock:
            transaction = Transaction(self)
            result = await callback(transaction)
            changed = self._apply(transaction._ops)
        self._notify(changed)
        return result

    def listen(
        self,
        query: Query,
        on_snapshot: SnapshotCallback,
        on_error: ErrorCallback,
    ) -> ListenerRegistration:
        loop = asyncio.get_running_loop()
        listener_id = uuid4().hex
        registration = ListenerRegistration(self, listener_id)
        try:
            self._check_query(query)
            parent = parent_document_path(query.collection)
            if parent is not None and self._read_raw(parent) is None:
                raise NotFoundError(f"Parent document does not exist: {parent}")
        except DocumentStoreError as exc:
            loop.call_soon(on_error, exc)
            return registration

        self._listeners[listener_id] = _Listener(
            query=query,
            on_snapshot=on_snapshot,
            on_error=on_error,
            loop=loop,
        )
        loop.call_soon(self._deliver, listener_id)
        return registration

    def close(self) -> None:
        self._listeners.clear()
        self._conn.close()

    def _has_listener(self, listener_id: str) -> bool:
        return listener_id in self._listeners

    def _remove_listener(self, listener_id: str) -> None:
        self._listeners.pop(listener_id, None)

    def _deliver(self, listener_id: str) -> None:
        listener = self._listeners.get(listener_id)
        if listener is None:
            return
        snapshot = self._run_query(listener.query)
        try:
            listener.on_snapshot(snapshot)
        except Exception:
            logger.exception("Snapshot listener failed for %s", listener.query.collection)

    def _notify(self, changed: Set[str]) -> None:
        for listener_id, listener in list(self._listeners.items()):
            if listener.query.collection in changed:
                listener.loop.call_soon(self._deliver, listener_id)

    def _check_readable(self, collection: str) -> None:
        if collection_group(collection) in self._blocked:
            raise PermissionDeniedError(f"Missing or insufficient permissions for {collection}")

    def _check_query(self, query: Query) -> None:
        self._check_readable(query.collection)
        required = query.required_index()
        if required is None:
            return
        for index in self._indexes:
            if (
                index.collection == required.collection
                and set(index.fields) == set(required.fields)
                and index.order_field == required.order_field
            ):
                return
        raise IndexMissingError(f"The query requires an index: {required.describe()}", index=required)

    def _read_raw(self, path: str) -> Optional[Dict[str, Any]]:
        row = self._conn.execute("SELECT data_json FROM documents WHERE path = ?", (path.strip("/"),)).fetchone()
        if not row:
            return None
        return json.loads(row["data_json"])

    def _read(self, path: str) -> DocumentSnapshot:
        _, doc_id = split_document_path(path)
        return DocumentSnapshot(id=doc_id, path=path.strip("/"), data=self._read_raw(path))

    def _run_query(self, query: Query) -> QuerySnapshot:
        rows = self._conn.execute(
            "SELECT path, doc_id, data_json FROM documents WHERE collection = ? ORDER BY doc_id",
            (query.collection.strip("/"),),
        ).fetchall()
        documents = []
        for row in rows:
            data = json.loads(row["data_json"])
            if query.matches(row["doc_id"], data):
                documents.append(DocumentSnapshot(id=row["doc_id"], path=row["path"], data=data))
        if query.order_by is not None:
            documents = query.order_by.sort(documents)
        return QuerySnapshot(documents=documents)

    def _write(self, path: str, data: Dict[str, Any]) -> None:
        collection, doc_id = split_document_path(path)
        self._conn.execute(
            """
            INSERT INTO documents (path, collection, doc_id, data_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(path) DO UPDATE SET data_json = excluded.data_json
            """,
            (path.strip("/"), collection, doc_id, json.dumps(data, default=_json_default)),
        )

    def _apply(self, ops: List[Tuple[str, str, Optional[Dict[str, Any]], bool]]) -> Set[str]:
        changed: Set[str] = set()
        if not ops:
            return changed
        # The connection context manager rolls every op back if any one fails.
        with self._conn:
            for kind, path, data, merge in ops:
                collection, _ = split_document_path(path)
                existing = self._read_raw(path)
                if kind == "create":
                    if existing is not None:
                        raise AlreadyExistsError(f"Document already exists: {path}")
                    self._write(path, data or {})
                elif kind == "set":
                    merged = {**existing, **(data or {})} if merge and existing is not None else dict(data or {})
                    self._write(path, merged)
                elif kind == "update":
                    if existing is None:
                        raise NotFoundError(f"No document to update: {path}")
                    self._write(path, _apply_field_updates(existing, data or {}))
                elif kind == "delete":
                    self._conn.execute("DELETE FROM documents WHERE path = ?", (path.strip("/"),))
                else:
                    raise ValueError(f"Unknown write kind {kind!r}")
                changed.add(collection)
        return changed

    async def _commit(self, ops: List[Tuple[str, str, Optional[Dict[str, Any]], bool]]) -> None:
        async with self._lock:
            changed = self._apply(ops)
        self._notify(changed)


def _apply_field_updates(existing: Dict[str, Any], fields: Dict[str, Any]) -> Dict[str, Any]:
    updated = json.loads(json.dumps(existing))
    for field_path, value in fields.items():
        parts = field_path.split(".")
        target = updated
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = value
    return updated


def _parse_csv_env(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def store_from_env() -> DocumentStore:
    default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketsync.sqlite3")
    indexes = []
    for declaration in _parse_csv_env("MARKETSYNC_INDEXES"):
        try:
            indexes.append(CompositeIndex.parse(declaration))
        except ValueError:
            logger.warning("Ignoring malformed index declaration %r", declaration)
    return DocumentStore(
        db_path=os.getenv("MARKETSYNC_DB_PATH", default_db),
        indexes=indexes,
        blocked_collections=_parse_csv_env("MARKETSYNC_BLOCKED_COLLECTIONS"),
    )
