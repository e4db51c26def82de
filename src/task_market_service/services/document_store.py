"""SQLite-backed schemaless document store with versions and change subscriptions."""

from __future__ import annotations

import contextlib
import json
import re
import sqlite3
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from threading import RLock
from typing import TYPE_CHECKING, Any

from task_market_service.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

_FIELD_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_COMPARISON_OPS: dict[str, str] = {
    "==": "=",
    "!=": "!=",
    "<": "<",
    "<=": "<=",
    ">": ">",
    ">=": ">=",
}


class DuplicateDocumentError(Exception):
    """Raised when creating a document whose id already exists in the collection."""


class DocumentNotFoundError(Exception):
    """Raised when updating or deleting a document that does not exist."""


class VersionConflictError(Exception):
    """Raised when a conditional write finds a different version than expected."""


class StoreUnavailableError(Exception):
    """Raised when the underlying database call fails."""


@dataclass(frozen=True)
class DocumentSnapshot:
    """A document as read from the store, together with its version."""

    doc_id: str
    version: int
    data: dict[str, Any]


@dataclass(frozen=True)
class Predicate:
    """A single query filter: `field op value`."""

    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class Ordering:
    """A sort key for query results."""

    field: str
    descending: bool = False


@dataclass
class Subscription:
    """Handle returned by DocumentStore.subscribe(). Unsubscribing twice is a no-op."""

    _release: Callable[[], None]
    _active: bool = field(default=True)

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self) -> None:
        if not self._active:
            return
        self._active = False
        self._release()


class DocumentStore:
    """
    Collections of JSON documents keyed by id.

    Every write bumps the document version. update/replace/delete accept
    an expected_version and raise VersionConflictError on mismatch, which
    lets callers run optimistic read-modify-write loops. Observers
    registered with subscribe() receive the committed snapshot (or None
    after a delete) once the write has been committed.
    """

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        self._logger = get_logger(__name__)
        self._observers: dict[tuple[str, str], dict[int, Callable[[DocumentSnapshot | None], None]]] = {}
        self._next_observer_id = 0
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = sqlite3.connect(db_path, check_same_thread=False)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    body TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                );
                """
            )
            self._db.commit()

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        """Run the enclosed statements in one IMMEDIATE transaction."""
        try:
            self._db.execute("BEGIN IMMEDIATE")
            yield
            self._db.commit()
        except sqlite3.OperationalError as exc:
            with contextlib.suppress(sqlite3.Error):
                self._db.execute("ROLLBACK")
            raise StoreUnavailableError(str(exc)) from exc
        except Exception:
            with contextlib.suppress(sqlite3.Error):
                self._db.execute("ROLLBACK")
            raise

    def _read_row(self, collection: str, doc_id: str) -> sqlite3.Row | None:
        try:
            cursor = self._db.execute(
                "SELECT doc_id, version, body FROM documents WHERE collection = ? AND doc_id = ?",
                (collection, doc_id),
            )
            row: sqlite3.Row | None = cursor.fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(str(exc)) from exc
        return row

    @staticmethod
    def _row_to_snapshot(row: sqlite3.Row) -> DocumentSnapshot:
        return DocumentSnapshot(
            doc_id=str(row["doc_id"]),
            version=int(row["version"]),
            data=json.loads(row["body"]),
        )

    @staticmethod
    def _check_version(row: sqlite3.Row, expected_version: int | None) -> None:
        if expected_version is not None and int(row["version"]) != expected_version:
            raise VersionConflictError(
                f"expected version {expected_version}, found {int(row['version'])}"
            )

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        """Fetch a document by id."""
        with self._lock:
            row = self._read_row(collection, doc_id)
        if row is None:
            return None
        return self._row_to_snapshot(row)

    def create(self, collection: str, data: dict[str, Any], doc_id: str | None = None) -> str:
        """Insert a new document at version 1 and return its id."""
        new_id = doc_id if doc_id is not None else uuid.uuid4().hex
        body = json.dumps(data)
        with self._lock:
            try:
                with self._transaction():
                    self._db.execute(
                        "INSERT INTO documents (collection, doc_id, version, body) "
                        "VALUES (?, ?, 1, ?)",
                        (collection, new_id, body),
                    )
            except sqlite3.IntegrityError as exc:
                raise DuplicateDocumentError(
                    f"A document with id={new_id} already exists in {collection}"
                ) from exc
            snapshot = DocumentSnapshot(doc_id=new_id, version=1, data=json.loads(body))
            self._notify(collection, new_id, snapshot)
        return new_id

    def update(
        self,
        collection: str,
        doc_id: str,
        fields: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        """Merge fields into a document and return the new version."""
        with self._lock:
            with self._transaction():
                row = self._read_row(collection, doc_id)
                if row is None:
                    raise DocumentNotFoundError(f"{collection}/{doc_id}")
                self._check_version(row, expected_version)
                merged = json.loads(row["body"])
                merged.update(fields)
                new_version = int(row["version"]) + 1
                self._write_row(collection, doc_id, new_version, merged)
            snapshot = DocumentSnapshot(doc_id=doc_id, version=new_version, data=merged)
            self._notify(collection, doc_id, snapshot)
        return new_version

    def replace(
        self,
        collection: str,
        doc_id: str,
        data: dict[str, Any],
        *,
        expected_version: int | None = None,
    ) -> int:
        """Overwrite a whole document and return the new version."""
        with self._lock:
            with self._transaction():
                row = self._read_row(collection, doc_id)
                if row is None:
                    raise DocumentNotFoundError(f"{collection}/{doc_id}")
                self._check_version(row, expected_version)
                new_version = int(row["version"]) + 1
                self._write_row(collection, doc_id, new_version, data)
            snapshot = DocumentSnapshot(doc_id=doc_id, version=new_version, data=dict(data))
            self._notify(collection, doc_id, snapshot)
        return new_version

    def _write_row(self, collection: str, doc_id: str, version: int, data: dict[str, Any]) -> None:
        self._db.execute(
            "UPDATE documents SET version = ?, body = ? WHERE collection = ? AND doc_id = ?",
            (version, json.dumps(data), collection, doc_id),
        )

    def delete(self, collection: str, doc_id: str, *, expected_version: int | None = None) -> None:
        """Remove a document."""
        with self._lock:
            with self._transaction():
                row = self._read_row(collection, doc_id)
                if row is None:
                    raise DocumentNotFoundError(f"{collection}/{doc_id}")
                self._check_version(row, expected_version)
                self._db.execute(
                    "DELETE FROM documents WHERE collection = ? AND doc_id = ?",
                    (collection, doc_id),
                )
            self._notify(collection, doc_id, None)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _json_path(field_name: str) -> str:
        if not _FIELD_RE.match(field_name):
            msg = f"Invalid field name: {field_name!r}"
            raise ValueError(msg)
        return f"json_extract(body, '$.{field_name}')"

    def _where_clause(
        self,
        collection: str,
        predicates: Sequence[Predicate],
    ) -> tuple[str, list[object]]:
        clauses = ["collection = ?"]
        params: list[object] = [collection]
        for predicate in predicates:
            path = self._json_path(predicate.field)
            if predicate.op == "contains":
                clauses.append(f"instr(lower({path}), lower(?)) > 0")
                params.append(str(predicate.value))
            elif predicate.op in _COMPARISON_OPS:
                clauses.append(f"{path} {_COMPARISON_OPS[predicate.op]} ?")
                params.append(predicate.value)
            else:
                msg = f"Unsupported query operator: {predicate.op!r}"
                raise ValueError(msg)
        return " WHERE " + " AND ".join(clauses), params

    def query(
        self,
        collection: str,
        predicates: Sequence[Predicate] = (),
        ordering: Sequence[Ordering] = (),
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[DocumentSnapshot]:
        """List documents matching all predicates (AND), sorted by ordering."""
        where, params = self._where_clause(collection, predicates)
        query = "SELECT doc_id, version, body FROM documents" + where  # nosec B608

        order_terms = [
            f"{self._json_path(order.field)} {'DESC' if order.descending else 'ASC'}"
            for order in ordering
        ]
        order_terms.append("doc_id ASC")
        query += " ORDER BY " + ", ".join(order_terms)

        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
            if offset is not None:
                query += " OFFSET ?"
                params.append(offset)

        with self._lock:
            try:
                rows = self._db.execute(query, params).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailableError(str(exc)) from exc
        return [self._row_to_snapshot(row) for row in rows]

    def count(self, collection: str, predicates: Sequence[Predicate] = ()) -> int:
        """Count documents matching all predicates."""
        where, params = self._where_clause(collection, predicates)
        with self._lock:
            try:
                row = self._db.execute(
                    "SELECT COUNT(*) FROM documents" + where,  # nosec B608
                    params,
                ).fetchone()
            except sqlite3.Error as exc:
                raise StoreUnavailableError(str(exc)) from exc
        return int(row[0]) if row is not None else 0

    def count_by(self, collection: str, field_name: str) -> dict[str, int]:
        """Count documents grouped by the value of one field."""
        path = self._json_path(field_name)
        with self._lock:
            try:
                rows = self._db.execute(
                    f"SELECT {path}, COUNT(*) FROM documents "  # nosec B608
                    "WHERE collection = ? GROUP BY 1",
                    (collection,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreUnavailableError(str(exc)) from exc
        return {str(row[0]): int(row[1]) for row in rows}

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        collection: str,
        doc_id: str,
        on_change: Callable[[DocumentSnapshot | None], None],
    ) -> Subscription:
        """
        Register an observer for one document.

        The current snapshot is delivered immediately when the document
        exists; after that, every committed write delivers the new
        snapshot and a delete delivers None. Delivery happens under the
        store lock, so observers see versions in commit order and must
        not block.
        """
        key = (collection, doc_id)
        with self._lock:
            observer_id = self._next_observer_id
            self._next_observer_id += 1
            self._observers.setdefault(key, {})[observer_id] = on_change
            current = self.get(collection, doc_id)
            if current is not None:
                self._deliver(on_change, current, collection, doc_id)

        def release() -> None:
            with self._lock:
                observers = self._observers.get(key)
                if observers is None:
                    return
                observers.pop(observer_id, None)
                if not observers:
                    del self._observers[key]

        return Subscription(_release=release)

    def observer_count(self, collection: str, doc_id: str) -> int:
        """Number of active observers for a document."""
        with self._lock:
            return len(self._observers.get((collection, doc_id), {}))

    def _notify(self, collection: str, doc_id: str, snapshot: DocumentSnapshot | None) -> None:
        # Called with the lock held so observers see snapshots in commit order.
        callbacks = list(self._observers.get((collection, doc_id), {}).values())
        for callback in callbacks:
            self._deliver(callback, snapshot, collection, doc_id)

    def _deliver(
        self,
        callback: Callable[[DocumentSnapshot | None], None],
        snapshot: DocumentSnapshot | None,
        collection: str,
        doc_id: str,
    ) -> None:
        # The write is already committed; a failing observer must not surface to the writer.
        try:
            callback(snapshot)
        except Exception:
            self._logger.exception(
                "Change observer failed",
                extra={"collection": collection, "doc_id": doc_id},
            )

    def close(self) -> None:
        """Close the database connection and drop all observers."""
        with self._lock:
            self._observers.clear()
            self._db.close()
