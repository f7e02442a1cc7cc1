"""Document store protocol and implementations.

Stores hold keyed documents (the portfolio) and append-only collections
(trades, valuation history, decision audit, analysis reports). Mutations
that must be atomic go through a Transaction: reads record the version of
each document they saw, and commit fails with LedgerConflict if any of those
versions moved in the meantime.
"""
import copy
import json
import logging
import os
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import pyarrow as pa
import pyarrow.parquet as pq

from coinagent.core.errors import LedgerConflict

logger = logging.getLogger(__name__)


@runtime_checkable
class Transaction(Protocol):
    """Optimistic read-modify-write unit of work."""

    def get(self, collection: str, key: str) -> dict | None:
        """Read a document and remember its version."""
        ...

    def update(self, collection: str, key: str, document: dict) -> None:
        """Stage a full replacement of a document."""
        ...

    def delete(self, collection: str, key: str) -> None:
        """Stage deletion of a document."""
        ...

    def append(self, collection: str, document: dict) -> None:
        """Stage an append to a collection."""
        ...

    def delete_where(self, collection: str, user_id: str) -> None:
        """Stage removal of every document of one user from a collection."""
        ...

    def commit(self) -> None:
        """Apply all staged writes, or raise LedgerConflict and apply none."""
        ...


@runtime_checkable
class DocumentStore(Protocol):
    """Protocol for persistence backends."""

    supports_ordering: bool

    def begin_transaction(self) -> Transaction:
        """Start a new transaction."""
        ...

    # Keyed documents
    def get(self, collection: str, key: str) -> dict | None:
        """Read a document, or None if missing."""
        ...

    def set(self, collection: str, key: str, document: dict) -> None:
        """Write a document unconditionally."""
        ...

    def delete(self, collection: str, key: str) -> bool:
        """Delete a document. Returns True if it existed."""
        ...

    # Append-only collections
    def append(self, collection: str, document: dict) -> str:
        """Append a document and return its generated id."""
        ...

    def query(
        self,
        collection: str,
        user_id: str,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict]:
        """Return documents of one user, optionally ordered by a field."""
        ...

    def delete_where(self, collection: str, user_id: str) -> int:
        """Delete all documents of one user. Returns the number removed."""
        ...

    def delete_ids(self, collection: str, ids: list[str]) -> int:
        """Delete documents by id. Returns the number removed."""
        ...


def _sort_key(value: Any) -> datetime:
    """Normalize a timestamp-like value for ordering. Missing values sort first."""
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value)
        except ValueError:
            return datetime.min
    else:
        return datetime.min

    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def sort_documents(docs: list[dict], field: str = "created_at", descending: bool = False) -> list[dict]:
    """Client-side ordering for stores that cannot order server-side."""
    return sorted(docs, key=lambda d: _sort_key(d.get(field)), reverse=descending)


def query_ordered(
    store: DocumentStore,
    collection: str,
    user_id: str,
    order_by: str = "created_at",
    descending: bool = False,
) -> list[dict]:
    """Query ordered by a field, sorting client-side when the store cannot."""
    if store.supports_ordering:
        return store.query(collection, user_id, order_by=order_by, descending=descending)
    return sort_documents(store.query(collection, user_id), order_by, descending)


class _BufferedTransaction:
    """Transaction that stages writes and hands them to the store on commit."""

    def __init__(self, store: "_VersionedStore"):
        self._store = store
        self._reads: dict[tuple[str, str], int] = {}
        self._writes: dict[tuple[str, str], dict | None] = {}
        self._appends: list[tuple[str, dict]] = []
        self._purges: list[tuple[str, str]] = []
        self._committed = False

    def get(self, collection: str, key: str) -> dict | None:
        staged = (collection, key)
        if staged in self._writes:
            doc = self._writes[staged]
            return copy.deepcopy(doc) if doc is not None else None

        version, doc = self._store._read_versioned(collection, key)
        self._reads.setdefault(staged, version)
        return doc

    def update(self, collection: str, key: str, document: dict) -> None:
        self._writes[(collection, key)] = copy.deepcopy(document)

    def delete(self, collection: str, key: str) -> None:
        self._writes[(collection, key)] = None

    def append(self, collection: str, document: dict) -> None:
        self._appends.append((collection, copy.deepcopy(document)))

    def delete_where(self, collection: str, user_id: str) -> None:
        self._purges.append((collection, user_id))

    def commit(self) -> None:
        if self._committed:
            raise RuntimeError("Transaction already committed")
        self._store._commit(self._reads, self._writes, self._appends, self._purges)
        self._committed = True


@dataclass
class _Undo:
    """What a partially applied commit changed, newest last."""

    appended: list[tuple[str, list[str]]] = field(default_factory=list)
    purged: list[tuple[str, list[dict]]] = field(default_factory=list)
    documents: list[tuple[str, str, int, dict | None]] = field(default_factory=list)


class _VersionedStore:
    """Shared commit logic. Subclasses provide versioned reads and raw writes.

    A commit is described by one record (appends, purges, document writes)
    and applied in that order, so the document version bump is the last thing
    a reader can observe. If applying fails part-way, the steps already taken
    are undone before the error propagates. Backends that can crash mid-commit
    persist the record first (``_write_journal``) and replay it on open.
    """

    supports_ordering = True

    def __init__(self):
        self._lock = threading.RLock()

    def begin_transaction(self) -> _BufferedTransaction:
        return _BufferedTransaction(self)

    def _read_versioned(self, collection: str, key: str) -> tuple[int, dict | None]:
        raise NotImplementedError

    def _write_versioned(self, collection: str, key: str, document: dict | None, version: int) -> None:
        raise NotImplementedError

    def _append_many(self, collection: str, documents: list[dict]) -> None:
        raise NotImplementedError

    def _write_journal(self, record: dict) -> None:
        pass

    def _clear_journal(self) -> None:
        pass

    @staticmethod
    def _prepare_append(document: dict) -> dict:
        doc = copy.deepcopy(document)
        doc.setdefault("id", uuid.uuid4().hex)
        doc.setdefault("created_at", datetime.now().isoformat())
        return doc

    def _commit(
        self,
        reads: dict[tuple[str, str], int],
        writes: dict[tuple[str, str], dict | None],
        appends: list[tuple[str, dict]],
        purges: list[tuple[str, str]] | None = None,
    ) -> None:
        with self._lock:
            # Validate every read before touching anything
            for (collection, key), seen_version in reads.items():
                current_version, _ = self._read_versioned(collection, key)
                if current_version != seen_version:
                    logger.debug(
                        "COMMIT: stale read detected",
                        extra={
                            "extra_data": {
                                "action": "commit_conflict",
                                "collection": collection,
                                "key": key,
                                "seen_version": seen_version,
                                "current_version": current_version,
                            }
                        },
                    )
                    raise LedgerConflict(
                        f"{collection}/{key} changed (v{seen_version} -> v{current_version})"
                    )

            record = {
                "appends": [
                    {"collection": collection, "document": self._prepare_append(document)}
                    for collection, document in appends
                ],
                "purges": [
                    {"collection": collection, "user_id": user_id}
                    for collection, user_id in purges or []
                ],
                "writes": [
                    {
                        "collection": collection,
                        "key": key,
                        "version": self._read_versioned(collection, key)[0] + 1,
                        "document": document,
                    }
                    for (collection, key), document in writes.items()
                ],
            }

            self._write_journal(record)
            undo = _Undo()
            try:
                self._apply_record(record, undo)
            except Exception as e:
                logger.error(f"Commit failed while applying ({type(e).__name__}: {e}), rolling back")
                try:
                    self._rollback(undo)
                except Exception as rollback_error:
                    logger.error(f"Rollback failed, journaled commit will be replayed on next open: {rollback_error}")
                    raise
                self._clear_journal()
                raise
            self._clear_journal()

        logger.debug(
            f"Committed {len(writes)} writes, {len(appends)} appends and {len(purges or [])} purges"
        )

    def _apply_record(self, record: dict, undo: _Undo | None = None) -> None:
        """Apply a commit record. Every step is idempotent, so replays are safe."""
        by_collection: dict[str, list[dict]] = defaultdict(list)
        for entry in record["appends"]:
            by_collection[entry["collection"]].append(entry["document"])
        for collection, documents in by_collection.items():
            if undo is not None:
                undo.appended.append((collection, [d["id"] for d in documents]))
            self._append_many(collection, documents)

        for entry in record["purges"]:
            if undo is not None:
                undo.purged.append((entry["collection"], self.query(entry["collection"], entry["user_id"])))
            self.delete_where(entry["collection"], entry["user_id"])

        for entry in record["writes"]:
            if undo is not None:
                version, previous = self._read_versioned(entry["collection"], entry["key"])
                undo.documents.append((entry["collection"], entry["key"], version, previous))
            self._write_versioned(entry["collection"], entry["key"], entry["document"], entry["version"])

    def _rollback(self, undo: _Undo) -> None:
        for collection, key, version, document in reversed(undo.documents):
            self._write_versioned(collection, key, document, version)
        for collection, documents in reversed(undo.purged):
            self._append_many(collection, documents)
        for collection, ids in reversed(undo.appended):
            self.delete_ids(collection, ids)

    # Convenience non-transactional API

    def get(self, collection: str, key: str) -> dict | None:
        return self._read_versioned(collection, key)[1]

    def set(self, collection: str, key: str, document: dict) -> None:
        with self._lock:
            version, _ = self._read_versioned(collection, key)
            self._write_versioned(collection, key, copy.deepcopy(document), version + 1)

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            version, existing = self._read_versioned(collection, key)
            if existing is None:
                return False
            self._write_versioned(collection, key, None, version + 1)
            return True

    def append(self, collection: str, document: dict) -> str:
        doc = self._prepare_append(document)
        with self._lock:
            self._append_many(collection, [doc])
        return doc["id"]


class InMemoryDocumentStore(_VersionedStore):
    """Process-local store, used for tests and dry runs."""

    def __init__(self, supports_ordering: bool = True):
        super().__init__()
        self.supports_ordering = supports_ordering
        self._documents: dict[str, dict[str, tuple[int, dict | None]]] = defaultdict(dict)
        self._collections: dict[str, list[dict]] = defaultdict(list)

    def _read_versioned(self, collection: str, key: str) -> tuple[int, dict | None]:
        version, doc = self._documents[collection].get(key, (0, None))
        return version, copy.deepcopy(doc)

    def _write_versioned(self, collection: str, key: str, document: dict | None, version: int) -> None:
        self._documents[collection][key] = (version, copy.deepcopy(document))

    def _append_many(self, collection: str, documents: list[dict]) -> None:
        self._collections[collection].extend(copy.deepcopy(documents))

    def query(
        self,
        collection: str,
        user_id: str,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict]:
        with self._lock:
            docs = [copy.deepcopy(d) for d in self._collections[collection] if d.get("user_id") == user_id]
        if order_by and self.supports_ordering:
            docs = sort_documents(docs, order_by, descending)
        return docs

    def delete_where(self, collection: str, user_id: str) -> int:
        with self._lock:
            before = len(self._collections[collection])
            self._collections[collection] = [
                d for d in self._collections[collection] if d.get("user_id") != user_id
            ]
            return before - len(self._collections[collection])

    def delete_ids(self, collection: str, ids: list[str]) -> int:
        targets = set(ids)
        with self._lock:
            before = len(self._collections[collection])
            self._collections[collection] = [
                d for d in self._collections[collection] if d.get("id") not in targets
            ]
            return before - len(self._collections[collection])


def _fsync_file(path: Path) -> None:
    with open(path, "rb+") as f:
        os.fsync(f.fileno())


class FileDocumentStore(_VersionedStore):
    """File-based store: JSON for keyed documents, Parquet for collections.

    Each commit is written to ``journal.json`` before any data file changes.
    A journal left behind by a crashed process is replayed when the store is
    opened, so a commit is either fully visible or not at all.
    """

    def __init__(self, base_path: str | Path):
        super().__init__()
        self.base_path = Path(base_path)
        self._ensure_directories()
        self._recover()

    def _ensure_directories(self) -> None:
        """Create directory structure if it doesn't exist."""
        for d in ["documents", "collections"]:
            (self.base_path / d).mkdir(parents=True, exist_ok=True)

    # =========================================================================
    # Commit journal
    # =========================================================================

    @property
    def journal_path(self) -> Path:
        return self.base_path / "journal.json"

    def _write_journal(self, record: dict) -> None:
        tmp_path = self.journal_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(record, f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.journal_path)

    def _clear_journal(self) -> None:
        self.journal_path.unlink(missing_ok=True)

    def _recover(self) -> None:
        """Roll forward a commit interrupted by a crash."""
        if not self.journal_path.exists():
            return
        with open(self.journal_path) as f:
            record = json.load(f)
        logger.warning(
            f"Replaying interrupted commit from {self.journal_path}: "
            f"{len(record['writes'])} writes, {len(record['appends'])} appends, "
            f"{len(record['purges'])} purges"
        )
        with self._lock:
            self._apply_record(record)
            self._clear_journal()

    # =========================================================================
    # Keyed Documents (JSON)
    # =========================================================================

    def _document_path(self, collection: str, key: str) -> Path:
        return self.base_path / "documents" / collection / f"{key}.json"

    def _read_versioned(self, collection: str, key: str) -> tuple[int, dict | None]:
        file_path = self._document_path(collection, key)
        if not file_path.exists():
            return 0, None
        with open(file_path) as f:
            data = json.load(f)
        return data["version"], data["document"]

    def _write_versioned(self, collection: str, key: str, document: dict | None, version: int) -> None:
        file_path = self._document_path(collection, key)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        # Deletions keep a tombstone so a later create still bumps the version
        tmp_path = file_path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump({"version": version, "document": document}, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, file_path)
        logger.debug(f"Wrote {file_path} (v{version})")

    # =========================================================================
    # Append-only Collections (Parquet, partitioned by month)
    # =========================================================================

    def _collection_dir(self, collection: str) -> Path:
        return self.base_path / "collections" / collection

    def _append_many(self, collection: str, documents: list[dict]) -> None:
        if not documents:
            return

        coll_dir = self._collection_dir(collection)
        coll_dir.mkdir(parents=True, exist_ok=True)

        # Group documents by month
        docs_by_month: dict[str, list[dict]] = defaultdict(list)
        for doc in documents:
            month_key = _sort_key(doc.get("created_at")).strftime("%Y-%m")
            if month_key == datetime.min.strftime("%Y-%m"):
                month_key = datetime.now().strftime("%Y-%m")
            docs_by_month[month_key].append(doc)

        for month_key, month_docs in docs_by_month.items():
            file_path = coll_dir / f"{month_key}.parquet"

            existing: list[dict] = []
            if file_path.exists():
                existing = self._read_parquet_docs(file_path)

            # Replayed commits may carry documents that already landed
            present = {d["id"] for d in existing}
            month_docs = [d for d in month_docs if d["id"] not in present]
            if not month_docs:
                continue

            self._write_parquet_docs(file_path, existing + month_docs)
            logger.debug(f"Appended {len(month_docs)} documents to {file_path}")

    def _write_parquet_docs(self, path: Path, docs: list[dict]) -> None:
        """Write documents to a Parquet file."""
        table = pa.table({
            "id": pa.array([d["id"] for d in docs], type=pa.string()),
            "user_id": pa.array([d.get("user_id") for d in docs], type=pa.string()),
            "created_at": pa.array([d.get("created_at") for d in docs], type=pa.string()),
            "body": pa.array([json.dumps(d) for d in docs], type=pa.string()),
        })
        tmp_path = path.with_suffix(".parquet.tmp")
        pq.write_table(table, tmp_path)
        _fsync_file(tmp_path)
        os.replace(tmp_path, path)

    def _read_parquet_docs(self, path: Path) -> list[dict]:
        """Read documents from a Parquet file."""
        table = pq.read_table(path, columns=["body"])
        return [json.loads(body) for body in table.column("body").to_pylist()]

    def _all_docs(self, collection: str) -> dict[Path, list[dict]]:
        coll_dir = self._collection_dir(collection)
        if not coll_dir.exists():
            return {}
        return {p: self._read_parquet_docs(p) for p in sorted(coll_dir.glob("*.parquet"))}

    def query(
        self,
        collection: str,
        user_id: str,
        order_by: str | None = None,
        descending: bool = False,
    ) -> list[dict]:
        with self._lock:
            docs = [
                d for month_docs in self._all_docs(collection).values()
                for d in month_docs if d.get("user_id") == user_id
            ]
        if order_by:
            docs = sort_documents(docs, order_by, descending)
        return docs

    def _rewrite_without(self, collection: str, predicate) -> int:
        removed = 0
        with self._lock:
            for path, docs in self._all_docs(collection).items():
                kept = [d for d in docs if not predicate(d)]
                if len(kept) == len(docs):
                    continue
                removed += len(docs) - len(kept)
                if kept:
                    self._write_parquet_docs(path, kept)
                else:
                    path.unlink()
        return removed

    def delete_where(self, collection: str, user_id: str) -> int:
        return self._rewrite_without(collection, lambda d: d.get("user_id") == user_id)

    def delete_ids(self, collection: str, ids: list[str]) -> int:
        targets = set(ids)
        return self._rewrite_without(collection, lambda d: d.get("id") in targets)


def create_store(backend: str, path: str) -> DocumentStore:
    """Build a store from configuration values."""
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "file":
        return FileDocumentStore(path)
    raise ValueError(f"Unknown data store backend: {backend}")
