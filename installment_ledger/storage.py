"""
Storage Backend Module

Provides the abstract storage interface and implementations for in-memory
(testing), SQLite (single node persistence) and MongoDB (document store).
Monetary values are stored as Decimal strings by the JSON backends and as
Decimal128 by MongoDB; every backend loads them back as strings.

Besides plain CRUD, each backend answers two questions the ledger relies on:
whether a multi-document transaction is available right now, and how to apply
a guarded increment to a numeric field as a single conditional update.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from bson.decimal128 import Decimal128
from pymongo import MongoClient, ReturnDocument


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _json_normalize(value: Any) -> Any:
    """Bring a value into the shape a JSON backend stores it in"""
    return json.loads(json.dumps(value, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @abstractmethod
    def increment(
        self,
        table: str,
        record_id: str,
        field: str,
        delta: Decimal,
        guard_gte: Optional[Decimal] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Add delta to a numeric field as one conditional update.

        When guard_gte is given the update only applies if the current value is
        >= guard_gte. Returns the updated record, or None when the record is
        missing or the guard refused the update.
        """
        pass

    @abstractmethod
    def save_if_version(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: int
    ) -> bool:
        """Replace a record only if its stored 'version' equals expected_version"""
        pass

    @abstractmethod
    def update_fields(
        self,
        table: str,
        record_id: str,
        fields: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """
        Set the given top-level fields in place, leaving every other field as stored.

        Returns the updated record, or None when the record is missing.
        """
        pass

    def supports_atomic_multi_write(self) -> bool:
        """Whether a multi-document transaction is available right now"""
        return False

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Transactions are off by default so the compensating path gets exercised;
    pass supports_transactions=True to get snapshot based transactions that
    hold the storage lock until commit or rollback.
    """

    def __init__(self, supports_transactions: bool = False):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._supports_transactions = supports_transactions
        self._tx_depth = 0
        self._snapshot: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            # Copy through JSON to prevent external mutation
            self._data[table][record_id] = _json_normalize(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [json.loads(json.dumps(record)) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        filters = _json_normalize(filters)
        with self._lock:
            self._ensure_table(table)
            return [
                json.loads(json.dumps(record))
                for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def increment(self, table, record_id, field, delta, guard_gte=None):
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return None
            current = Decimal(str(record.get(field, "0")))
            if guard_gte is not None and current < guard_gte:
                return None
            record[field] = str(current + delta)
            return json.loads(json.dumps(record))

    def save_if_version(self, table, record_id, data, expected_version):
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or record.get('version') != expected_version:
                return False
            self._data[table][record_id] = _json_normalize(data)
            return True

    def update_fields(self, table, record_id, fields):
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None:
                return None
            record.update(_json_normalize(fields))
            return json.loads(json.dumps(record))

    def supports_atomic_multi_write(self) -> bool:
        return self._supports_transactions

    def begin_transaction(self) -> None:
        """Snapshot the data and hold the lock until commit or rollback"""
        if not self._supports_transactions:
            return
        self._lock.acquire()
        if self._tx_depth == 0:
            self._snapshot = json.loads(json.dumps(self._data))
        self._tx_depth += 1

    def commit(self) -> None:
        if not self._supports_transactions or self._tx_depth == 0:
            return
        self._tx_depth -= 1
        if self._tx_depth == 0:
            self._snapshot = None
        self._lock.release()

    def rollback(self) -> None:
        if not self._supports_transactions or self._tx_depth == 0:
            return
        self._tx_depth -= 1
        if self._tx_depth == 0 and self._snapshot is not None:
            self._data = self._snapshot
            self._snapshot = None
        self._lock.release()

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:", timeout: float = 5.0):
        self.db_path = str(db_path)
        # Legacy transaction control so BEGIN IMMEDIATE can be issued explicitly
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED',
                                           timeout=timeout)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tx_depth = 0
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def _in_transaction(self) -> bool:
        return self._tx_depth > 0

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
                return
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            # DDL inside a transaction may still be rolled back
            if not self._in_transaction:
                self._connection.commit()
                self._tables.add(table)

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        filters = _json_normalize(filters)
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def increment(self, table, record_id, field, delta, guard_gte=None):
        """
        Guarded increment under the database write lock.

        Outside a transaction this takes BEGIN IMMEDIATE so no other writer can
        interleave between the check and the update.
        """
        with self._lock:
            self._ensure_table(table)
            own_transaction = not self._in_transaction
            if own_transaction:
                self._connection.execute("BEGIN IMMEDIATE")
            try:
                cursor = self._connection.execute(f"""
                    SELECT data FROM {table} WHERE id = ?
                """, (record_id,))
                row = cursor.fetchone()
                result = None
                if row is not None:
                    record = json.loads(row['data'])
                    current = Decimal(str(record.get(field, "0")))
                    if guard_gte is None or current >= guard_gte:
                        record[field] = str(current + delta)
                        self._connection.execute(f"""
                            UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?
                        """, (json.dumps(record), datetime.now(timezone.utc).isoformat(), record_id))
                        result = record
                if own_transaction:
                    self._connection.commit()
                return result
            except Exception:
                if own_transaction:
                    self._connection.rollback()
                raise

    def save_if_version(self, table, record_id, data, expected_version):
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = ?, updated_at = ?
                WHERE id = ? AND json_extract(data, '$.version') = ?
            """, (json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(),
                  record_id, expected_version))
            self._maybe_commit()
            return cursor.rowcount == 1

    def update_fields(self, table, record_id, fields):
        """Single UPDATE with json_set, so concurrent increments are not overwritten"""
        if not fields:
            return self.load(table, record_id)
        with self._lock:
            self._ensure_table(table)
            paths = ", ".join("?, json(?)" for _ in fields)
            params: List[Any] = []
            for key, value in fields.items():
                params.extend([f'$."{key}"', json.dumps(value, default=str)])
            cursor = self._connection.execute(f"""
                UPDATE {table} SET data = json_set(data, {paths}), updated_at = ?
                WHERE id = ?
            """, (*params, datetime.now(timezone.utc).isoformat(), record_id))
            self._maybe_commit()
            if cursor.rowcount == 0:
                return None
            return self.load(table, record_id)

    def supports_atomic_multi_write(self) -> bool:
        return True

    def begin_transaction(self) -> None:
        """Start a write transaction; the storage lock is held until it ends"""
        self._lock.acquire()
        try:
            if self._tx_depth == 0 and not self._connection.in_transaction:
                self._connection.execute("BEGIN IMMEDIATE")
        except Exception:
            self._lock.release()
            raise
        self._tx_depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._tx_depth == 0:
                return
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._connection.commit()
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._tx_depth == 0:
                return
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._connection.rollback()
            self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def _to_bson(value: Any) -> Any:
    """Encode Decimals as Decimal128 so $inc and $gte work on them"""
    if isinstance(value, Decimal):
        return Decimal128(value)
    if isinstance(value, dict):
        return {k: _to_bson(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_to_bson(v) for v in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _from_bson(value: Any) -> Any:
    """Decode a document into the shape the JSON backends return"""
    if isinstance(value, Decimal128):
        return str(value.to_decimal())
    if isinstance(value, dict):
        return {k: _from_bson(v) for k, v in value.items() if k != "_id"}
    if isinstance(value, list):
        return [_from_bson(v) for v in value]
    return value


class MongoStorage(StorageInterface):
    """
    MongoDB storage backend.

    Tables map to collections and record ids to _id. Multi-document
    transactions only exist on replica sets and sharded clusters, so the
    topology is checked every time supports_atomic_multi_write() is asked.
    The active session is per thread.
    """

    def __init__(
        self,
        uri: Optional[str] = None,
        database: str = "installment_ledger",
        client: Optional[MongoClient] = None
    ):
        self._owns_client = client is None
        self._client = client if client is not None else MongoClient(uri)
        self._db = self._client[database]
        self._local = threading.local()

    @property
    def _session(self):
        return getattr(self._local, "session", None)

    def _collection(self, table: str):
        return self._db[table]

    def _document(self, record_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        document = _to_bson(dict(data))
        document["_id"] = record_id
        return document

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        self._collection(table).replace_one(
            {"_id": record_id}, self._document(record_id, data),
            upsert=True, session=self._session
        )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        document = self._collection(table).find_one({"_id": record_id}, session=self._session)
        if document is None:
            return None
        return _from_bson(document)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        cursor = self._collection(table).find({}, session=self._session).sort("created_at", 1)
        return [_from_bson(document) for document in cursor]

    def delete(self, table: str, record_id: str) -> bool:
        result = self._collection(table).delete_one({"_id": record_id}, session=self._session)
        return result.deleted_count > 0

    def exists(self, table: str, record_id: str) -> bool:
        return self._collection(table).count_documents(
            {"_id": record_id}, limit=1, session=self._session
        ) > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        cursor = self._collection(table).find(_to_bson(dict(filters)), session=self._session)
        return [_from_bson(document) for document in cursor]

    def count(self, table: str) -> int:
        return self._collection(table).count_documents({}, session=self._session)

    def clear_table(self, table: str) -> None:
        self._collection(table).delete_many({}, session=self._session)

    def increment(self, table, record_id, field, delta, guard_gte=None):
        query: Dict[str, Any] = {"_id": record_id}
        if guard_gte is not None:
            query[field] = {"$gte": Decimal128(guard_gte)}
        document = self._collection(table).find_one_and_update(
            query,
            {"$inc": {field: Decimal128(delta)}},
            return_document=ReturnDocument.AFTER,
            session=self._session
        )
        if document is None:
            return None
        return _from_bson(document)

    def save_if_version(self, table, record_id, data, expected_version):
        result = self._collection(table).replace_one(
            {"_id": record_id, "version": expected_version},
            self._document(record_id, data),
            session=self._session
        )
        return result.matched_count == 1

    def update_fields(self, table, record_id, fields):
        document = self._collection(table).find_one_and_update(
            {"_id": record_id},
            {"$set": _to_bson(dict(fields))},
            return_document=ReturnDocument.AFTER,
            session=self._session
        )
        if document is None:
            return None
        return _from_bson(document)

    def supports_atomic_multi_write(self) -> bool:
        """Replica set members report setName; mongos routers report isdbgrid"""
        hello = self._client.admin.command("hello")
        return bool(hello.get("setName")) or hello.get("msg") == "isdbgrid"

    def begin_transaction(self) -> None:
        if self._session is not None:
            return
        session = self._client.start_session()
        session.start_transaction()
        self._local.session = session

    def commit(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            session.commit_transaction()
        finally:
            session.end_session()
            self._local.session = None

    def rollback(self) -> None:
        session = self._session
        if session is None:
            return
        try:
            session.abort_transaction()
        finally:
            session.end_session()
            self._local.session = None

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def create_storage(database_url: str, mongo_database: str = "installment_ledger") -> StorageInterface:
    """
    Build a storage backend from a URL.

    memory://              in-memory, no transactions
    sqlite:///path/to.db   SQLite file (sqlite:// alone is an in-memory database)
    mongodb://...          MongoDB, also mongodb+srv://
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("mongodb://", "mongodb+srv://")):
        return MongoStorage(database_url, database=mongo_database)
    raise ValueError(f"Unsupported database URL: {database_url}")
