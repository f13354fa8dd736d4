"""
Async Storage Backend Module

Document store interface and an in-memory implementation, plus the
UnitOfWork used by every ledger mutation. The backing store only promises
single-document atomic writes; UnitOfWork compensates a failed multi-document
commit by restoring the snapshots it took before writing.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Dict, List, Optional, Tuple, TypeVar
import asyncio
import json
import logging

from .errors import LedgerError, PersistenceError
from .logging_config import log_action

logger = logging.getLogger("caisse_ledger.storage")

T = TypeVar("T")


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    async def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class AsyncInMemoryStorage(AsyncStorageInterface):
    """In-memory document store for tests and local runs"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        async with self._lock:
            self._table(table)[record_id] = self._copy(data)

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        async with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        async with self._lock:
            return [self._copy(r) for r in self._table(table).values()]

    async def delete(self, table: str, record_id: str) -> bool:
        async with self._lock:
            return self._table(table).pop(record_id, None) is not None

    async def exists(self, table: str, record_id: str) -> bool:
        async with self._lock:
            return record_id in self._table(table)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        async with self._lock:
            return [
                self._copy(record)
                for record in self._table(table).values()
                if all(key in record and record[key] == value for key, value in filters.items())
            ]

    async def count(self, table: str) -> int:
        async with self._lock:
            return len(self._table(table))

    async def clear_table(self, table: str) -> None:
        async with self._lock:
            self._data[table] = {}


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """
    Await a store call under ``timeout`` seconds.

    Timeouts and backend failures surface as PersistenceError; ledger errors
    raised by the callee pass through untouched.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise PersistenceError(f"Storage operation '{operation}' timed out after {timeout}s",
                               operation=operation, timeout=timeout)
    except LedgerError:
        raise
    except Exception as e:
        raise PersistenceError(f"Storage operation '{operation}' failed: {e}",
                               operation=operation) from e


class UnitOfWork:
    """
    Stages every document a mutation touches and writes them in order.

    On the first failed or timed-out write, documents already written are
    restored to their pre-commit snapshot (or deleted when they did not
    exist) and PersistenceError is raised. Nothing is written before
    ``commit``.
    """

    def __init__(self, storage: AsyncStorageInterface, timeout: float):
        self.storage = storage
        self.timeout = timeout
        self._staged: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.committed = False

    def stage(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Stage a document; staging the same key twice keeps the latest data"""
        if self.committed:
            raise RuntimeError("Unit of work already committed")
        self._staged[(table, record_id)] = data

    @property
    def staged_keys(self) -> List[Tuple[str, str]]:
        return list(self._staged.keys())

    def __len__(self) -> int:
        return len(self._staged)

    async def commit(self) -> None:
        if self.committed:
            raise RuntimeError("Unit of work already committed")

        snapshots: Dict[Tuple[str, str], Optional[Dict[str, Any]]] = {}
        for table, record_id in self._staged:
            snapshots[(table, record_id)] = await bounded(
                self.storage.load(table, record_id), self.timeout, f"snapshot {table}"
            )

        # The key being written when a failure hits is restored too: a timed-out
        # write may still have landed.
        written: List[Tuple[str, str]] = []
        try:
            for (table, record_id), data in self._staged.items():
                written.append((table, record_id))
                await bounded(self.storage.save(table, record_id, data), self.timeout,
                              f"save {table}")
        except PersistenceError as e:
            log_action(logger, "error", f"Commit failed, rolling back {len(written)} write(s)",
                       action="commit", extra={"error": e.message, "written": len(written)})
            await self._rollback(written, snapshots)
            raise

        self.committed = True

    async def _rollback(self, written: List[Tuple[str, str]],
                        snapshots: Dict[Tuple[str, str], Optional[Dict[str, Any]]]) -> None:
        for table, record_id in reversed(written):
            snapshot = snapshots[(table, record_id)]
            try:
                if snapshot is None:
                    await asyncio.wait_for(self.storage.delete(table, record_id), self.timeout)
                else:
                    await asyncio.wait_for(self.storage.save(table, record_id, snapshot), self.timeout)
            except Exception as e:
                # Left for manual reconciliation
                log_action(logger, "critical", f"Rollback of {table}:{record_id} failed: {e}",
                           action="rollback", resource=f"{table}:{record_id}")

