"""
Per-contract serialization.

At most one ledger mutation is in flight per contract; different contracts
never share a lock. Idle locks are dropped once nobody holds or waits on them.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict
import asyncio


class _Entry:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class ContractLocks:
    """Registry of asyncio locks keyed by contract id"""

    def __init__(self):
        self._entries: Dict[str, _Entry] = {}

    @asynccontextmanager
    async def hold(self, contract_id: str) -> AsyncIterator[None]:
        entry = self._entries.get(contract_id)
        if entry is None:
            entry = self._entries[contract_id] = _Entry()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._entries[contract_id]

    def is_locked(self, contract_id: str) -> bool:
        entry = self._entries.get(contract_id)
        return entry is not None and entry.lock.locked()

    def __len__(self) -> int:
        return len(self._entries)
