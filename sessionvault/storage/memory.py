from __future__ import annotations

import fnmatch
import math
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set, Union

from sessionvault.logging import get_logger
from sessionvault.storage.errors import StoreCommandError, StoreError
from sessionvault.storage.kv import (
    TTL_MISSING,
    TTL_PERSISTENT,
    Batch,
    BatchOutcome,
    CommandResult,
)

_WRONGTYPE = "WRONGTYPE Operation against a key holding the wrong kind of value"


@dataclass
class _Entry:
    value: Union[str, Set[str]]
    expires_at: Optional[float] = None


class MemoryBatch(Batch):
    def __init__(self, store: "MemoryKeyValueStore") -> None:
        super().__init__()
        self._store = store

    async def execute(self) -> BatchOutcome:
        outcome = BatchOutcome()
        for name, args in self._commands:
            key = args[0] if args else ""
            try:
                value = self._store._apply(name, *args)
            except StoreCommandError as exc:
                outcome.results.append(
                    CommandResult(name=name, key=key, error=exc.message)
                )
                continue
            outcome.results.append(CommandResult(name=name, key=key, value=value))
        return outcome


class MemoryKeyValueStore:
    """In-process fallback for the Redis-backed store.

    Each command is atomic under a lock; a batch is a sequence of individually
    atomic commands, matching a non-transactional Redis pipeline. Semantics
    follow Redis: INCR keeps an existing TTL, removing the last set member
    deletes the key, TTL returns -2/-1 for missing/persistent keys.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data: Dict[str, _Entry] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Command implementations (synchronous, lock held by _apply)
    # ------------------------------------------------------------------

    def _live_entry(self, key: str) -> Optional[_Entry]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._data[key]
            return None
        return entry

    def _string_entry(self, key: str) -> Optional[_Entry]:
        entry = self._live_entry(key)
        if entry is not None and not isinstance(entry.value, str):
            raise StoreCommandError(_WRONGTYPE, operation="get")
        return entry

    def _set_entry(self, key: str) -> Optional[_Entry]:
        entry = self._live_entry(key)
        if entry is not None and not isinstance(entry.value, set):
            raise StoreCommandError(_WRONGTYPE, operation="smembers")
        return entry

    def _cmd_get(self, key: str) -> Optional[str]:
        entry = self._string_entry(key)
        return entry.value if entry else None  # type: ignore[return-value]

    def _cmd_set_with_ttl(self, key: str, value: str, seconds: int) -> bool:
        if int(seconds) < 1:
            raise StoreCommandError(
                "ERR invalid expire time in 'setex' command", operation="setex"
            )
        self._data[key] = _Entry(value=str(value), expires_at=self._clock() + int(seconds))
        return True

    def _cmd_delete(self, key: str) -> int:
        if self._live_entry(key) is None:
            return 0
        del self._data[key]
        return 1

    def _cmd_exists(self, key: str) -> bool:
        return self._live_entry(key) is not None

    def _cmd_ttl(self, key: str) -> int:
        entry = self._live_entry(key)
        if entry is None:
            return TTL_MISSING
        if entry.expires_at is None:
            return TTL_PERSISTENT
        return max(0, math.ceil(entry.expires_at - self._clock()))

    def _cmd_increment(self, key: str) -> int:
        entry = self._string_entry(key)
        if entry is None:
            self._data[key] = _Entry(value="1")
            return 1
        try:
            current = int(entry.value)  # type: ignore[arg-type]
        except ValueError as exc:
            raise StoreCommandError(
                "ERR value is not an integer or out of range", operation="incr"
            ) from exc
        entry.value = str(current + 1)
        return current + 1

    def _cmd_expire(self, key: str, seconds: int) -> bool:
        entry = self._live_entry(key)
        if entry is None:
            return False
        entry.expires_at = self._clock() + int(seconds)
        return True

    def _cmd_add_to_set(self, key: str, member: str) -> int:
        entry = self._set_entry(key)
        if entry is None:
            self._data[key] = _Entry(value={member})
            return 1
        members: Set[str] = entry.value  # type: ignore[assignment]
        if member in members:
            return 0
        members.add(member)
        return 1

    def _cmd_remove_from_set(self, key: str, member: str) -> int:
        entry = self._set_entry(key)
        if entry is None:
            return 0
        members: Set[str] = entry.value  # type: ignore[assignment]
        if member not in members:
            return 0
        members.discard(member)
        if not members:
            del self._data[key]
        return 1

    def _cmd_members_of(self, key: str) -> Set[str]:
        entry = self._set_entry(key)
        if entry is None:
            return set()
        return set(entry.value)  # type: ignore[arg-type]

    def _apply(self, name: str, *args: Any) -> Any:
        handler = getattr(self, f"_cmd_{name}", None)
        if handler is None:
            raise StoreError(f"unknown command {name}", operation=name)
        with self._lock:
            return handler(*args)

    # ------------------------------------------------------------------
    # KeyValueStore interface
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Optional[str]:
        return self._apply("get", key)

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None:
        self._apply("set_with_ttl", key, value, seconds)

    async def delete(self, key: str) -> int:
        return self._apply("delete", key)

    async def exists(self, key: str) -> bool:
        return self._apply("exists", key)

    async def ttl(self, key: str) -> int:
        return self._apply("ttl", key)

    async def increment(self, key: str) -> int:
        return self._apply("increment", key)

    async def expire(self, key: str, seconds: int) -> bool:
        return self._apply("expire", key, seconds)

    async def add_to_set(self, key: str, member: str) -> int:
        return self._apply("add_to_set", key, member)

    async def remove_from_set(self, key: str, member: str) -> int:
        return self._apply("remove_from_set", key, member)

    async def members_of(self, key: str) -> Set[str]:
        return self._apply("members_of", key)

    async def scan_keys(self, pattern: str, *, limit: int = 1000) -> List[str]:
        with self._lock:
            keys = [key for key in list(self._data) if self._live_entry(key) is not None]
        return [key for key in keys if fnmatch.fnmatchcase(key, pattern)][:limit]

    def batch(self) -> MemoryBatch:
        return MemoryBatch(self)

    def is_available(self) -> bool:
        return True

    async def ensure_connected(self) -> bool:
        return True

    def verify_connection(self) -> None:
        return None

    async def close(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryKeyValueStore", "MemoryBatch"]
