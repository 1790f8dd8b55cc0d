from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator, List, Optional, Protocol, Set, Tuple

# Redis TTL sentinels: key missing, key present without expiry
TTL_MISSING = -2
TTL_PERSISTENT = -1


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one command inside a non-atomic batch."""

    name: str
    key: str
    value: Any = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchOutcome:
    """Ordered per-command results of a batch.

    Batches are pipelined, not transactional: any subset of commands may have
    failed while the rest were applied. Callers must inspect results
    individually instead of assuming all-or-nothing.
    """

    results: List[CommandResult] = field(default_factory=list)

    def __getitem__(self, index: int) -> CommandResult:
        return self.results[index]

    def __iter__(self) -> Iterator[CommandResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    @property
    def ok(self) -> bool:
        return all(result.ok for result in self.results)

    @property
    def failed(self) -> List[CommandResult]:
        return [result for result in self.results if not result.ok]

    def all_ok(self, *indexes: int) -> bool:
        return all(self.results[i].ok for i in indexes)

    def describe_failures(self) -> List[dict]:
        return [
            {"command": result.name, "key": result.key, "error": result.error}
            for result in self.failed
        ]


class Batch:
    """Queue of store commands executed in a single round trip.

    Every queue method returns the index of the command's result in the
    ``BatchOutcome`` produced by ``execute``.
    """

    def __init__(self) -> None:
        self._commands: List[Tuple[str, Tuple[Any, ...]]] = []

    def _queue(self, name: str, *args: Any) -> int:
        self._commands.append((name, args))
        return len(self._commands) - 1

    def __len__(self) -> int:
        return len(self._commands)

    def get(self, key: str) -> int:
        return self._queue("get", key)

    def set_with_ttl(self, key: str, value: str, seconds: int) -> int:
        return self._queue("set_with_ttl", key, value, seconds)

    def delete(self, key: str) -> int:
        return self._queue("delete", key)

    def exists(self, key: str) -> int:
        return self._queue("exists", key)

    def ttl(self, key: str) -> int:
        return self._queue("ttl", key)

    def increment(self, key: str) -> int:
        return self._queue("increment", key)

    def expire(self, key: str, seconds: int) -> int:
        return self._queue("expire", key, seconds)

    def add_to_set(self, key: str, member: str) -> int:
        return self._queue("add_to_set", key, member)

    def remove_from_set(self, key: str, member: str) -> int:
        return self._queue("remove_from_set", key, member)

    def members_of(self, key: str) -> int:
        return self._queue("members_of", key)

    async def execute(self) -> BatchOutcome:
        raise NotImplementedError


class KeyValueStore(Protocol):
    """TTL-capable key-value store used by every credential manager.

    Connectivity problems and timeouts raise ``StoreUnavailableError``; a
    missing key is reported as a value (``None``, ``False``, empty set,
    ``TTL_MISSING``), never as an exception.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_ttl(self, key: str, value: str, seconds: int) -> None: ...

    async def delete(self, key: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def increment(self, key: str) -> int: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def add_to_set(self, key: str, member: str) -> int: ...

    async def remove_from_set(self, key: str, member: str) -> int: ...

    async def members_of(self, key: str) -> Set[str]: ...

    async def scan_keys(self, pattern: str, *, limit: int = 1000) -> List[str]: ...

    def batch(self) -> Batch: ...

    def is_available(self) -> bool: ...

    async def ensure_connected(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = [
    "TTL_MISSING",
    "TTL_PERSISTENT",
    "Batch",
    "BatchOutcome",
    "CommandResult",
    "KeyValueStore",
]
