from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, TypeVar

T = TypeVar("T")


@dataclass
class ArenaEntry(Generic[T]):
    value: T
    lock: threading.Lock = field(default_factory=threading.Lock)


class TenantArena(Generic[T]):
    """
    Tenant-indexed state with one lock per entry.

    Mutations of one tenant's state never contend with another tenant's.
    The arena lock only guards entry creation.
    """

    def __init__(self, factory: Callable[[], T]) -> None:
        self._factory = factory
        self._lock = threading.Lock()
        self._entries: Dict[str, ArenaEntry[T]] = {}

    def entry(self, key: str) -> ArenaEntry[T]:
        entry = self._entries.get(key)
        if entry is None:
            with self._lock:
                entry = self._entries.get(key)
                if entry is None:
                    entry = ArenaEntry(self._factory())
                    self._entries[key] = entry
        return entry

    def keys(self) -> list[str]:
        with self._lock:
            return sorted(self._entries.keys())

    def __contains__(self, key: str) -> bool:
        return key in self._entries
