"""Append-only log type for subscription child records.

WHAT:
    `AppendOnlyLog` wraps an ORM collection (webhook events, renewal attempts,
    credits, plan changes) and exposes only append, keyed membership,
    iteration and length.

WHY:
    These logs are the audit trail and, for webhook events, the idempotency
    record. Removing or rewriting an entry would let a replayed event be
    processed twice, so the type offers no way to do it. The unique
    constraints on the tables back this at the database level.

REFERENCES:
    - pharmabill/models.py (Subscription.webhook_log and friends)
    - pharmabill/services/billing/transitions.py
"""

from typing import Any, Callable, Generic, Hashable, Iterator, List, Optional, TypeVar

from .exceptions import DuplicateLogEntryError

T = TypeVar("T")


class AppendOnlyLog(Generic[T]):
    """Append-only view over a list-like collection.

    Args:
        entries: Backing collection (usually an ORM relationship list)
        key: Optional dedup key extractor; entries whose key is None are never deduplicated
        name: Log name used in error messages
    """

    def __init__(self, entries: List[T], key: Optional[Callable[[T], Any]] = None, name: str = "log"):
        self._entries = entries
        self._key = key
        self.name = name

    def append(self, entry: T) -> T:
        if self._key is not None:
            entry_key = self._key(entry)
            if entry_key is not None and entry_key in self:
                raise DuplicateLogEntryError(self.name, entry_key)
        self._entries.append(entry)
        return entry

    def __contains__(self, entry_key: Hashable) -> bool:
        if self._key is None or entry_key is None:
            return False
        return any(self._key(existing) == entry_key for existing in self._entries)

    def __iter__(self) -> Iterator[T]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def last(self) -> Optional[T]:
        return self._entries[-1] if self._entries else None
