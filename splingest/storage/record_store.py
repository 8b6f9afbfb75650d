"""Record store interface and an in-memory implementation.

The ingestion engine needs three things from persistence: a scoped lookup, a
batched insert that returns identifiers in input order, and a unit of work
owned by the caller. :class:`Neo4jManager` implements the same surface
against a live database; :class:`InMemoryRecordStore` backs dry runs and tests.
"""

from __future__ import annotations

import copy
import itertools
from collections import defaultdict
from contextlib import contextmanager
from typing import (
    Any,
    ContextManager,
    DefaultDict,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from loguru import logger

from splingest.storage.schemas import EntityKind, Record


@runtime_checkable
class RecordStore(Protocol):
    """Persistence surface used by the bulk writer and the pipeline."""

    def query(self, kind: EntityKind, filters: Mapping[str, Any]) -> List[Record]:
        """Return records of ``kind`` whose scope/properties equal ``filters``."""
        ...

    def batch_insert(self, kind: EntityKind, records: Sequence[Record]) -> List[Record]:
        """Insert ``records`` in one call; return them with ids, in input order."""
        ...

    def unit_of_work(self) -> ContextManager[None]:
        """Commit on normal exit, roll back on exception."""
        ...

    def delete_scope(self, scope: str) -> int:
        """Delete every record in ``scope``; return how many were removed."""
        ...

    def count(self, kind: EntityKind, scope: str | None = None) -> int:
        ...


def _matches(record: Record, filters: Mapping[str, Any]) -> bool:
    for key, expected in filters.items():
        actual = record.scope if key == "scope" else record.properties.get(key)
        if actual != expected:
            return False
    return True


class InMemoryRecordStore:
    """Dictionary-backed record store.

    Every ``query`` and ``batch_insert`` is appended to :attr:`calls`, which is
    how tests measure round-trips.

    Example:
        >>> store = InMemoryRecordStore()
        >>> with store.unit_of_work():
        ...     store.batch_insert(EntityKind.SECTION, records)
    """

    def __init__(self) -> None:
        self._records: DefaultDict[EntityKind, Dict[str, Record]] = defaultdict(dict)
        self._ids = itertools.count(1)
        self.calls: List[Tuple[str, EntityKind]] = []

    # -- RecordStore ----------------------------------------------------------

    def query(self, kind: EntityKind, filters: Mapping[str, Any]) -> List[Record]:
        self.calls.append(("query", kind))
        return [r.model_copy(deep=True) for r in self._records[kind].values() if _matches(r, filters)]

    def batch_insert(self, kind: EntityKind, records: Sequence[Record]) -> List[Record]:
        self.calls.append(("batch_insert", kind))
        inserted: List[Record] = []
        for record in records:
            if record.kind is not kind:
                raise ValueError(f"Cannot insert {record.kind.value} record into {kind.value} batch")
            stored = record.with_id(f"{kind.value}-{next(self._ids)}")
            self._records[kind][stored.id] = stored
            inserted.append(stored.model_copy(deep=True))
        return inserted

    @contextmanager
    def unit_of_work(self) -> Iterator[None]:
        snapshot = copy.deepcopy(self._records)
        try:
            yield
        except BaseException:
            self._records = snapshot
            logger.warning("Rolled back in-memory unit of work")
            raise

    def delete_scope(self, scope: str) -> int:
        removed = 0
        for kind, by_id in self._records.items():
            doomed = [rid for rid, r in by_id.items() if r.scope == scope]
            for rid in doomed:
                del by_id[rid]
            removed += len(doomed)
        return removed

    def count(self, kind: EntityKind, scope: str | None = None) -> int:
        return sum(1 for r in self._records[kind].values() if scope is None or r.scope == scope)

    # -- inspection -----------------------------------------------------------

    @property
    def round_trips(self) -> int:
        return len(self.calls)

    def reset_calls(self) -> None:
        self.calls.clear()

    def records(self, kind: EntityKind, scope: str | None = None) -> List[Record]:
        """Stored records of ``kind`` in insertion order."""
        return [r for r in self._records[kind].values() if scope is None or r.scope == scope]

    def get(self, kind: EntityKind, record_id: str) -> Optional[Record]:
        return self._records[kind].get(record_id)

    def snapshot_counts(self) -> Dict[str, int]:
        """Record counts per kind, omitting empty kinds."""
        return {kind.value: len(by_id) for kind, by_id in self._records.items() if by_id}

    def health_check(self) -> bool:
        return True

    def close(self) -> None:
        """Nothing to release."""
