"""Deduplicating bulk writer.

One call handles a whole batch of candidate records of a single kind with a
fixed number of store round-trips:

1. one scoped query for the records already persisted,
2. an in-memory partition by natural key,
3. at most one batched insert for the records that are new.

The returned outcomes line up with the candidates by position, so callers can
zip them against whatever they used to build the candidates.
"""

from __future__ import annotations

from typing import Dict, List, Optional, Sequence, Tuple

from loguru import logger
from pydantic import BaseModel, Field

from splingest.storage.natural_keys import natural_key, synthetic_key
from splingest.storage.record_store import RecordStore
from splingest.storage.schemas import EntityKind, Record
from splingest.utils.errors import PersistenceError


class WriteOutcome(BaseModel):
    """Result for one candidate record."""

    position: int = Field(..., ge=0, description="Index of the candidate in the input batch")
    record: Record
    is_new: bool
    natural_key: str
    duplicate_of: Optional[int] = Field(
        default=None, description="Position of the earlier candidate with the same key"
    )


class DeduplicatingBulkWriter:
    """Write candidate records without creating duplicates.

    Args:
        store: Record store to read from and write to
    """

    def __init__(self, store: RecordStore) -> None:
        self.store = store
        self.round_trips = 0

    def write(self, kind: EntityKind, scope: str, candidates: Sequence[Record]) -> List[WriteOutcome]:
        """Persist the new records among ``candidates``.

        Args:
            kind: Entity kind shared by every candidate
            scope: Deduplication scope; every candidate must carry it
            candidates: Records to write, in caller order

        Returns:
            One outcome per candidate, in the same order

        Raises:
            ValueError: If a candidate has another kind or scope
            PersistenceError: If the store query or insert fails
        """
        if not candidates:
            return []

        for candidate in candidates:
            if candidate.kind is not kind or candidate.scope != scope:
                raise ValueError(
                    f"Candidate {candidate.kind.value}/{candidate.scope} does not belong to "
                    f"batch {kind.value}/{scope}"
                )

        # Step 1: Load what this scope already holds
        existing = self._query(kind, scope)
        existing_by_key: Dict[str, Record] = {}
        for record in existing:
            key = natural_key(record)
            if key is not None:
                existing_by_key.setdefault(key, record)

        # Step 2: Partition candidates
        outcomes: List[Optional[WriteOutcome]] = [None] * len(candidates)
        pending: List[Tuple[int, str, Record]] = []
        first_position: Dict[str, int] = {}
        repeats: List[Tuple[int, str]] = []

        for position, candidate in enumerate(candidates):
            key = natural_key(candidate) or synthetic_key()
            if key in existing_by_key:
                outcomes[position] = WriteOutcome(
                    position=position, record=existing_by_key[key], is_new=False, natural_key=key
                )
            elif key in first_position:
                repeats.append((position, key))
            else:
                first_position[key] = position
                pending.append((position, key, candidate))

        # Step 3: Insert the new ones in a single batch
        if pending:
            inserted = self._insert(kind, [record for _, _, record in pending])
            if len(inserted) != len(pending):
                raise PersistenceError(
                    f"Store returned {len(inserted)} records for a batch of {len(pending)}",
                    kind=kind.value,
                )
            for (position, key, _), record in zip(pending, inserted):
                outcomes[position] = WriteOutcome(
                    position=position, record=record, is_new=True, natural_key=key
                )

        for position, key in repeats:
            first = first_position[key]
            outcomes[position] = WriteOutcome(
                position=position,
                record=outcomes[first].record,
                is_new=False,
                natural_key=key,
                duplicate_of=first,
            )

        created = len(pending)
        logger.debug(
            "Bulk write {}: {} candidates, {} existing, {} created, {} repeated",
            kind.value,
            len(candidates),
            len(candidates) - created - len(repeats),
            created,
            len(repeats),
        )
        return [outcome for outcome in outcomes if outcome is not None]

    def _query(self, kind: EntityKind, scope: str) -> List[Record]:
        self.round_trips += 1
        try:
            return self.store.query(kind, {"scope": scope})
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(f"Query for {kind.value} failed: {exc}", kind=kind.value) from exc

    def _insert(self, kind: EntityKind, records: List[Record]) -> List[Record]:
        self.round_trips += 1
        try:
            return self.store.batch_insert(kind, records)
        except PersistenceError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise PersistenceError(
                f"Batch insert of {len(records)} {kind.value} records failed: {exc}",
                kind=kind.value,
            ) from exc
