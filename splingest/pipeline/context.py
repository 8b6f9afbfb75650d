"""Shared per-ingestion state and structured "current X" scoping.

Phase handlers receive an :class:`IngestionContext`. Ambient values such as
the unit being processed are set through :meth:`IngestionContext.scoped`,
which always restores the previous value, including when the body raises.
"""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, TypeVar

from loguru import logger

from splingest.ingestion.correlation_graph import CorrelationGraph, DiscoveredUnit
from splingest.storage.schemas import EntityKind, Record
from splingest.utils.config import IngestionConfig
from splingest.utils.errors import IngestionCancelled, IngestionError

T = TypeVar("T")

ProgressCallback = Callable[[str], None]


class CancellationToken:
    """Cooperative cancellation flag with an optional deadline.

    Thread-safe, so a caller on another thread may cancel a running ingestion.
    The engine polls it between units.
    """

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._deadline = time.monotonic() + timeout_seconds if timeout_seconds else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        with self._lock:
            if not self._event.is_set():
                self.reason = reason
                self._event.set()

    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def reset(self) -> None:
        with self._lock:
            self._event.clear()
            self.reason = None

    def raise_if_cancelled(self) -> None:
        """Raise :class:`IngestionCancelled` if the token has fired."""
        if self.is_cancelled():
            raise IngestionCancelled(f"Ingestion cancelled: {self.reason}")


class IngestionContext:
    """State shared by every phase of one ingestion call.

    Attributes:
        graph: Correlation graph of the document being ingested
        scope: Deduplication scope for every record written
        settings: Ingestion settings (codes, progress interval)
        current_unit: Unit whose records are being staged
        current_phase: Name of the running phase
        current_product_code: Product identifier while staging product-scoped records
    """

    SCOPED_FIELDS = frozenset({"current_unit", "current_phase", "current_product_code"})

    def __init__(
        self,
        graph: CorrelationGraph,
        scope: str,
        settings: IngestionConfig | None = None,
        *,
        progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self.graph = graph
        self.scope = scope
        self.settings = settings or IngestionConfig()
        self.progress = progress
        self.cancel_token = cancel_token or CancellationToken()

        self.current_unit: Optional[DiscoveredUnit] = None
        self.current_phase: Optional[str] = None
        self.current_product_code: Optional[str] = None

    @contextmanager
    def scoped(self, field: str, value: Any) -> Iterator[Any]:
        """Temporarily set an ambient field, restoring the previous value on exit.

        Raises:
            AttributeError: If ``field`` is not a scoped field
        """
        if field not in self.SCOPED_FIELDS:
            raise AttributeError(f"{field!r} is not a scoped context field")
        previous = getattr(self, field)
        setattr(self, field, value)
        try:
            yield value
        finally:
            setattr(self, field, previous)

    def run_scoped(self, field: str, value: Any, body: Callable[[], T]) -> T:
        """Run ``body`` with ``field`` set to ``value``."""
        with self.scoped(field, value):
            return body()

    def new_record(self, kind: EntityKind, **properties: Any) -> Record:
        """Build a record owned by the current unit.

        ``section_id`` and ``section_guid`` default to the current unit's.

        Raises:
            IngestionError: If there is no current unit or it has no server id
        """
        unit = self.current_unit
        if unit is None or unit.server_id is None:
            raise IngestionError(f"Cannot stage {kind.value} record outside a resolved unit")
        properties.setdefault("section_id", unit.server_id)
        properties.setdefault("section_guid", unit.correlation_key)
        return Record(kind=kind, scope=self.scope, properties=properties)

    def report(self, message: str) -> None:
        """Log a milestone and forward it to the progress callback."""
        logger.info(message)
        if self.progress is None:
            return
        try:
            self.progress(message)
        except Exception as exc:
            logger.warning("Progress callback failed on {!r}: {}", message, exc)

    def check_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()
