"""Classification and routing of decoded binlog records."""

from __future__ import annotations

import logging
from typing import Callable, Generic, Optional, TypeVar

from .metrics import ConnectorMetrics
from .parsers import RowEventParser
from .position import PositionTracker
from .records import BinlogRecord, PositionMarker, RowMutation, StructuralMetadata
from .table_cache import TableIdentityCache

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RowParseError(RuntimeError):
    """Raised when a row mutation cannot be turned into an output event."""

    def __init__(self, message: str, *, binlog_file: str, offset: int) -> None:
        super().__init__(message)
        self.binlog_file = binlog_file
        self.offset = offset


class EventDispatcher(Generic[T]):
    """Routes table maps, rotations and row mutations for one tracked table.

    Runs on the single stream thread: records arrive in binlog order and the
    consumer is invoked synchronously, after the position has advanced.
    """

    def __init__(
        self,
        source_table: str,
        cache: TableIdentityCache,
        tracker: PositionTracker,
        parser: RowEventParser[T],
        consumer: Callable[[T], None],
        metrics: Optional[ConnectorMetrics] = None,
    ) -> None:
        self.source_table = source_table
        self._source = source_table.lower()
        self._cache = cache
        self._tracker = tracker
        self._parser = parser
        self._consumer = consumer
        self._metrics = metrics or ConnectorMetrics()

    def reset(self) -> None:
        """Forget table ids learned from a previous connection."""
        self._cache.clear()

    def on_record(self, record: BinlogRecord) -> None:
        self._metrics.inc("records")
        if isinstance(record, StructuralMetadata):
            self._on_table_map(record)
        elif isinstance(record, PositionMarker):
            self._on_rotate(record)
        elif isinstance(record, RowMutation):
            self._on_rows(record)
        else:
            raise TypeError(f"unsupported binlog record {type(record).__name__}")

    def matches(self, record: StructuralMetadata) -> bool:
        # "schema.table" must match exactly; a bare name matches any schema
        if "." in self._source:
            return record.qualified_name.lower() == self._source
        return record.table.lower() == self._source

    def _on_table_map(self, record: StructuralMetadata) -> None:
        if not self.matches(record):
            return
        self._cache.put(record.table_id, record.qualified_name)
        self._metrics.inc("table_maps")

    def _on_rotate(self, record: PositionMarker) -> None:
        if record.segment_name is None:
            return
        self._tracker.set_segment(record.segment_name)
        self._metrics.inc("rotations")

    def _on_rows(self, record: RowMutation) -> None:
        table = self._cache.get(record.table_id)
        if table is None:
            logger.debug(
                "dropping rows for untracked table id %s at offset %s",
                record.table_id,
                record.offset,
            )
            self._metrics.inc("dropped")
            return
        self._tracker.advance_offset(record.offset)
        self._metrics.set_offset(record.offset)
        binlog_file = self._tracker.binlog_file
        try:
            event = self._parser.parse(record, table, binlog_file, record.offset)
        except Exception as exc:
            raise RowParseError(
                f"failed to parse {record.kind.value} rows for {table} "
                f"at {binlog_file}:{record.offset}: {exc}",
                binlog_file=binlog_file,
                offset=record.offset,
            ) from exc
        self._consumer(event)
        self._metrics.inc("events")


__all__ = ["EventDispatcher", "RowParseError"]
