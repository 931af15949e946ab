"""Decoded binlog records handed from the transport to the dispatcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional, Sequence, Union


class RecordKind(str, Enum):
    """Binlog event kinds a transport can be asked to decode.

    Only table maps, rotations and row events are translated into records;
    the other kinds let a record-kind list name what the reader skips.
    """

    TABLE_MAP = "table_map"
    ROTATE = "rotate"
    WRITE_ROWS = "write_rows"
    UPDATE_ROWS = "update_rows"
    DELETE_ROWS = "delete_rows"
    QUERY = "query"
    XID = "xid"
    GTID = "gtid"
    HEARTBEAT = "heartbeat"
    FORMAT_DESCRIPTION = "format_description"


class RowKind(str, Enum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"

    @property
    def record_kind(self) -> RecordKind:
        return ROW_RECORD_KINDS[self]


ROW_RECORD_KINDS: Mapping[RowKind, RecordKind] = {
    RowKind.INSERT: RecordKind.WRITE_ROWS,
    RowKind.UPDATE: RecordKind.UPDATE_ROWS,
    RowKind.DELETE: RecordKind.DELETE_ROWS,
}


@dataclass(frozen=True)
class StructuralMetadata:
    """Table map record binding a connection-scoped table id to a table."""

    table_id: int
    schema: str
    table: str

    @property
    def qualified_name(self) -> str:
        if not self.schema:
            return self.table
        return f"{self.schema}.{self.table}"


@dataclass(frozen=True)
class PositionMarker:
    """Rotate record announcing the binlog file that follows."""

    segment_name: Optional[str]


@dataclass(frozen=True)
class RowMutation:
    """Row event for one table; `offset` is the event's position in the file."""

    table_id: int
    offset: int
    kind: RowKind = RowKind.INSERT
    rows: Sequence[Mapping[str, object]] = field(default_factory=tuple)


BinlogRecord = Union[StructuralMetadata, PositionMarker, RowMutation]


__all__ = [
    "BinlogRecord",
    "PositionMarker",
    "ROW_RECORD_KINDS",
    "RecordKind",
    "RowKind",
    "RowMutation",
    "StructuralMetadata",
]
