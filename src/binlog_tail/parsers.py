"""Row event parsers turning row mutations into downstream events."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from typing import Dict, Mapping, Optional, Protocol, Sequence, Tuple, TypeVar

from .records import RowKind, RowMutation

T_co = TypeVar("T_co", covariant=True)


class RowEventParser(Protocol[T_co]):
    """Builds the connector's output event from one accepted row mutation."""

    def parse(
        self, mutation: RowMutation, table: str, binlog_file: str, offset: int
    ) -> T_co: ...


@dataclass(frozen=True)
class RowChangeEvent:
    """Generic change envelope carrying decoded row values untouched."""

    table: str
    kind: RowKind
    rows: Tuple[Mapping[str, object], ...]
    binlog_file: str
    offset: int

    def to_dict(self) -> Dict[str, object]:
        return {
            "table": self.table,
            "kind": self.kind.value,
            "rows": [dict(row) for row in self.rows],
            "binlog_file": self.binlog_file,
            "offset": self.offset,
        }


class RowChangeEventParser:
    def parse(
        self, mutation: RowMutation, table: str, binlog_file: str, offset: int
    ) -> RowChangeEvent:
        return RowChangeEvent(
            table=table,
            kind=mutation.kind,
            rows=tuple(mutation.rows),
            binlog_file=binlog_file,
            offset=offset,
        )


@dataclass(frozen=True)
class OutboxEvent:
    """Domain event read from a transactional outbox table."""

    id: str
    event_type: str
    event_data: str
    entity_type: str
    entity_id: str
    binlog_file: str
    offset: int
    metadata: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


class OutboxEventParser:
    """Parses inserts into an outbox `events` table.

    Each inserted row becomes one :class:`OutboxEvent`; a multi-row insert
    yields them in row order.
    """

    required_columns: Sequence[str] = (
        "id",
        "event_type",
        "event_data",
        "entity_type",
        "entity_id",
    )

    def parse(
        self, mutation: RowMutation, table: str, binlog_file: str, offset: int
    ) -> Tuple[OutboxEvent, ...]:
        if mutation.kind is not RowKind.INSERT:
            raise ValueError(
                f"outbox table {table} only accepts inserts, got {mutation.kind.value}"
            )
        events = []
        for row in mutation.rows:
            values = _row_values(row)
            missing = [name for name in self.required_columns if name not in values]
            if missing:
                raise ValueError(
                    f"outbox row in {table} is missing columns: {', '.join(missing)}"
                )
            metadata = values.get("metadata")
            events.append(
                OutboxEvent(
                    id=_as_text(values["id"]),
                    event_type=_as_text(values["event_type"]),
                    event_data=_as_text(values["event_data"]),
                    entity_type=_as_text(values["entity_type"]),
                    entity_id=_as_text(values["entity_id"]),
                    metadata=None if metadata is None else _as_text(metadata),
                    binlog_file=binlog_file,
                    offset=offset,
                )
            )
        return tuple(events)


def _row_values(row: Mapping[str, object]) -> Mapping[str, object]:
    values = row.get("values")
    if isinstance(values, Mapping):
        return values
    return row


def _as_text(value: object) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8")
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return str(value)


__all__ = [
    "OutboxEvent",
    "OutboxEventParser",
    "RowChangeEvent",
    "RowChangeEventParser",
    "RowEventParser",
]
