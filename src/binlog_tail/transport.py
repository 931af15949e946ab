"""Binlog transport contract and the `python-mysql-replication` adapter.

The connector never talks to MySQL directly: it asks a connection factory for
a :class:`BinlogConnection`, tells it which record kinds to decode, and
receives already-framed records through a listener callback.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Dict, Iterable, List, Optional, Protocol, Type

import pymysql
from pymysqlreplication import BinLogStreamReader
from pymysqlreplication.event import (
    FormatDescriptionEvent,
    GtidEvent,
    HeartbeatLogEvent,
    QueryEvent,
    RotateEvent,
    XidEvent,
)
from pymysqlreplication.row_event import (
    DeleteRowsEvent,
    TableMapEvent,
    UpdateRowsEvent,
    WriteRowsEvent,
)

from .records import (
    BinlogRecord,
    PositionMarker,
    RecordKind,
    RowKind,
    RowMutation,
    StructuralMetadata,
)

logger = logging.getLogger(__name__)

RecordListener = Callable[[BinlogRecord], None]


class TransportError(RuntimeError):
    """Raised when a connection to the binlog source cannot be established."""


class StreamTerminated(RuntimeError):
    """Raised when an established binlog stream ends unexpectedly."""


@dataclass(frozen=True)
class Credentials:
    user: str
    password: str = field(default="", repr=False)


class BinlogConnection(Protocol):
    """Connection to a binlog source delivering decoded records."""

    def connect(self, timeout: float) -> None: ...

    def disconnect(self) -> None: ...

    def register_record_listener(self, listener: RecordListener) -> None: ...

    def set_resume_position(self, binlog_file: str, offset: int) -> None: ...

    def set_record_kinds(self, kinds: Iterable[RecordKind]) -> None: ...

    def set_keepalive_interval(self, seconds: float) -> None: ...

    def stream(self) -> None: ...


ConnectionFactory = Callable[[str, int, Credentials, int], BinlogConnection]


_EVENT_CLASSES: Dict[RecordKind, Type] = {
    RecordKind.TABLE_MAP: TableMapEvent,
    RecordKind.ROTATE: RotateEvent,
    RecordKind.WRITE_ROWS: WriteRowsEvent,
    RecordKind.UPDATE_ROWS: UpdateRowsEvent,
    RecordKind.DELETE_ROWS: DeleteRowsEvent,
    RecordKind.QUERY: QueryEvent,
    RecordKind.XID: XidEvent,
    RecordKind.GTID: GtidEvent,
    RecordKind.HEARTBEAT: HeartbeatLogEvent,
    RecordKind.FORMAT_DESCRIPTION: FormatDescriptionEvent,
}

_ROW_KINDS: Dict[Type, RowKind] = {
    WriteRowsEvent: RowKind.INSERT,
    UpdateRowsEvent: RowKind.UPDATE,
    DeleteRowsEvent: RowKind.DELETE,
}


def translate_event(event: object) -> Optional[BinlogRecord]:
    """Map a decoded replication event onto the connector's record types."""
    if isinstance(event, TableMapEvent):
        return StructuralMetadata(
            table_id=event.table_id, schema=event.schema, table=event.table
        )
    if isinstance(event, RotateEvent):
        return PositionMarker(segment_name=event.next_binlog or None)
    for event_class, row_kind in _ROW_KINDS.items():
        if isinstance(event, event_class):
            return RowMutation(
                table_id=event.table_id,
                offset=event.packet.log_pos,
                kind=row_kind,
                rows=tuple(event.rows),
            )
    return None


class MySQLBinlogConnection:
    """:class:`BinlogConnection` backed by :class:`BinLogStreamReader`.

    The reader reconnects on its own when the stream drops; that is refused
    here so a lost stream always ends :meth:`stream` with
    :class:`StreamTerminated`.
    """

    def __init__(
        self,
        host: str,
        port: int,
        credentials: Credentials,
        server_id: int,
        *,
        reader_factory: Callable[..., BinLogStreamReader] = BinLogStreamReader,
        connect: Callable[..., pymysql.connections.Connection] = pymysql.connect,
    ) -> None:
        self.host = host
        self.port = port
        self.server_id = server_id
        self._credentials = credentials
        self._reader_factory = reader_factory
        self._connect = connect
        self._listener: Optional[RecordListener] = None
        self._binlog_file = ""
        self._offset = 4
        self._kinds: List[RecordKind] = [
            RecordKind.TABLE_MAP,
            RecordKind.ROTATE,
            RecordKind.WRITE_ROWS,
        ]
        self._keepalive = 5.0
        self._reader: Optional[BinLogStreamReader] = None
        self._lock = Lock()
        self._closing = False
        self._stream_connections = 0

    def register_record_listener(self, listener: RecordListener) -> None:
        self._listener = listener

    def set_resume_position(self, binlog_file: str, offset: int) -> None:
        self._binlog_file = binlog_file
        self._offset = offset

    def set_record_kinds(self, kinds: Iterable[RecordKind]) -> None:
        self._kinds = list(dict.fromkeys(kinds))

    def set_keepalive_interval(self, seconds: float) -> None:
        if seconds <= 0:
            raise ValueError("keepalive interval must be positive")
        self._keepalive = seconds

    def _connection_settings(self, timeout: float) -> Dict[str, object]:
        return {
            "host": self.host,
            "port": self.port,
            "user": self._credentials.user,
            "password": self._credentials.password,
            "connect_timeout": max(1, int(round(timeout))),
            # three missed heartbeats count as a dead stream
            "read_timeout": max(1, int(round(self._keepalive * 3))),
        }

    def _open_connection(self, **kwargs):
        with self._lock:
            if self._closing:
                raise StreamTerminated("binlog connection closed")
            # the control connection queries information_schema
            if kwargs.get("db") != "information_schema":
                if self._stream_connections:
                    raise StreamTerminated(
                        f"binlog stream from {self.host}:{self.port} was lost"
                    )
                self._stream_connections += 1
        return self._connect(**kwargs)

    def connect(self, timeout: float) -> None:
        settings = self._connection_settings(timeout)
        try:
            probe = self._connect(**settings)
        except (pymysql.err.Error, OSError) as exc:
            raise TransportError(
                f"cannot reach {self.host}:{self.port}: {exc}"
            ) from exc
        probe.close()

        with self._lock:
            self._closing = False
            self._stream_connections = 0
        self._reader = self._reader_factory(
            connection_settings=settings,
            server_id=self.server_id,
            blocking=True,
            # an empty file name makes the server stream from its oldest binlog
            resume_stream=True,
            log_file=self._binlog_file,
            log_pos=self._offset,
            only_events=[_EVENT_CLASSES[kind] for kind in self._kinds],
            slave_heartbeat=self._keepalive,
            pymysql_wrapper=self._open_connection,
        )
        logger.debug(
            "binlog reader ready for %s:%s (server_id=%s, kinds=%s)",
            self.host,
            self.port,
            self.server_id,
            ",".join(kind.value for kind in self._kinds),
        )

    def stream(self) -> None:
        if self._reader is None:
            raise RuntimeError("connect() must succeed before stream()")
        if self._listener is None:
            raise RuntimeError("no record listener registered")
        reader = self._reader
        while True:
            try:
                event = reader.fetchone()
            except Exception as exc:
                if self._closing:
                    return
                if isinstance(exc, StreamTerminated):
                    raise
                raise StreamTerminated(f"binlog stream failed: {exc}") from exc
            if event is None:
                if self._closing:
                    return
                raise StreamTerminated("binlog stream ended")
            record = translate_event(event)
            if record is not None:
                self._listener(record)

    def disconnect(self) -> None:
        with self._lock:
            self._closing = True
        reader, self._reader = self._reader, None
        if reader is not None:
            reader.close()


def mysql_connection_factory(
    host: str, port: int, credentials: Credentials, server_id: int
) -> MySQLBinlogConnection:
    return MySQLBinlogConnection(host, port, credentials, server_id)


__all__ = [
    "BinlogConnection",
    "ConnectionFactory",
    "Credentials",
    "MySQLBinlogConnection",
    "RecordListener",
    "StreamTerminated",
    "TransportError",
    "mysql_connection_factory",
    "translate_event",
]
