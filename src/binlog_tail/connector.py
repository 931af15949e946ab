"""Connector facade: start/stop lifecycle around the binlog tail."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Generic,
    Iterable,
    Optional,
    TypeVar,
)

from .dispatcher import EventDispatcher
from .metrics import ConnectorMetrics
from .parsers import OutboxEventParser, RowChangeEventParser, RowEventParser
from .position import PositionTracker, ResumePosition
from .records import RecordKind, RowKind
from .supervisor import (
    DEFAULT_KEEPALIVE_SECONDS,
    ConnectionExhausted,
    ConnectionSupervisor,
    ConnectStatus,
)
from .table_cache import TableIdentityCache
from .transport import (
    BinlogConnection,
    ConnectionFactory,
    Credentials,
    mysql_connection_factory,
)

if TYPE_CHECKING:  # pragma: no cover - import-time helper only
    from .config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ConnectorState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    STOPPED = "stopped"
    FAILED = "failed"


class LifecycleError(RuntimeError):
    """Raised when start/stop is called in a state that does not allow it."""


class AlreadyStarted(LifecycleError):
    """Raised when start() is called on a connector that already ran."""


class BinlogConnector(Generic[T]):
    """Tails one table's row events out of a MySQL binlog.

    A connector instance runs once: ``start`` connects (retrying up to
    ``max_connect_attempts`` times) and spawns the stream thread that feeds
    the dispatcher; ``stop`` disconnects. Restarting after a failure means
    building a new connector from :meth:`current_position`.
    """

    def __init__(
        self,
        *,
        name: str,
        host: str,
        port: int,
        credentials: Credentials,
        server_id: int,
        source_table: str,
        parser: RowEventParser[T],
        connection_factory: ConnectionFactory = mysql_connection_factory,
        connect_timeout: float = 5.0,
        max_connect_attempts: int = 5,
        keepalive_interval: float = DEFAULT_KEEPALIVE_SECONDS,
        row_kinds: Iterable[RowKind] = (RowKind.INSERT,),
        metrics: Optional[ConnectorMetrics] = None,
        wait: Optional[Callable[[float], bool]] = None,
    ) -> None:
        self._name = name
        self._host = host
        self._port = port
        self._credentials = credentials
        self._server_id = server_id
        self.source_table = source_table
        self.parser = parser
        self._factory = connection_factory
        self._connect_timeout = connect_timeout
        self._max_connect_attempts = max_connect_attempts
        self._keepalive = keepalive_interval
        self._row_kinds = tuple(dict.fromkeys(row_kinds)) or (RowKind.INSERT,)
        self._metrics = metrics or ConnectorMetrics()
        self._wait = wait

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._state = ConnectorState.IDLE
        self._tracker = PositionTracker()
        self._cache = TableIdentityCache()
        self._supervisor: Optional[ConnectionSupervisor] = None
        self._connection: Optional[BinlogConnection] = None
        self._thread: Optional[threading.Thread] = None
        self._failure: Optional[BaseException] = None

    # ------------------------------------------------------------------ status
    def name(self) -> str:
        return self._name

    @property
    def state(self) -> ConnectorState:
        return self._state

    @property
    def failure(self) -> Optional[BaseException]:
        return self._failure

    @property
    def metrics(self) -> ConnectorMetrics:
        return self._metrics

    @property
    def table_cache(self) -> TableIdentityCache:
        return self._cache

    @property
    def record_kinds(self) -> tuple:
        return (RecordKind.TABLE_MAP, RecordKind.ROTATE) + tuple(
            kind.record_kind for kind in self._row_kinds
        )

    def current_position(self) -> ResumePosition:
        return self._tracker.current()

    def current_segment_name(self) -> str:
        return self._tracker.binlog_file

    def current_offset(self) -> int:
        return self._tracker.offset

    # --------------------------------------------------------------- lifecycle
    def start(
        self,
        resume_position: Optional[ResumePosition],
        consumer: Callable[[T], None],
    ) -> None:
        with self._lock:
            if self._state is not ConnectorState.IDLE:
                raise AlreadyStarted(
                    f"connector {self._name} cannot start from state {self._state.value}"
                )
            self._state = ConnectorState.CONNECTING
            self._tracker = PositionTracker(resume_position)
            self._cache = TableIdentityCache()
            dispatcher = EventDispatcher(
                self.source_table,
                self._cache,
                self._tracker,
                self.parser,
                consumer,
                metrics=self._metrics,
            )
            supervisor = ConnectionSupervisor(
                factory=self._factory,
                host=self._host,
                port=self._port,
                credentials=self._credentials,
                server_id=self._server_id,
                timeout=self._connect_timeout,
                max_attempts=self._max_connect_attempts,
                record_kinds=self.record_kinds,
                keepalive_interval=self._keepalive,
                stop_event=self._stop_event,
                wait=self._wait,
                metrics=self._metrics,
                name=self._name,
            )
            self._supervisor = supervisor
        logger.info(
            "[%s] starting binlog tail of %s from %s",
            self._name,
            self.source_table,
            self._tracker.current(),
        )

        try:
            result = supervisor.connect(
                self._tracker.current(),
                dispatcher.on_record,
                before_attempt=dispatcher.reset,
            )
        except Exception as exc:
            with self._lock:
                self._state = ConnectorState.FAILED
                self._failure = exc
            logger.exception("[%s] binlog connect failed unexpectedly", self._name)
            raise
        if (
            result.status is ConnectStatus.EXHAUSTED
            and not self._stop_event.is_set()
        ):
            with self._lock:
                self._state = ConnectorState.FAILED
            try:
                result.unwrap()
            except ConnectionExhausted as exc:
                self._failure = exc
                raise

        with self._lock:
            connection = result.connection
            if result.status is ConnectStatus.CANCELLED or self._stop_event.is_set():
                self._state = ConnectorState.STOPPED
                logger.info("[%s] start cancelled by stop request", self._name)
                if connection is not None:
                    supervisor.disconnect(connection)
                return
            self._connection = connection
            self._state = ConnectorState.STREAMING
            self._thread = threading.Thread(
                target=self._run_stream,
                args=(supervisor, connection),
                name=f"binlog-{self._name}",
                daemon=True,
            )
            self._thread.start()

    def _run_stream(
        self, supervisor: ConnectionSupervisor, connection: BinlogConnection
    ) -> None:
        try:
            supervisor.stream(connection)
        except Exception as exc:  # noqa: BLE001 - recorded as the failure cause
            with self._lock:
                if self._state is not ConnectorState.STREAMING:
                    return
                self._state = ConnectorState.FAILED
                self._failure = exc
                self._connection = None
            logger.exception(
                "[%s] binlog stream failed at %s", self._name, self._tracker.current()
            )
            supervisor.disconnect(connection)
            return
        with self._lock:
            if self._state is ConnectorState.STREAMING:
                self._state = ConnectorState.STOPPED

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Disconnect and move to ``STOPPED``; a no-op once stopped or failed."""
        with self._lock:
            state = self._state
            if state in (ConnectorState.STOPPED, ConnectorState.FAILED):
                return
            if state is ConnectorState.IDLE:
                raise LifecycleError(f"connector {self._name} was never started")
            self._stop_event.set()
            self._state = ConnectorState.STOPPED
            connection, self._connection = self._connection, None
            supervisor = self._supervisor
            thread = self._thread
        logger.info("[%s] stopping binlog tail at %s", self._name, self._tracker.current())
        if connection is not None and supervisor is not None:
            supervisor.disconnect(connection)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the stream thread; returns True once it has finished."""
        thread = self._thread
        if thread is None:
            return self._state is not ConnectorState.CONNECTING
        thread.join(timeout)
        return not thread.is_alive()


def build_connector(
    settings: "Settings",
    *,
    connection_factory: Optional[ConnectionFactory] = None,
    parser: Optional[RowEventParser[Any]] = None,
    metrics: Optional[ConnectorMetrics] = None,
    wait: Optional[Callable[[float], bool]] = None,
) -> BinlogConnector[Any]:
    """Construct a connector using application settings."""

    if parser is None:
        if settings.event_parser == "outbox":
            parser = OutboxEventParser()
        else:
            parser = RowChangeEventParser()

    return BinlogConnector(
        name=settings.connector_name,
        host=settings.mysql_host,
        port=settings.mysql_port,
        credentials=Credentials(
            user=settings.mysql_user, password=settings.mysql_password
        ),
        server_id=settings.client_id,
        source_table=settings.source_table,
        parser=parser,
        connection_factory=connection_factory or mysql_connection_factory,
        connect_timeout=settings.connect_timeout_seconds,
        max_connect_attempts=settings.max_connect_attempts,
        keepalive_interval=settings.keepalive_seconds,
        row_kinds=settings.row_kinds,
        metrics=metrics,
        wait=wait,
    )


__all__ = [
    "AlreadyStarted",
    "BinlogConnector",
    "ConnectorState",
    "LifecycleError",
    "build_connector",
]
