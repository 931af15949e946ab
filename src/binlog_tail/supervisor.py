"""Connection lifecycle for the binlog source: bounded retry and keep-alive."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from threading import Event
from typing import Callable, Iterable, Optional

from .metrics import ConnectorMetrics
from .position import ResumePosition
from .records import RecordKind
from .transport import (
    BinlogConnection,
    ConnectionFactory,
    Credentials,
    RecordListener,
    StreamTerminated,
    TransportError,
)

logger = logging.getLogger(__name__)

DEFAULT_KEEPALIVE_SECONDS = 5.0


class ConnectionExhausted(RuntimeError):
    """Raised when every allowed connection attempt has failed."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ConnectStatus(str, Enum):
    CONNECTED = "connected"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class ConnectResult:
    """Outcome of a bounded connection attempt loop."""

    status: ConnectStatus
    attempts: int
    connection: Optional[BinlogConnection] = None
    error: Optional[BaseException] = None

    def unwrap(self) -> Optional[BinlogConnection]:
        """Return the connection, ``None`` when cancelled, or raise on exhaustion."""
        if self.status is ConnectStatus.EXHAUSTED:
            raise ConnectionExhausted(
                f"binlog connection failed after {self.attempts} attempts: {self.error}",
                attempts=self.attempts,
            ) from self.error
        return self.connection


class ConnectionSupervisor:
    """Owns the physical binlog connection for one connector run.

    ``stop_event`` is shared with the connector: once set, no new attempt is
    made and a pending backoff wait returns immediately.
    """

    def __init__(
        self,
        *,
        factory: ConnectionFactory,
        host: str,
        port: int,
        credentials: Credentials,
        server_id: int,
        timeout: float,
        max_attempts: int,
        record_kinds: Iterable[RecordKind],
        keepalive_interval: float = DEFAULT_KEEPALIVE_SECONDS,
        stop_event: Optional[Event] = None,
        wait: Optional[Callable[[float], bool]] = None,
        metrics: Optional[ConnectorMetrics] = None,
        name: str = "binlog-tail",
    ) -> None:
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.name = name
        self._factory = factory
        self._host = host
        self._port = port
        self._credentials = credentials
        self._server_id = server_id
        self._timeout = timeout
        self._max_attempts = max_attempts
        self._record_kinds = list(record_kinds)
        self._keepalive = keepalive_interval
        self._stop_event = stop_event or Event()
        self._wait = wait or self._stop_event.wait
        self._metrics = metrics or ConnectorMetrics()

    def connect(
        self,
        position: ResumePosition,
        listener: RecordListener,
        before_attempt: Optional[Callable[[], None]] = None,
    ) -> ConnectResult:
        """Try to connect up to ``max_attempts`` times, waiting ``timeout`` between tries."""
        attempt = 0
        last_error: Optional[BaseException] = None
        while attempt < self._max_attempts:
            if self._stop_event.is_set():
                return ConnectResult(ConnectStatus.CANCELLED, attempt, error=last_error)
            attempt += 1
            if before_attempt is not None:
                before_attempt()
            connection = self._factory(
                self._host, self._port, self._credentials, self._server_id
            )
            connection.set_record_kinds(self._record_kinds)
            connection.set_keepalive_interval(self._keepalive)
            connection.set_resume_position(position.binlog_file, position.offset)
            connection.register_record_listener(listener)
            self._metrics.inc("connect_attempts")
            logger.debug(
                "[%s] connecting to binlog %s:%s from %s (attempt %d/%d)",
                self.name,
                self._host,
                self._port,
                position,
                attempt,
                self._max_attempts,
            )
            try:
                connection.connect(self._timeout)
            except (TransportError, TimeoutError, OSError) as exc:
                last_error = exc
                self._metrics.inc("connect_failures")
                logger.warning(
                    "[%s] binlog connection attempt %d/%d failed: %s",
                    self.name,
                    attempt,
                    self._max_attempts,
                    exc,
                )
                if attempt >= self._max_attempts:
                    break
                if self._wait(self._timeout):
                    return ConnectResult(ConnectStatus.CANCELLED, attempt, error=exc)
                continue
            if self._stop_event.is_set():
                self.disconnect(connection)
                return ConnectResult(ConnectStatus.CANCELLED, attempt)
            logger.info(
                "[%s] connected to binlog %s:%s after %d attempt(s)",
                self.name,
                self._host,
                self._port,
                attempt,
            )
            return ConnectResult(ConnectStatus.CONNECTED, attempt, connection=connection)
        logger.error("[%s] binlog connection attempts exhausted", self.name)
        return ConnectResult(ConnectStatus.EXHAUSTED, attempt, error=last_error)

    def stream(self, connection: BinlogConnection) -> None:
        """Block on the stream; returns only when it was disconnected on purpose."""
        try:
            connection.stream()
        except StreamTerminated:
            if self._stop_event.is_set():
                return
            self._metrics.inc("stream_failures")
            raise
        if not self._stop_event.is_set():
            self._metrics.inc("stream_failures")
            raise StreamTerminated("binlog stream ended without a stop request")

    def disconnect(self, connection: BinlogConnection) -> None:
        try:
            connection.disconnect()
        except Exception:  # noqa: BLE001 - shutdown is best effort
            logger.warning(
                "[%s] cannot disconnect binlog client cleanly", self.name, exc_info=True
            )


__all__ = [
    "ConnectResult",
    "ConnectStatus",
    "ConnectionExhausted",
    "ConnectionSupervisor",
    "DEFAULT_KEEPALIVE_SECONDS",
]
