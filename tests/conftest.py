"""Test session configuration and shared binlog fakes.

The project `.env` is loaded once so integration tests can pick up the
`MYSQL_*` settings without exporting them in the shell.
"""

from __future__ import annotations

import threading
from typing import List, Optional, Sequence, Tuple

import pytest
from dotenv import load_dotenv

from binlog_tail.records import BinlogRecord, RecordKind
from binlog_tail.transport import Credentials, StreamTerminated, TransportError


@pytest.fixture(scope="session", autouse=True)
def _load_dotenv_for_tests() -> None:
    # Load once per test session; no error if .env is absent.
    load_dotenv()


class FakeBinlogConnection:
    """Scripted connection honouring the requested record kinds."""

    def __init__(
        self,
        script: Sequence[Tuple[RecordKind, BinlogRecord]] = (),
        *,
        fail_connect: bool = False,
        terminate: bool = True,
    ) -> None:
        self.script = list(script)
        self.fail_connect = fail_connect
        self.terminate = terminate
        self.connect_calls: List[float] = []
        self.disconnect_calls = 0
        self.kinds: Optional[List[RecordKind]] = None
        self.position: Optional[Tuple[str, int]] = None
        self.keepalive: Optional[float] = None
        self.listener = None
        self.delivered: List[BinlogRecord] = []
        self.skipped: List[RecordKind] = []
        self.drained = threading.Event()
        self._disconnected = threading.Event()

    def connect(self, timeout: float) -> None:
        self.connect_calls.append(timeout)
        if self.fail_connect:
            raise TransportError("connection refused")

    def disconnect(self) -> None:
        self.disconnect_calls += 1
        self._disconnected.set()

    def register_record_listener(self, listener) -> None:
        self.listener = listener

    def set_resume_position(self, binlog_file: str, offset: int) -> None:
        self.position = (binlog_file, offset)

    def set_record_kinds(self, kinds) -> None:
        self.kinds = list(kinds)

    def set_keepalive_interval(self, seconds: float) -> None:
        self.keepalive = seconds

    def stream(self) -> None:
        try:
            for kind, record in self.script:
                if kind not in self.kinds:
                    self.skipped.append(kind)
                    continue
                self.delivered.append(record)
                self.listener(record)
        finally:
            self.drained.set()
        if self.terminate:
            raise StreamTerminated("script exhausted")
        self._disconnected.wait(5)


class FakeTransport:
    """Connection factory failing the first `failures` connects."""

    def __init__(
        self,
        script: Sequence[Tuple[RecordKind, BinlogRecord]] = (),
        *,
        failures: int = 0,
        terminate: bool = True,
    ) -> None:
        self.script = list(script)
        self.failures = failures
        self.terminate = terminate
        self.calls: List[Tuple[str, int, Credentials, int]] = []
        self.connections: List[FakeBinlogConnection] = []

    def __call__(
        self, host: str, port: int, credentials: Credentials, server_id: int
    ) -> FakeBinlogConnection:
        self.calls.append((host, port, credentials, server_id))
        connection = FakeBinlogConnection(
            self.script,
            fail_connect=len(self.connections) < self.failures,
            terminate=self.terminate,
        )
        self.connections.append(connection)
        return connection

    @property
    def last(self) -> FakeBinlogConnection:
        return self.connections[-1]


class RecordingWait:
    """Backoff wait recording requested delays; `cancel_after` simulates stop()."""

    def __init__(self, cancel_after: Optional[int] = None) -> None:
        self.delays: List[float] = []
        self.cancel_after = cancel_after

    def __call__(self, timeout: float) -> bool:
        self.delays.append(timeout)
        return self.cancel_after is not None and len(self.delays) >= self.cancel_after


@pytest.fixture
def recording_wait() -> RecordingWait:
    return RecordingWait()


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_wait():
    return RecordingWait
