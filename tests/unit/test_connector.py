import pytest

from binlog_tail.connector import (
    AlreadyStarted,
    BinlogConnector,
    ConnectorState,
    LifecycleError,
)
from binlog_tail.dispatcher import RowParseError
from binlog_tail.parsers import RowChangeEventParser
from binlog_tail.position import ResumePosition
from binlog_tail.records import (
    PositionMarker,
    RecordKind,
    RowKind,
    RowMutation,
    StructuralMetadata,
)
from binlog_tail.supervisor import ConnectionExhausted
from binlog_tail.transport import Credentials, StreamTerminated

_SCRIPT = [
    (RecordKind.FORMAT_DESCRIPTION, object()),
    (RecordKind.ROTATE, PositionMarker("seg.001")),
    (RecordKind.QUERY, object()),
    (RecordKind.TABLE_MAP, StructuralMetadata(table_id=7, schema="shop", table="orders")),
    (RecordKind.WRITE_ROWS, RowMutation(table_id=7, offset=512, rows=({"values": {"id": 1}},))),
    (RecordKind.XID, object()),
    (RecordKind.UPDATE_ROWS, RowMutation(table_id=7, offset=560, kind=RowKind.UPDATE)),
    (RecordKind.WRITE_ROWS, RowMutation(table_id=9, offset=600)),
]


def _connector(transport, *, wait=None, parser=None, max_attempts=3, row_kinds=(RowKind.INSERT,)):
    return BinlogConnector(
        name="orders-tail",
        host="db",
        port=3306,
        credentials=Credentials("repl", "secret"),
        server_id=4321,
        source_table="orders",
        parser=parser or RowChangeEventParser(),
        connection_factory=transport,
        connect_timeout=1.5,
        max_connect_attempts=max_attempts,
        row_kinds=row_kinds,
        wait=wait,
    )


@pytest.mark.unit
def test_streams_tracked_rows_and_tracks_position(make_transport):
    transport = make_transport(_SCRIPT, terminate=False)
    connector = _connector(transport)
    emitted = []

    connector.start(None, emitted.append)
    assert connector.state is ConnectorState.STREAMING
    assert transport.last.drained.wait(2)

    assert [(e.table, e.binlog_file, e.offset) for e in emitted] == [
        ("shop.orders", "seg.001", 512)
    ]
    assert connector.current_position() == ResumePosition("seg.001", 512)
    assert connector.current_segment_name() == "seg.001"
    assert connector.current_offset() == 512
    assert connector.name() == "orders-tail"
    assert transport.last.position == ("", 4)

    connector.stop()
    assert connector.state is ConnectorState.STOPPED
    assert connector.join(1)


@pytest.mark.unit
def test_unrequested_record_kinds_never_reach_dispatcher(make_transport):
    transport = make_transport(_SCRIPT, terminate=False)
    connector = _connector(transport)

    connector.start(ResumePosition("seg.000", 4), lambda _e: None)
    assert transport.last.drained.wait(2)
    connector.stop()

    connection = transport.last
    assert set(connection.kinds) == {
        RecordKind.TABLE_MAP,
        RecordKind.ROTATE,
        RecordKind.WRITE_ROWS,
    }
    assert connection.skipped == [
        RecordKind.FORMAT_DESCRIPTION,
        RecordKind.QUERY,
        RecordKind.XID,
        RecordKind.UPDATE_ROWS,
    ]
    assert connector.metrics.snapshot()["records_total"] == len(connection.delivered) == 4


@pytest.mark.unit
def test_configured_row_kinds_are_requested(make_transport):
    transport = make_transport(_SCRIPT, terminate=False)
    connector = _connector(transport, row_kinds=(RowKind.INSERT, RowKind.UPDATE))
    emitted = []

    connector.start(None, emitted.append)
    assert transport.last.drained.wait(2)
    connector.stop()

    assert [e.kind for e in emitted] == [RowKind.INSERT, RowKind.UPDATE]
    assert connector.current_offset() == 560


@pytest.mark.unit
def test_start_twice_raises_already_started(make_transport):
    transport = make_transport(terminate=False)
    connector = _connector(transport)
    connector.start(None, lambda _e: None)

    with pytest.raises(AlreadyStarted):
        connector.start(None, lambda _e: None)

    assert len(transport.connections) == 1
    connector.stop()


@pytest.mark.unit
def test_stop_is_idempotent(make_transport):
    transport = make_transport(terminate=False)
    connector = _connector(transport)
    connector.start(None, lambda _e: None)

    connector.stop()
    connector.stop()

    assert transport.last.disconnect_calls == 1
    assert connector.state is ConnectorState.STOPPED


@pytest.mark.unit
def test_stop_before_start_is_a_usage_error(make_transport):
    connector = _connector(make_transport())
    with pytest.raises(LifecycleError):
        connector.stop()
    assert connector.state is ConnectorState.IDLE


@pytest.mark.unit
def test_retry_exhaustion_fails_start(make_transport, recording_wait):
    transport = make_transport(failures=99)
    connector = _connector(transport, wait=recording_wait, max_attempts=3)

    with pytest.raises(ConnectionExhausted):
        connector.start(None, lambda _e: None)

    assert connector.state is ConnectorState.FAILED
    assert len(transport.connections) == 3
    assert recording_wait.delays == [1.5, 1.5]
    assert isinstance(connector.failure, ConnectionExhausted)


@pytest.mark.unit
def test_start_succeeds_on_last_attempt(make_transport, recording_wait):
    transport = make_transport(failures=2, terminate=False)
    connector = _connector(transport, wait=recording_wait, max_attempts=3)

    connector.start(None, lambda _e: None)

    assert connector.state is ConnectorState.STREAMING
    assert len(transport.connections) == 3
    connector.stop()


@pytest.mark.unit
def test_stop_during_backoff_aborts_start(make_transport, make_wait):
    transport = make_transport(failures=99)
    connector = _connector(transport, wait=make_wait(cancel_after=1), max_attempts=5)

    connector.start(None, lambda _e: None)

    assert connector.state is ConnectorState.STOPPED
    assert len(transport.connections) == 1


@pytest.mark.unit
def test_stream_termination_moves_to_failed(make_transport):
    transport = make_transport(_SCRIPT, terminate=True)
    connector = _connector(transport)

    connector.start(None, lambda _e: None)
    assert connector.join(2)

    assert connector.state is ConnectorState.FAILED
    assert isinstance(connector.failure, StreamTerminated)
    assert connector.current_position() == ResumePosition("seg.001", 512)
    connector.stop()
    assert connector.state is ConnectorState.FAILED


@pytest.mark.unit
def test_parse_failure_moves_to_failed(make_transport):
    class _Broken:
        def parse(self, mutation, table, binlog_file, offset):
            raise ValueError("bad row image")

    transport = make_transport(_SCRIPT, terminate=False)
    connector = _connector(transport, parser=_Broken())

    connector.start(None, lambda _e: None)
    assert connector.join(2)

    assert connector.state is ConnectorState.FAILED
    assert isinstance(connector.failure, RowParseError)
    assert transport.last.disconnect_calls == 1


@pytest.mark.unit
def test_cache_is_empty_on_each_new_connection(make_transport):
    first = make_transport(_SCRIPT, terminate=True)
    connector = _connector(first)
    connector.start(None, lambda _e: None)
    assert connector.join(2)
    assert connector.table_cache.contains(7)

    # restart from the last position with a stream that never re-announces table 7
    second = make_transport(
        [(RecordKind.WRITE_ROWS, RowMutation(table_id=7, offset=900))], terminate=False
    )
    restarted = _connector(second)
    emitted = []
    restarted.start(connector.current_position(), emitted.append)
    assert second.last.drained.wait(2)
    restarted.stop()

    assert second.last.position == ("seg.001", 512)
    assert len(restarted.table_cache) == 0
    assert emitted == []
    assert restarted.current_position() == ResumePosition("seg.001", 512)


@pytest.mark.unit
def test_unexpected_connect_error_moves_to_failed(make_transport):
    transport = make_transport()

    def refuse(timeout):
        raise RuntimeError("handshake exploded")

    def broken_factory(*args):
        connection = transport(*args)
        connection.connect = refuse
        return connection

    connector = _connector(broken_factory)

    with pytest.raises(RuntimeError, match="handshake exploded"):
        connector.start(None, lambda _event: None)

    assert connector.state is ConnectorState.FAILED
    assert isinstance(connector.failure, RuntimeError)
    connector.stop()
    with pytest.raises(AlreadyStarted):
        connector.start(None, lambda _event: None)
