"""Runtime configuration helpers for the binlog tail service."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

from .position import ResumePosition
from .records import RowKind


@dataclass(frozen=True)
class Settings:
    """Immutable container for service configuration."""

    mysql_host: str
    mysql_port: int
    mysql_user: str
    mysql_password: str
    client_id: int
    connector_name: str
    source_table: str
    connect_timeout_seconds: float
    max_connect_attempts: int
    keepalive_seconds: float
    row_kinds: Tuple[RowKind, ...]
    event_parser: str
    checkpoint_backend: str
    checkpoint_path: Path
    checkpoint_fsync: bool
    checkpoint_interval_seconds: float
    write_jsonl: bool
    jsonl_path: Path
    start_file: str = ""
    start_offset: Optional[int] = None
    metrics_port: int = 0
    log_level: str = "INFO"

    @property
    def start_position(self) -> Optional[ResumePosition]:
        """Explicit position from the environment, used when no checkpoint exists."""
        if not self.start_file and self.start_offset is None:
            return None
        if self.start_offset is None:
            return ResumePosition(binlog_file=self.start_file)
        return ResumePosition(binlog_file=self.start_file, offset=self.start_offset)


def _as_bool(value: Optional[str], default: bool) -> bool:
    """Convert environment strings to booleans."""
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no"}


def _coerce_choice(value: Optional[str], choices: Tuple[str, ...], default: str) -> str:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in choices:
        return normalized
    return default


def _coerce_row_kinds(value: Optional[str]) -> Tuple[RowKind, ...]:
    if not value:
        return (RowKind.INSERT,)
    kinds = []
    for entry in value.split(","):
        try:
            kind = RowKind(entry.strip().lower())
        except ValueError:
            continue
        if kind not in kinds:
            kinds.append(kind)
    return tuple(kinds) or (RowKind.INSERT,)


def _optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


def load_settings() -> Settings:
    """Load configuration from the environment (and `.env`)."""
    load_dotenv()
    return Settings(
        mysql_host=os.getenv("MYSQL_HOST", "localhost"),
        mysql_port=int(os.getenv("MYSQL_PORT", "3306")),
        mysql_user=os.getenv("MYSQL_USER", "root"),
        mysql_password=os.getenv("MYSQL_PASSWORD", ""),
        client_id=int(os.getenv("BINLOG_CLIENT_ID", "1")),
        connector_name=os.getenv("BINLOG_CONNECTOR_NAME", "binlog-tail").strip()
        or "binlog-tail",
        source_table=os.getenv("BINLOG_SOURCE_TABLE", "events").strip(),
        connect_timeout_seconds=float(
            os.getenv("BINLOG_CONNECT_TIMEOUT_SECONDS", "5.0")
        ),
        max_connect_attempts=int(os.getenv("BINLOG_MAX_CONNECT_ATTEMPTS", "5")),
        keepalive_seconds=float(os.getenv("BINLOG_KEEPALIVE_SECONDS", "5.0")),
        row_kinds=_coerce_row_kinds(os.getenv("BINLOG_ROW_KINDS")),
        event_parser=_coerce_choice(
            os.getenv("BINLOG_EVENT_PARSER"), ("rows", "outbox"), "rows"
        ),
        start_file=os.getenv("BINLOG_START_FILE", "").strip(),
        start_offset=_optional_int(os.getenv("BINLOG_START_OFFSET")),
        checkpoint_backend=_coerce_choice(
            os.getenv("CHECKPOINT_BACKEND"), ("file", "memory"), "file"
        ),
        checkpoint_path=Path(os.getenv("CHECKPOINT_PATH", "binlog_checkpoints.json")),
        checkpoint_fsync=_as_bool(os.getenv("CHECKPOINT_FSYNC"), False),
        checkpoint_interval_seconds=float(
            os.getenv("CHECKPOINT_INTERVAL_SECONDS", "5.0")
        ),
        write_jsonl=_as_bool(os.getenv("WRITE_JSONL"), True),
        jsonl_path=Path(os.getenv("JSONL_PATH", "binlog_events.jsonl")),
        metrics_port=int(os.getenv("METRICS_PORT", "0")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
