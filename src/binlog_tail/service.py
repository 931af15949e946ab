"""Process runtime wiring the connector to a JSONL sink and checkpoints."""

from __future__ import annotations

import json
import logging
import signal
import sys
import threading
from dataclasses import asdict, is_dataclass
from typing import Any, Optional

from prometheus_client import start_http_server

from .checkpoint import (
    CheckpointStore,
    CheckpointWriter,
    InMemoryCheckpointStore,
    PersistentCheckpointStore,
)
from .config import Settings, load_settings
from .connector import BinlogConnector, ConnectorState, build_connector
from .position import ResumePosition
from .supervisor import ConnectionExhausted

logger = logging.getLogger(__name__)


def _json_default(value: object) -> object:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value)


def event_to_dict(event: Any) -> object:
    if isinstance(event, (tuple, list)):
        return [event_to_dict(item) for item in event]
    to_dict = getattr(event, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if is_dataclass(event) and not isinstance(event, type):
        return asdict(event)
    return event


def build_checkpoint_store(settings: Settings) -> CheckpointStore:
    if settings.checkpoint_backend == "file":
        return PersistentCheckpointStore(
            settings.checkpoint_path, fsync=settings.checkpoint_fsync
        )
    return InMemoryCheckpointStore()


class ServiceRuntime:
    """Runs one connector until it stops, fails or the process is interrupted."""

    def __init__(
        self,
        settings: Settings,
        *,
        connector: Optional[BinlogConnector] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
    ) -> None:
        self.settings = settings
        self.connector = connector or build_connector(settings)
        self.checkpoint_store = checkpoint_store or build_checkpoint_store(settings)
        self._checkpoints = CheckpointWriter(
            self.connector.name(),
            self.acknowledged_position,
            self.checkpoint_store,
            interval_seconds=settings.checkpoint_interval_seconds,
        )
        self._sink_lock = threading.Lock()
        self._acknowledged: Optional[ResumePosition] = None

    def acknowledged_position(self) -> Optional[ResumePosition]:
        """Position of the last event the sink finished handling, if any."""
        return self._acknowledged

    def resume_position(self) -> Optional[ResumePosition]:
        stored = self.checkpoint_store.load(self.connector.name())
        if stored is not None:
            logger.info("resuming %s from checkpoint %s", self.connector.name(), stored)
            return stored
        explicit = self.settings.start_position
        if explicit is not None:
            logger.info(
                "starting %s from configured position %s",
                self.connector.name(),
                explicit,
            )
        return explicit

    def handle_event(self, event: Any) -> None:
        payload = event_to_dict(event)
        line = json.dumps(payload, ensure_ascii=False, default=_json_default)
        if self.settings.write_jsonl:
            with self._sink_lock:
                try:
                    with self.settings.jsonl_path.open("a", encoding="utf-8") as handle:
                        handle.write(line + "\n")
                except OSError as exc:
                    logger.error("failed to write event JSONL: %s", exc)
                    raise
        logger.info("binlog event emitted: %s", line)
        # the tracker advances before the callback, so this is the event's position
        self._acknowledged = self.connector.current_position()

    def run(self) -> int:
        """Start streaming and block; returns the process exit status."""
        if self.settings.metrics_port > 0:
            start_http_server(
                self.settings.metrics_port, registry=self.connector.metrics.registry
            )
        resume = self.resume_position()
        if resume is not None:
            self._acknowledged = resume
        try:
            self.connector.start(resume, self.handle_event)
        except ConnectionExhausted:
            logger.exception("unable to connect to the binlog source")
            return 1
        if self.connector.state is ConnectorState.STOPPED:
            return 0
        self._checkpoints.start()
        try:
            while not self.connector.join(timeout=1.0):
                pass
        except KeyboardInterrupt:
            logger.info("shutdown requested (KeyboardInterrupt)")
        finally:
            self.stop()
        if self.connector.state is ConnectorState.FAILED:
            return 1
        return 0

    def stop(self) -> None:
        if self.connector.state in (ConnectorState.CONNECTING, ConnectorState.STREAMING):
            self.connector.stop()
        self._checkpoints.stop()
        logger.info(
            "%s stopped at %s (%s)",
            self.connector.name(),
            self.connector.current_position(),
            json.dumps(self.connector.metrics.snapshot(), sort_keys=True),
        )


def main() -> None:
    """Entrypoint used by both python -m and the console script hook."""
    settings = load_settings()
    if not logging.getLogger().handlers:
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        )
    runtime = ServiceRuntime(settings)
    signal.signal(signal.SIGTERM, lambda *_args: runtime.stop())
    sys.exit(runtime.run())
