"""Checkpoint stores and a background writer for binlog resume positions."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from threading import Lock, RLock
from typing import Callable, Dict, Optional, Protocol

from .position import ResumePosition

logger = logging.getLogger(__name__)


class CheckpointStore(Protocol):
    """Persistence backend for connector resume positions."""

    def load(self, name: str) -> Optional[ResumePosition]: ...

    def save(self, name: str, position: ResumePosition) -> None: ...

    def reset(
        self,
        name: str,
        *,
        expected: Optional[ResumePosition] = None,
        new: Optional[ResumePosition] = None,
        force: bool = False,
    ) -> None: ...


def _check_reset(
    current: Optional[ResumePosition],
    expected: Optional[ResumePosition],
    new: Optional[ResumePosition],
    force: bool,
) -> None:
    if force:
        return
    if current is None:
        if expected is not None:
            raise ValueError("resume position missing; supply force=True to reset")
        return
    if expected is None or expected != current:
        raise ValueError("unexpected resume position value")
    if new is not None and new > current:
        raise ValueError("new resume position must not exceed current value")


class InMemoryCheckpointStore:
    """Volatile checkpoint store keeping positions in-memory."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._positions: Dict[str, ResumePosition] = {}

    def load(self, name: str) -> Optional[ResumePosition]:
        with self._lock:
            return self._positions.get(name)

    def save(self, name: str, position: ResumePosition) -> None:
        with self._lock:
            current = self._positions.get(name)
            if current is None or position > current:
                self._positions[name] = position

    def reset(
        self,
        name: str,
        *,
        expected: Optional[ResumePosition] = None,
        new: Optional[ResumePosition] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            _check_reset(self._positions.get(name), expected, new, force)
            if new is None:
                self._positions.pop(name, None)
            else:
                self._positions[name] = new


class PersistentCheckpointStore:
    """Durable checkpoint store that writes positions to a JSON file atomically."""

    def __init__(self, path: Path | str, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = RLock()
        self._positions: Dict[str, ResumePosition] = {}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:  # pragma: no cover - only raised on permission issues
            logger.warning(
                "unable to create checkpoint directory %s: %s",
                self._path.parent,
                exc,
            )
        self._load_from_disk()

    def load(self, name: str) -> Optional[ResumePosition]:
        with self._lock:
            return self._positions.get(name)

    def save(self, name: str, position: ResumePosition) -> None:
        with self._lock:
            current = self._positions.get(name)
            if current is not None and position <= current:
                return
            self._positions[name] = position
            self._write_locked()

    def reset(
        self,
        name: str,
        *,
        expected: Optional[ResumePosition] = None,
        new: Optional[ResumePosition] = None,
        force: bool = False,
    ) -> None:
        with self._lock:
            current = self._positions.get(name)
            _check_reset(current, expected, new, force)
            if new is None:
                if current is None:
                    return
                self._positions.pop(name, None)
            else:
                self._positions[name] = new
            self._write_locked()

    def _load_from_disk(self) -> None:
        if not self._path.exists():
            return
        try:
            raw = self._path.read_text(encoding="utf-8")
            data = json.loads(raw) if raw else {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("failed to load checkpoint file %s: %s", self._path, exc)
            return
        if not isinstance(data, dict):
            logger.warning("checkpoint file %s has invalid format; ignoring", self._path)
            return
        positions: Dict[str, ResumePosition] = {}
        for key, value in data.items():
            if not isinstance(key, str) or not isinstance(value, dict):
                continue
            try:
                positions[key] = ResumePosition.from_dict(value)
            except (KeyError, TypeError, ValueError):
                logger.warning("skipping malformed checkpoint entry %s", key)
        with self._lock:
            self._positions = positions

    def _write_locked(self) -> None:
        payload = {name: pos.to_dict() for name, pos in self._positions.items()}
        temp_fd: Optional[int] = None
        temp_path: Optional[str] = None
        try:
            temp_fd, temp_path = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=str(self._path.parent)
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as tmp:
                temp_fd = None  # ownership transferred to file object
                json.dump(payload, tmp, sort_keys=True)
                tmp.flush()
                if self._fsync:
                    os.fsync(tmp.fileno())
            os.replace(temp_path, self._path)
            temp_path = None
        except OSError as exc:
            logger.error("failed to persist checkpoint file %s: %s", self._path, exc)
            raise
        finally:
            if temp_fd is not None:
                try:
                    os.close(temp_fd)
                except OSError:
                    pass
            if temp_path is not None:
                try:
                    os.unlink(temp_path)
                except OSError:
                    pass


class CheckpointWriter:
    """Periodically saves a connector's position from a background thread."""

    def __init__(
        self,
        name: str,
        position: Callable[[], Optional[ResumePosition]],
        store: CheckpointStore,
        *,
        interval_seconds: float = 5.0,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._name = name
        self._position = position
        self._store = store
        self._interval = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def flush(self) -> Optional[ResumePosition]:
        position = self._position()
        if position is None:
            return None
        self._store.save(self._name, position)
        return position

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run, name=f"checkpoint-{self._name}", daemon=True
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1)
            self._thread = None
        self.flush()

    def _run(self) -> None:
        while not self._stop_event.wait(self._interval):
            try:
                self.flush()
            except OSError:
                logger.exception("[%s] checkpoint save failed", self._name)


__all__ = [
    "CheckpointStore",
    "CheckpointWriter",
    "InMemoryCheckpointStore",
    "PersistentCheckpointStore",
]
