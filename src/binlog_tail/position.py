"""Resume position bookkeeping for the binlog tail."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from threading import Lock
from typing import Optional

logger = logging.getLogger(__name__)

# First event offset in a fresh binlog file (after the 4-byte magic header).
INITIAL_OFFSET = 4


@dataclass(frozen=True, order=True)
class ResumePosition:
    """Binlog file name and byte offset to resume reading after."""

    binlog_file: str = ""
    offset: int = INITIAL_OFFSET

    def __post_init__(self) -> None:
        if self.offset < 0:
            raise ValueError("offset must be non-negative")

    @classmethod
    def initial(cls) -> "ResumePosition":
        return cls()

    def to_dict(self) -> dict:
        return {"binlog_file": self.binlog_file, "offset": self.offset}

    @classmethod
    def from_dict(cls, data: dict) -> "ResumePosition":
        return cls(binlog_file=str(data["binlog_file"]), offset=int(data["offset"]))

    def __str__(self) -> str:
        return f"{self.binlog_file or '<current>'}:{self.offset}"


class PositionTracker:
    """Holds the current resume position.

    Only the dispatch thread writes. Readers (checkpoint writers, status
    probes) call :meth:`current` without taking the lock; every update swaps
    in a new immutable :class:`ResumePosition`, so a reader always sees a
    consistent pair.
    """

    def __init__(self, start: Optional[ResumePosition] = None) -> None:
        self._position = start or ResumePosition.initial()
        # binlog file the current offset was observed in
        self._offset_file = self._position.binlog_file
        self._lock = Lock()

    def current(self) -> ResumePosition:
        return self._position

    @property
    def binlog_file(self) -> str:
        return self._position.binlog_file

    @property
    def offset(self) -> int:
        return self._position.offset

    def set_segment(self, binlog_file: str) -> None:
        with self._lock:
            if binlog_file == self._position.binlog_file:
                return
            logger.debug("binlog rotated %s -> %s", self._position.binlog_file, binlog_file)
            self._position = replace(self._position, binlog_file=binlog_file)

    def advance_offset(self, offset: int) -> None:
        with self._lock:
            current = self._position
            if current.binlog_file == self._offset_file and offset < current.offset:
                raise ValueError(
                    f"offset regression in {current.binlog_file!r}: "
                    f"{offset} < {current.offset}"
                )
            self._position = replace(current, offset=offset)
            self._offset_file = current.binlog_file


__all__ = ["INITIAL_OFFSET", "PositionTracker", "ResumePosition"]
