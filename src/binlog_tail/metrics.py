"""Prometheus counters describing a connector's progress."""

from __future__ import annotations

from collections import defaultdict
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge


class ConnectorMetrics:
    """Wraps Prometheus counters and mirrors them in a plain snapshot dict."""

    def __init__(
        self,
        namespace: str = "binlog_tail",
        registry: Optional[CollectorRegistry] = None,
    ) -> None:
        self.registry = registry or CollectorRegistry()
        self._counters: Dict[str, Counter] = {}
        for key, documentation in (
            ("records", "Binlog records dispatched"),
            ("events", "Row events emitted to the consumer"),
            ("dropped", "Row events dropped for untracked tables"),
            ("table_maps", "Table map records cached"),
            ("rotations", "Binlog rotations observed"),
            ("connect_attempts", "Binlog connection attempts"),
            ("connect_failures", "Failed binlog connection attempts"),
            ("stream_failures", "Binlog streams terminated unexpectedly"),
        ):
            self._counters[key] = Counter(
                f"{namespace}_{key}", documentation, registry=self.registry
            )
        self._offset = Gauge(
            f"{namespace}_offset",
            "Current binlog offset",
            registry=self.registry,
        )
        self._snapshot: Dict[str, float] = defaultdict(float)

    def inc(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        self._counters[name].inc(amount)
        self._snapshot[f"{name}_total"] += amount

    def set_offset(self, offset: int) -> None:
        self._offset.set(offset)
        self._snapshot["offset"] = offset

    def snapshot(self) -> Dict[str, float]:
        return dict(self._snapshot)


__all__ = ["ConnectorMetrics"]
