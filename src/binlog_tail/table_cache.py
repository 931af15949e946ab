"""Connection-scoped table id resolution."""

from __future__ import annotations

from typing import Dict, Optional


class TableIdentityCache:
    """Maps transient table ids to qualified table names.

    Table ids are only meaningful for the connection that announced them, so
    the cache is cleared before every connection attempt and never evicts
    while a connection is live.
    """

    def __init__(self) -> None:
        self._names: Dict[int, str] = {}

    def put(self, table_id: int, qualified_name: str) -> None:
        self._names[table_id] = qualified_name

    def get(self, table_id: int) -> Optional[str]:
        return self._names.get(table_id)

    def contains(self, table_id: int) -> bool:
        return table_id in self._names

    def clear(self) -> None:
        self._names.clear()

    def __contains__(self, table_id: object) -> bool:
        return table_id in self._names

    def __len__(self) -> int:
        return len(self._names)


__all__ = ["TableIdentityCache"]
