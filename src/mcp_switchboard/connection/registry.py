"""In-process registry of connection state, one entry per server id."""

from __future__ import annotations

import threading
from collections.abc import Iterator

from mcp_switchboard.models import ConnectionState


class ConnectionRegistry:
    """Single source of truth for runtime connection status.

    Entries are immutable ConnectionState values; every write swaps the whole
    entry under the lock, so competing writers resolve last-writer-wins.
    """

    def __init__(self) -> None:
        self._entries: dict[str, ConnectionState] = {}
        self._lock = threading.Lock()

    def get(self, server_id: str) -> ConnectionState | None:
        with self._lock:
            return self._entries.get(server_id)

    def set(self, server_id: str, state: ConnectionState) -> None:
        with self._lock:
            self._entries[server_id] = state

    def replace_if(
        self,
        server_id: str,
        expected: ConnectionState,
        state: ConnectionState,
    ) -> bool:
        """Swap in *state* only if the current entry is exactly *expected*."""
        with self._lock:
            if self._entries.get(server_id) is not expected:
                return False
            self._entries[server_id] = state
            return True

    def delete(self, server_id: str) -> ConnectionState | None:
        with self._lock:
            return self._entries.pop(server_id, None)

    def clear(self) -> list[ConnectionState]:
        """Drop every entry and return what was removed."""
        with self._lock:
            removed = list(self._entries.values())
            self._entries.clear()
            return removed

    def snapshot(self) -> dict[str, ConnectionState]:
        with self._lock:
            return dict(self._entries)

    def __contains__(self, server_id: object) -> bool:
        with self._lock:
            return server_id in self._entries

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())
