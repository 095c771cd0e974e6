"""Server config store adapters.

The file format is ``{"mcpServers": {"<id>": {...}}}``. Unknown top-level keys
and entries we fail to parse are preserved on write.

Invariants of JsonConfigStore:
  1. Writes are atomic: write to unique temp file, then os.replace().
  2. The full file dict is round-tripped -- unknown keys are preserved.
  3. Concurrent writes are safe via threading.Lock (in-process) + fcntl.flock (cross-process).
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import os
import tempfile
import threading
from pathlib import Path

from mcp_switchboard.errors import ConfigReadError, ConfigWriteError, InvalidConfigError
from mcp_switchboard.models import ServerConfig

logger = logging.getLogger(__name__)

_SERVERS_KEY = "mcpServers"


class MemoryConfigStore:
    """In-process store. Preserves insertion order like the file store does."""

    def __init__(self, servers: dict[str, ServerConfig] | None = None) -> None:
        self._servers: dict[str, ServerConfig] = dict(servers or {})
        self._lock = threading.Lock()

    def load_all(self) -> dict[str, ServerConfig]:
        with self._lock:
            return dict(self._servers)

    def upsert(self, server_id: str, config: ServerConfig) -> None:
        with self._lock:
            self._servers[server_id] = config

    def delete(self, server_id: str) -> ServerConfig | None:
        with self._lock:
            return self._servers.pop(server_id, None)


class JsonConfigStore:
    """Store backed by a JSON file on disk."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def load_all(self) -> dict[str, ServerConfig]:
        raw = read_config(self.path)
        result: dict[str, ServerConfig] = {}
        for server_id, entry in raw[_SERVERS_KEY].items():
            try:
                result[server_id] = ServerConfig.from_dict(entry)
            except InvalidConfigError as exc:
                logger.warning("Skipping server '%s' in %s: %s", server_id, self.path, exc)
        return result

    def upsert(self, server_id: str, config: ServerConfig) -> None:
        with self._lock, _file_lock(self.path):
            raw = read_config(self.path)
            raw[_SERVERS_KEY][server_id] = config.to_dict()
            _atomic_write(self.path, raw)

    def delete(self, server_id: str) -> ServerConfig | None:
        with self._lock, _file_lock(self.path):
            raw = read_config(self.path)
            removed = raw[_SERVERS_KEY].pop(server_id, None)
            if removed is None:
                return None
            _atomic_write(self.path, raw)

        try:
            return ServerConfig.from_dict(removed)
        except InvalidConfigError:
            return None


def read_config(config_path: Path | str) -> dict[str, dict]:
    """Read the full config file.

    Returns the raw dict so writes can round-trip unknown keys.
    A missing or empty file reads as ``{"mcpServers": {}}``.
    """
    path = Path(config_path)
    if not path.exists():
        return {_SERVERS_KEY: {}}

    try:
        text = path.read_text(encoding="utf-8")
        if not text.strip():
            return {_SERVERS_KEY: {}}
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ConfigReadError(
            f"Invalid JSON in {path}: {exc}. Fix the JSON syntax or delete the file to start fresh."
        ) from exc
    except PermissionError as exc:
        raise ConfigReadError(f"Permission denied reading {path}: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigReadError(f"Expected a JSON object at the top of {path}.")
    if not isinstance(data.get(_SERVERS_KEY), dict):
        data[_SERVERS_KEY] = {}
    return data


@contextlib.contextmanager
def _file_lock(path: Path):
    """Hold an inter-process lock on a sidecar ``.lock`` file."""
    lock_path = path.with_suffix(".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)

    with open(lock_path, "w") as lock_fd:
        fcntl.flock(lock_fd, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_fd, fcntl.LOCK_UN)


def _atomic_write(path: Path, data: dict[str, object]) -> None:
    """Write JSON atomically: write to unique temp file then rename."""
    path.parent.mkdir(parents=True, exist_ok=True)

    fd = None
    tmp_path: str | None = None
    try:
        fd, tmp_path = tempfile.mkstemp(
            dir=str(path.parent),
            suffix=".tmp",
            prefix=f".{path.stem}_",
        )
        content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
        os.write(fd, content.encode("utf-8"))
        os.close(fd)
        fd = None
        os.replace(tmp_path, str(path))
        tmp_path = None
    except PermissionError as exc:
        raise ConfigWriteError(f"Permission denied writing to {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigWriteError(f"Failed to write {path}: {exc}") from exc
    finally:
        if fd is not None:
            os.close(fd)
        if tmp_path is not None:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
