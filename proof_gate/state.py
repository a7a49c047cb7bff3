"""Persisted key-value state shared across Proof Gate runs.

Holds what a browser session kept in local storage: recurring issue counts,
the saved build output, the claim log, the previous reality check, the last
evidence pack and recent edge console runs.

Two stores implement the `StateStore` protocol:
- MemoryStateStore: per-process, for tests and one-shot runs.
- JsonFileStateStore: one JSON file per key under a directory. Writes go to a
  temp file that is fsync'd and then renamed over the target, so a crash
  leaves either the old or the new value.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Protocol, runtime_checkable

logger = logging.getLogger("proof_gate.state")

KEY_ISSUE_COUNTS = "issue_counts"
KEY_BUILD_OUTPUT = "build_output"
KEY_CLAIM_LOG = "claim_log"
KEY_FS_CHECK = "fs_reality_check"
KEY_LAST_PACK = "last_evidence_pack"
KEY_EDGE_RUNS = "edge_console_runs"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


@runtime_checkable
class StateStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class MemoryStateStore:
    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._lock = threading.Lock()
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            if key not in self._data:
                return default
            return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)


class JsonFileStateStore:
    def __init__(self, directory: str):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key or ""):
            raise ValueError(f"invalid state key: {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str, default: Any = None) -> Any:
        p = self._path(key)
        with self._lock:
            if not p.exists():
                return default
            try:
                return json.loads(p.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                # Unreadable state is treated as absent; the next save rewrites it.
                logger.warning("state key %s unreadable (%s); using default", key, e)
                return default

    def set(self, key: str, value: Any) -> None:
        p = self._path(key)
        data = json.dumps(value, ensure_ascii=False, sort_keys=True, indent=2)
        tmp = p.with_suffix(".json.tmp")
        with self._lock:
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, p)

    def delete(self, key: str) -> None:
        p = self._path(key)
        with self._lock:
            try:
                p.unlink()
            except FileNotFoundError:
                pass
