"""Disk persistence for the options snapshot.

Design
- One JSON document per profile (settings + per-page status/options).
- Atomic writes: write temp file then replace; the previous file is kept as `.bak`.
- Best-effort load: a missing or corrupt file loads as "no snapshot" so the
  host starts from defaults instead of refusing to run.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import shutil
import time
from contextlib import suppress
from pathlib import Path
from typing import Any, Protocol

_LOGGER = logging.getLogger("injector.options_persist")

SNAPSHOT_VERSION = 1


class OptionsBackend(Protocol):
    def load(self) -> dict[str, Any] | None: ...

    def save(self, snapshot: dict[str, Any]) -> None: ...


def load_snapshot(path: Path) -> dict[str, Any] | None:
    try:
        if not path.exists() or not path.is_file():
            return None
        raw = path.read_text(encoding="utf-8", errors="replace")
        obj = json.loads(raw)
    except Exception:  # noqa: BLE001
        _LOGGER.warning("options file unreadable, using defaults: %s", path)
        return None

    if not isinstance(obj, dict):
        return None
    return obj


def save_snapshot(snapshot: dict[str, Any], path: Path) -> dict[str, Any]:
    path.parent.mkdir(parents=True, exist_ok=True)

    now_ms = int(time.time() * 1000)
    payload = {**snapshot, "version": SNAPSHOT_VERSION, "updatedAt": now_ms}
    text = json.dumps(payload, ensure_ascii=True, indent=2, sort_keys=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    bak = path.with_suffix(path.suffix + ".bak")

    try:
        if path.exists() and path.is_file():
            shutil.copyfile(path, bak)
    except OSError:
        pass

    tmp.write_text(text, encoding="utf-8")
    with suppress(Exception):
        os.chmod(tmp, 0o600)
    tmp.replace(path)
    with suppress(Exception):
        os.chmod(path, 0o600)

    return {"ok": True, "path": str(path), "updatedAt": now_ms}


class JsonFileOptionsBackend:
    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def load(self) -> dict[str, Any] | None:
        return load_snapshot(self.path)

    def save(self, snapshot: dict[str, Any]) -> None:
        res = save_snapshot(snapshot, self.path)
        _LOGGER.debug("options saved path=%s updatedAt=%s", res["path"], res["updatedAt"])


class MemoryOptionsBackend:
    """Keeps the last saved snapshot in memory (embedding, tests)."""

    def __init__(self, snapshot: dict[str, Any] | None = None) -> None:
        self.snapshot = copy.deepcopy(snapshot) if snapshot is not None else None
        self.saves = 0

    def load(self) -> dict[str, Any] | None:
        return copy.deepcopy(self.snapshot) if self.snapshot is not None else None

    def save(self, snapshot: dict[str, Any]) -> None:
        self.snapshot = copy.deepcopy(snapshot)
        self.saves += 1
