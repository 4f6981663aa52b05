"""JSON file helpers shared by the session store, audit log and deliverable writers."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any


def dump_json(payload: Any) -> str:
    """Render JSON using deterministic formatting."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def atomic_write_text(path: Path, text: str) -> None:
    """Write `text` so that `path` always holds either the old or the new content.

    Data goes to ``<path>.tmp`` first and is fsynced, then renamed over the final
    path. A crash before the rename leaves the previous document untouched.
    """

    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        handle.write(text)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)


def atomic_write_json(path: Path, payload: Any) -> None:
    atomic_write_text(path, dump_json(payload) + "\n")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def load_json_or_none(path: Path) -> dict[str, Any] | None:
    """Load a JSON object, returning None when the file is absent."""

    if not path.exists():
        return None
    return load_json(path)
