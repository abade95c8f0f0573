"""JSON persistence helpers for the tables."""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any

from autohub.exceptions import PersistenceError


def read_json_object(path: str) -> dict[str, Any] | None:
    """Read a JSON object from *path*.

    Returns ``None`` when the file does not exist or is empty.
    """
    try:
        with open(path, encoding="utf-8") as fh:
            text = fh.read()
    except FileNotFoundError:
        return None
    except OSError as exc:
        raise PersistenceError(f"Cannot read {path}: {exc}", path=path) from exc

    if not text.strip():
        return None
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"Malformed JSON in {path}: {exc}", path=path) from exc
    if not isinstance(data, dict):
        raise PersistenceError(f"{path} does not contain a JSON object", path=path)
    return data


def write_json_atomic(path: str, data: dict[str, Any]) -> None:
    """Write *data* as indented JSON, replacing *path* atomically."""
    directory = os.path.dirname(os.path.abspath(path))
    try:
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".autohub-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent="\t", sort_keys=True)
                fh.write("\n")
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
    except OSError as exc:
        raise PersistenceError(f"Cannot write {path}: {exc}", path=path) from exc
