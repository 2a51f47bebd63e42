"""
Key/record persistence for small pieces of host state.

Each record is a JSON document stored under a name. Writes go to a temp file
first and are renamed into place so a crash never leaves half a document.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StateStore(Protocol):
    """Minimal record persistence used by the registry and maintenance flag."""

    def load(self, name: str, default: Any) -> Any:
        ...

    def save(self, name: str, value: Any) -> None:
        ...


class JsonStateStore:
    """StateStore backed by one JSON file per record in a directory."""

    def __init__(self, directory: str):
        self._directory = directory

    @property
    def directory(self) -> str:
        return self._directory

    def _path(self, name: str) -> str:
        return os.path.join(self._directory, f"{name}.json")

    def load(self, name: str, default: Any) -> Any:
        path = self._path(name)
        if not os.path.exists(path):
            return default
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Could not read state record %s: %s", path, e)
            return default

    def save(self, name: str, value: Any) -> None:
        os.makedirs(self._directory, exist_ok=True)
        path = self._path(name)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{name}-", suffix=".tmp", dir=self._directory
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(value, f, indent=2, sort_keys=True)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
