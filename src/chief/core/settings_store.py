"""
Host settings adapters.

The core never owns a persistence engine; it only calls ``get(key)`` / ``set(key, value)`` on
whatever the host provides.  Two adapters ship with the package: an in-memory one for tests and a
JSON file for the CLI and the API server.
"""

import json
import logging
import threading
from pathlib import Path
from typing import (
    Any,
    Dict,
    Protocol,
)

logger = logging.getLogger(__name__)


class HostSettings(Protocol):
    """The two-method contract the core expects from the host."""

    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...


class InMemorySettings:
    """Dict-backed settings; values are stored as given."""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._values: Dict[str, Any] = dict(initial or {})
        self.writes: list[str] = []

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value
        self.writes.append(key)


class JsonFileSettings:
    """
    Settings persisted to a single JSON document on disk.

    The whole document is rewritten on every ``set``.  A corrupt or missing file is treated as an
    empty store so a damaged settings file never prevents startup.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._values: Dict[str, Any] = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable settings file %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring settings file %s: top level is not an object", self._path)
            return {}
        return data

    def get(self, key: str) -> Any:
        return self._values.get(key)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8")
            tmp_path.replace(self._path)
        logger.debug("Persisted settings key '%s' to %s", key, self._path)
