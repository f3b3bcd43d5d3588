import json
import logging
import os
import tempfile
from typing import Any, Dict, Optional, Protocol

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_PATH = os.path.join("data", "spotify_session.json")

PKCE_KEY = "spotify:pkce"
TOKENS_KEY = "spotify:tokens"


class KeyValueStorage(Protocol):
    """Durable client-side storage holding one JSON record per namespaced key."""

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        ...

    def save(self, key: str, record: Dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class MemoryStorage:
    """Process-local storage; used by tests and when token caching is disabled."""

    def __init__(self, initial: Optional[Dict[str, Dict[str, Any]]] = None):
        self._records: Dict[str, Dict[str, Any]] = {k: dict(v) for k, v in (initial or {}).items()}

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        record = self._records.get(key)
        return dict(record) if record is not None else None

    def save(self, key: str, record: Dict[str, Any]) -> None:
        self._records[key] = dict(record)

    def delete(self, key: str) -> None:
        self._records.pop(key, None)

    def keys(self):
        return sorted(self._records)


class JsonFileStorage:
    """All records live in a single JSON document; every write replaces it atomically."""

    def __init__(self, path: str = DEFAULT_STORAGE_PATH):
        self.path = path

    def _read_all(self) -> Dict[str, Dict[str, Any]]:
        if not os.path.exists(self.path):
            return {}

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable session storage %s: %s", self.path, e)
            return {}

        if not isinstance(data, dict):
            logger.warning("Ignoring session storage %s: top-level value is not an object", self.path)
            return {}

        return {str(k): v for k, v in data.items() if isinstance(v, dict)}

    def _write_all(self, records: Dict[str, Dict[str, Any]]) -> None:
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".spotify_session.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        return self._read_all().get(key)

    def save(self, key: str, record: Dict[str, Any]) -> None:
        records = self._read_all()
        records[key] = dict(record)
        self._write_all(records)

    def delete(self, key: str) -> None:
        records = self._read_all()
        if key not in records:
            return
        del records[key]
        self._write_all(records)
