"""Key-value stores behind the session bridge. Last write wins per key."""

import json
import re
import threading
from pathlib import Path

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9._-]+$")


class KeyValueStore:
    def get(self, key: str, default=None):
        raise NotImplementedError

    def put(self, key: str, value) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    def __init__(self):
        self.data: dict = {}
        self._lock = threading.Lock()

    def get(self, key: str, default=None):
        with self._lock:
            if key not in self.data:
                return default
            # Round-trip through JSON so callers never share mutable state.
            return json.loads(json.dumps(self.data[key]))

    def put(self, key: str, value) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self.data[key] = json.loads(encoded)

    def delete(self, key: str) -> None:
        with self._lock:
            self.data.pop(key, None)


class JsonFileStore(KeyValueStore):
    """One JSON document per key under a directory (``.inkwell/store`` by default)."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._lock = threading.Lock()

    def _path(self, key: str) -> Path:
        if not _SAFE_KEY_RE.match(key):
            raise ValueError(f"invalid store key {key!r}")
        return self.directory / f"{key}.json"

    def get(self, key: str, default=None):
        path = self._path(key)
        with self._lock:
            if not path.is_file():
                return default
            with path.open(encoding="utf-8") as f:
                return json.load(f)

    def put(self, key: str, value) -> None:
        path = self._path(key)
        data = json.dumps(value, ensure_ascii=False, indent=2)
        with self._lock:
            self.directory.mkdir(parents=True, exist_ok=True)
            tmp = path.with_suffix(".json.tmp")
            tmp.write_text(data + "\n", encoding="utf-8")
            tmp.replace(path)

    def delete(self, key: str) -> None:
        with self._lock:
            self._path(key).unlink(missing_ok=True)
