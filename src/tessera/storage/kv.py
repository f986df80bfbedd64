"""Durable key-value map: one YAML document per key, written atomically."""

import base64
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

logger = logging.getLogger(__name__)

_SUFFIX = ".yaml"


class StoreError(Exception):
    """Raised when a record cannot be read from or written to durable storage."""


class RecordError(StoreError):
    """Raised when a stored record does not have the expected shape."""


class RecordExists(StoreError):
    """Raised by a conditional create when the key is already present."""


def write_yaml(path: Path, data: dict[str, Any]) -> None:
    """
    Atomically write a dict to a YAML file.

    Uses a temp-file + os.replace so a crash mid-write never leaves a
    half-written file.
    """
    tmp = path.with_name(f".{path.name}.{threading.get_ident()}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp, "w", encoding="utf-8") as f:
            yaml.safe_dump(
                data,
                f,
                default_flow_style=False,
                allow_unicode=True,
                sort_keys=False,
            )
        os.replace(tmp, path)
    except Exception:
        # Clean up temp file on failure
        if tmp.exists():
            tmp.unlink(missing_ok=True)
        raise


def read_yaml(path: Path) -> Optional[dict[str, Any]]:
    """Read a YAML mapping, returning None if the file does not exist."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except FileNotFoundError:
        return None
    if data is not None and not isinstance(data, dict):
        raise RecordError(f"{path.name}: expected a mapping, got {type(data).__name__}")
    return data


def _key_to_filename(key: str) -> str:
    encoded = base64.urlsafe_b64encode(key.encode("utf-8")).decode().rstrip("=")
    return encoded + _SUFFIX


def _filename_to_key(name: str) -> str:
    s = name[: -len(_SUFFIX)]
    s += "=" * (-len(s) % 4)
    return base64.urlsafe_b64decode(s).decode("utf-8")


class KeyValueStore:
    """
    A directory of YAML documents addressed by string key.

    Keys are base64url-encoded into file names, so any string is a valid key
    and no key can escape the directory. Each key has its own lock; callers
    that need read-then-write atomicity wrap the sequence in ``locked(key)``.
    Distinct keys never contend.

    Locks are per process. Two server processes sharing one directory fall
    back to last-writer-wins.
    """

    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory)
        # key -> [lock, holders]; an entry lives only while someone holds or awaits it.
        self._locks: dict[str, list] = {}
        self._registry_lock = threading.Lock()

    def _path(self, key: str) -> Path:
        return self.directory / _key_to_filename(key)

    @contextmanager
    def locked(self, key: str) -> Iterator[None]:
        """Hold the per-key lock for the duration of the block."""
        with self._registry_lock:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = [threading.RLock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._registry_lock:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def get(self, key: str) -> Optional[dict[str, Any]]:
        try:
            return read_yaml(self._path(key))
        except yaml.YAMLError as exc:
            raise RecordError(f"Corrupt record {key!r}: {exc}") from exc
        except OSError as exc:
            raise StoreError(f"Failed to read {key!r}: {exc}") from exc

    def put(self, key: str, value: dict[str, Any]) -> None:
        with self.locked(key):
            try:
                write_yaml(self._path(key), value)
            except (OSError, yaml.YAMLError) as exc:
                raise StoreError(f"Failed to write {key!r}: {exc}") from exc

    def create(self, key: str, value: dict[str, Any]) -> None:
        """
        Write ``value`` only if ``key`` is absent.

        Raises:
            RecordExists: If the key is already stored.
        """
        with self.locked(key):
            if self.exists(key):
                raise RecordExists(key)
            self.put(key, value)

    def delete(self, key: str) -> bool:
        with self.locked(key):
            try:
                self._path(key).unlink()
                return True
            except FileNotFoundError:
                return False
            except OSError as exc:
                raise StoreError(f"Failed to delete {key!r}: {exc}") from exc

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def keys(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        result = []
        for p in sorted(self.directory.iterdir()):
            if p.name.startswith(".") or not p.name.endswith(_SUFFIX):
                continue
            try:
                result.append(_filename_to_key(p.name))
            except (ValueError, UnicodeDecodeError):
                logger.warning("Skipping unrecognized file in %s: %s", self.directory, p.name)
        return result


def b64url_encode(data: bytes) -> str:
    """Encode bytes as unpadded base64url."""
    return base64.urlsafe_b64encode(data).decode().rstrip("=")


def b64url_decode(s: str) -> bytes:
    """Decode a base64url string with or without padding."""
    padding = 4 - len(s) % 4
    if padding != 4:
        s += "=" * padding
    return base64.urlsafe_b64decode(s)
