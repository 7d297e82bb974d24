import logging
import os
import re
import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol

from werkzeug.security import safe_join


BASE_DIR = Path(__file__).resolve().parent


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logger = logging.getLogger("uploadhost.config")
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


def _bool_env(key: str, default: bool) -> bool:
    raw_value = os.environ.get(key)
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    logging.getLogger("uploadhost.config").warning(
        "Invalid value for %s: %s. Using default: %s", key, raw_value, default
    )
    return default


STORAGE_ROOT = _resolve_env_path("UPLOADHOST_STORAGE_ROOT", BASE_DIR)
UPLOADS_DIR = _resolve_env_path("UPLOADHOST_UPLOADS_DIR", STORAGE_ROOT / "uploads")
LOGS_DIR = _resolve_env_path("UPLOADHOST_LOGS_DIR", STORAGE_ROOT / "logs")
STORAGE_DRIVER = os.environ.get("UPLOADHOST_STORAGE_DRIVER", "fs").strip().lower()

BYTES_PER_MB = 1024 * 1024
MAX_REQUEST_SIZE_MB = _safe_int_env("UPLOADHOST_MAX_REQUEST_MB", 64)
UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env("UPLOADHOST_RATE_LIMIT_UPLOADS_PER_HOUR", 100)
DOWNLOAD_RATE_LIMIT_PER_MINUTE = _safe_int_env("UPLOADHOST_RATE_LIMIT_DOWNLOADS_PER_MINUTE", 120)
RATE_LIMIT_ENABLED = _bool_env("UPLOADHOST_RATE_LIMIT_ENABLED", True)
RATE_LIMIT_STORAGE_URI = os.environ.get("UPLOADHOST_RATE_LIMIT_STORAGE", "memory://")


def ensure_directories() -> None:
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
    if STORAGE_DRIVER == "fs":
        UPLOADS_DIR.mkdir(parents=True, exist_ok=True)


_TEMP_FILE_PATTERN = re.compile(r"\.[0-9a-f]{32}\.tmp$")


class InvalidKeyError(ValueError):
    """Raised when a storage key cannot be mapped inside the storage namespace."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Invalid storage key: {key!r}")
        self.key = key


class BlobStorage(Protocol):
    """Namespaced key -> bytes store shared by the request handlers."""

    def set_item_raw(self, key: str, data: bytes) -> None:
        ...

    def get_item_raw(self, key: str) -> Optional[bytes]:
        ...

    def remove_item(self, key: str) -> None:
        ...

    def get_keys(self) -> List[str]:
        ...


class FilesystemStorage:
    """Store each key as one file below *base*; slashes in keys become directories."""

    def __init__(self, base: Path) -> None:
        self.base = Path(base)

    def _path_for(self, key: str) -> Path:
        joined = safe_join(str(self.base), key) if key else None
        if joined is None:
            raise InvalidKeyError(key)
        path = Path(joined)
        if path == self.base:
            raise InvalidKeyError(key)
        return path

    def set_item_raw(self, key: str, data: bytes) -> None:
        path = self._path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        try:
            with temp_path.open("wb") as destination:
                destination.write(data)
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

    def get_item_raw(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        try:
            return path.read_bytes()
        except (FileNotFoundError, IsADirectoryError, NotADirectoryError):
            return None

    def remove_item(self, key: str) -> None:
        path = self._path_for(key)
        path.unlink(missing_ok=True)
        self._prune_empty_dirs(path.parent)

    def get_keys(self) -> List[str]:
        if not self.base.exists():
            return []
        return sorted(
            path.relative_to(self.base).as_posix()
            for path in self.base.rglob("*")
            if path.is_file() and not _TEMP_FILE_PATTERN.search(path.name)
        )

    def _prune_empty_dirs(self, path: Path) -> None:
        """Remove directories left empty by nested keys."""

        base = self.base.resolve()
        try:
            current = path.resolve()
        except FileNotFoundError:
            return
        while current != base and base in current.parents:
            try:
                current.rmdir()
            except OSError:
                break
            current = current.parent


class MemoryStorage:
    def __init__(self) -> None:
        self._items: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def set_item_raw(self, key: str, data: bytes) -> None:
        if not key:
            raise InvalidKeyError(key)
        with self._lock:
            self._items[key] = bytes(data)

    def get_item_raw(self, key: str) -> Optional[bytes]:
        with self._lock:
            return self._items.get(key)

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def get_keys(self) -> List[str]:
        with self._lock:
            return sorted(self._items)


def build_storage(driver: Optional[str] = None, base: Optional[Path] = None) -> BlobStorage:
    """Create the storage backend named by *driver* (``fs`` or ``memory``)."""

    driver = (driver or STORAGE_DRIVER).strip().lower()
    if driver == "memory":
        return MemoryStorage()
    if driver == "fs":
        return FilesystemStorage(base or UPLOADS_DIR)
    raise ValueError(f"Unknown storage driver: {driver}")


class KeyGenerator:
    """Build ``<epoch-millis>-<filename>`` storage keys.

    The millisecond component never repeats within one generator: when the
    clock has not advanced past the last issued value it is bumped by one.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._last_millis = 0
        self._lock = threading.Lock()

    def next_millis(self) -> int:
        with self._lock:
            millis = int(self._clock() * 1000)
            if millis <= self._last_millis:
                millis = self._last_millis + 1
            self._last_millis = millis
            return millis

    def generate(self, filename: str) -> str:
        return f"{self.next_millis()}-{filename}"
