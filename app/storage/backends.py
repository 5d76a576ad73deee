"""
Persistence backends for the JSON collection store.

Every domain collection is one JSON payload addressed by a key.  Backends
only know how to read and write whole payloads; repositories own the shape.

    read(key)  -> payload | None      None means "missing", never "failed"
    write(key, payload)
    list_keys()

Backends:
    MemoryBackend  : process-local dict, deep-copied (tests, demos)
    FileBackend    : one <key>.json file per collection under a directory
    DatabaseBackend: JsonDocument table via Flask-SQLAlchemy
    CachedBackend  : read-through cache decorator over another backend

``strict`` backends surface every I/O failure as PersistenceError.  Best-effort
backends drop a failed write with a warning (read-only hosts), so callers
must not assume a write survived in that mode.
"""

from __future__ import annotations

import copy
import errno
import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Any

from sqlalchemy import inspect, select
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import PersistenceError
from app.models import db
from app.models.json_document import JsonDocument

logger = logging.getLogger(__name__)

_READONLY_ERRNOS = frozenset({errno.EROFS, errno.EACCES, errno.EPERM})

STORE_KEY_PREFIX = "json-store:"


def _clone(payload: Any) -> Any:
    return copy.deepcopy(payload)


class StorageBackend(ABC):
    """Interface shared by every persistence backend."""

    name = "abstract"

    @abstractmethod
    def read(self, key: str) -> Any | None:
        """Return the stored payload or None when the key was never written."""

    @abstractmethod
    def write(self, key: str, payload: Any) -> bool:
        """Persist the payload.  Returns False when a best-effort write was dropped."""

    @abstractmethod
    def list_keys(self) -> list[str]:
        ...

    def reset(self) -> None:
        """Forget everything (tests only)."""
        raise NotImplementedError(f"{self.name} backend cannot be reset")


# ═══════════════════════════════════════════════════════════════════════════
#  Memory
# ═══════════════════════════════════════════════════════════════════════════


class MemoryBackend(StorageBackend):
    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def read(self, key):
        with self._lock:
            if key not in self._data:
                return None
            return _clone(self._data[key])

    def write(self, key, payload):
        with self._lock:
            self._data[key] = _clone(payload)
        return True

    def list_keys(self):
        with self._lock:
            return sorted(self._data)

    def reset(self):
        with self._lock:
            self._data.clear()


# ═══════════════════════════════════════════════════════════════════════════
#  File
# ═══════════════════════════════════════════════════════════════════════════


class FileBackend(StorageBackend):
    """One pretty-printed JSON file per key, replaced atomically on write."""

    name = "file"

    def __init__(self, directory: str, *, strict: bool = False) -> None:
        self.directory = directory
        self.strict = strict

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def read(self, key):
        path = self._path(key)
        try:
            with open(path, encoding="utf-8") as fh:
                return json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            logger.error("Failed to read store file %s: %s", path, exc,
                         extra={"store_key": key, "persistence_code": PersistenceError.FILE_READ_FAILED})
            raise PersistenceError(
                PersistenceError.FILE_READ_FAILED, f"Store read failed for {key}: {exc}",
            ) from exc

    def write(self, key, payload):
        path = self._path(key)
        try:
            os.makedirs(self.directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(payload, fh, indent=2, ensure_ascii=False, default=str)
            os.replace(tmp_path, path)
            return True
        except OSError as exc:
            if not self.strict and exc.errno in _READONLY_ERRNOS:
                logger.warning("Read-only data store; dropped write for %s", key,
                               extra={"store_key": key})
                return False
            raise PersistenceError(
                PersistenceError.FILE_WRITE_FAILED, f"Store write failed for {key}: {exc}",
            ) from exc

    def list_keys(self):
        if not os.path.isdir(self.directory):
            return []
        return sorted(
            name[:-len(".json")] for name in os.listdir(self.directory)
            if name.endswith(".json") and not name.startswith(".")
        )


# ═══════════════════════════════════════════════════════════════════════════
#  Database
# ═══════════════════════════════════════════════════════════════════════════


class DatabaseBackend(StorageBackend):
    """JSON payloads upserted into the ``json_documents`` table.

    Must be used inside an application context (``db.session``).
    """

    name = "database"

    def __init__(self, *, strict: bool = True) -> None:
        self.strict = strict
        self._table_ready = False

    @staticmethod
    def _db_key(key: str) -> str:
        return f"{STORE_KEY_PREFIX}{key}"

    def _ensure_table(self) -> bool:
        if self._table_ready:
            return True
        try:
            if not inspect(db.engine).has_table(JsonDocument.__tablename__):
                JsonDocument.__table__.create(db.engine, checkfirst=True)
            self._table_ready = True
        except SQLAlchemyError as exc:
            logger.error("JsonDocument table unavailable: %s", exc,
                         extra={"persistence_code": PersistenceError.DB_INIT_FAILED})
            if self.strict:
                raise PersistenceError(
                    PersistenceError.DB_INIT_FAILED, f"Database persistence setup failed: {exc}",
                ) from exc
        return self._table_ready

    def read(self, key):
        if not self._ensure_table():
            return None
        try:
            row = db.session.get(JsonDocument, self._db_key(key))
            return _clone(row.payload) if row is not None else None
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Database read failed for %s: %s", key, exc,
                         extra={"store_key": key, "persistence_code": PersistenceError.DB_READ_FAILED})
            if self.strict:
                raise PersistenceError(
                    PersistenceError.DB_READ_FAILED, f"Database read failed: {exc}",
                ) from exc
            return None

    def write(self, key, payload):
        if not self._ensure_table():
            return False
        try:
            row = db.session.get(JsonDocument, self._db_key(key))
            if row is None:
                db.session.add(JsonDocument(key=self._db_key(key), payload=_clone(payload)))
            else:
                # Reassign so the JSON column is flagged dirty
                row.payload = _clone(payload)
            db.session.commit()
            return True
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Database write failed for %s: %s", key, exc,
                         extra={"store_key": key, "persistence_code": PersistenceError.DB_WRITE_FAILED})
            if self.strict:
                raise PersistenceError(
                    PersistenceError.DB_WRITE_FAILED, f"Database write failed: {exc}",
                ) from exc
            return False

    def list_keys(self):
        if not self._ensure_table():
            return []
        try:
            keys = db.session.execute(select(JsonDocument.key)).scalars().all()
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.error("Database key listing failed: %s", exc,
                         extra={"persistence_code": PersistenceError.DB_READ_FAILED})
            if self.strict:
                raise PersistenceError(
                    PersistenceError.DB_READ_FAILED, f"Database read failed: {exc}",
                ) from exc
            return []
        return sorted(k[len(STORE_KEY_PREFIX):] for k in keys if k.startswith(STORE_KEY_PREFIX))

    def reset(self):
        if self._ensure_table():
            db.session.query(JsonDocument).delete()
            db.session.commit()


# ═══════════════════════════════════════════════════════════════════════════
#  Cache decorator
# ═══════════════════════════════════════════════════════════════════════════


class CachedBackend(StorageBackend):
    """Read-through cache over another backend.

    The cache is refreshed on every write; a dropped best-effort write still
    updates the cache so the running process sees its own changes.  Cached
    keys are never re-read, so this is only valid when a single process owns
    the store (``build_backend`` allows it for the file backend in file mode).
    """

    def __init__(self, inner: StorageBackend) -> None:
        self.inner = inner
        self.name = f"cached-{inner.name}"
        self._cache: dict[str, Any] = {}
        self._lock = threading.Lock()

    def read(self, key):
        with self._lock:
            if key in self._cache:
                return _clone(self._cache[key])
        payload = self.inner.read(key)
        if payload is not None:
            with self._lock:
                self._cache[key] = _clone(payload)
        return payload

    def write(self, key, payload):
        with self._lock:
            self._cache[key] = _clone(payload)
        return self.inner.write(key, payload)

    def list_keys(self):
        return sorted(set(self.inner.list_keys()) | set(self._cache))

    def reset(self):
        with self._lock:
            self._cache.clear()
        self.inner.reset()


# ═══════════════════════════════════════════════════════════════════════════
#  Strategy
# ═══════════════════════════════════════════════════════════════════════════

DATA_STORE_MODES = ("file", "preferred_database", "required_database")
DATA_STORE_BACKENDS = ("memory", "file", "database")


def build_backend(config) -> StorageBackend:
    """Choose the backend for an app config (a mapping, e.g. ``app.config``).

    - ``required_database``: database backend, strict; a missing database URL
      is a PersistenceError rather than a silent fallback.
    - ``preferred_database``: database backend in best-effort mode when a URL
      is configured, else the file backend.
    - ``file``: honours DATA_STORE_BACKEND (memory / file / database).

    DATA_STORE_CACHE only wraps the file backend in file mode; database
    stores are shared between workers and are always read through.
    """
    mode = (config.get("DATA_STORE_MODE") or "file").strip().lower()
    kind = (config.get("DATA_STORE_BACKEND") or "file").strip().lower()
    if mode not in DATA_STORE_MODES:
        raise ValueError(f"Unknown DATA_STORE_MODE {mode!r}; expected one of {DATA_STORE_MODES}")
    if kind not in DATA_STORE_BACKENDS:
        raise ValueError(f"Unknown DATA_STORE_BACKEND {kind!r}; expected one of {DATA_STORE_BACKENDS}")

    has_db_url = bool(config.get("SQLALCHEMY_DATABASE_URI"))
    directory = config.get("DATA_STORE_DIR") or "data"

    if mode == "required_database":
        if not has_db_url:
            raise PersistenceError(
                PersistenceError.DB_URL_MISSING,
                "Database persistence is required in this environment, but DATABASE_URL is not configured.",
            )
        backend: StorageBackend = DatabaseBackend(strict=True)
    elif mode == "preferred_database":
        backend = DatabaseBackend(strict=False) if has_db_url else FileBackend(directory)
    elif kind == "memory":
        backend = MemoryBackend()
    elif kind == "database":
        backend = DatabaseBackend(strict=True)
    else:
        backend = FileBackend(directory)

    if config.get("DATA_STORE_CACHE"):
        if mode == "file" and isinstance(backend, FileBackend):
            backend = CachedBackend(backend)
        elif not isinstance(backend, MemoryBackend):
            logger.warning("DATA_STORE_CACHE ignored for the shared %s backend", backend.name)

    logger.info("Data store backend: %s (mode=%s)", backend.name, mode)
    return backend
