"""
knowledge-bootstrap — per-dimension checkpoint stores.

File: src/knowledge_bootstrap/pipeline/checkpoints.py

Purpose
- Durable, per-dimension result caching so an interrupted run can resume.

Functional requirements
- ``save`` overwrites the record for ``dim_id`` and stamps ``completedAt``; a
  write failure is logged and reported as ``False``, never raised.
- ``load_all`` returns only records younger than the TTL. Corrupt records are
  skipped and a missing location yields an empty mapping.
- ``clear_all`` removes every record and tolerates an absent location.

Non-functional requirements
- Backends (file, sqlite, memory) are interchangeable behind ``CheckpointStore``.
- Blocking IO runs in a worker thread so the event loop keeps scheduling.
"""

from __future__ import annotations

import abc
import asyncio
import json
import os
import sqlite3
import time
from collections.abc import Callable, Mapping
from contextlib import closing
from pathlib import Path
from typing import TYPE_CHECKING, Any, Final, Protocol

import structlog

from knowledge_bootstrap.constants import (
    CHECKPOINT_DB,
    CHECKPOINT_DIR,
    CHECKPOINT_SCHEMA_VERSION,
    CHECKPOINT_TTL_SECONDS,
)
from knowledge_bootstrap.domain.models import Checkpoint
from knowledge_bootstrap.errors import CheckpointCorruptError
from knowledge_bootstrap.utils.fs import atomic_write_json, read_json, safe_delete

if TYPE_CHECKING:
    from knowledge_bootstrap.domain.models import DimensionDigest, DimensionResult

PathLike = str | os.PathLike[str]
Clock = Callable[[], int]

_SQLITE_SCHEMA: Final[str] = """
CREATE TABLE IF NOT EXISTS checkpoints (
    dim_id TEXT PRIMARY KEY,
    session_id TEXT NOT NULL,
    completed_at INTEGER NOT NULL,
    schema_version INTEGER NOT NULL,
    payload TEXT NOT NULL
)
"""


def system_clock_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


class CheckpointStore(Protocol):
    async def save(
        self,
        run_root: PathLike,
        session_id: str,
        dim_id: str,
        result: DimensionResult,
        digest: DimensionDigest | None,
    ) -> bool: ...

    async def load_all(self, run_root: PathLike) -> dict[str, Checkpoint]: ...

    async def clear_all(self, run_root: PathLike) -> None: ...


class _TtlCheckpointStore(abc.ABC):
    """Shared save/load/clear policy; subclasses provide raw record IO."""

    backend: str = "abstract"

    def __init__(
        self,
        *,
        ttl_seconds: float = CHECKPOINT_TTL_SECONDS,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        self._ttl_ms = int(ttl_seconds * 1000)
        self._clock = clock if clock is not None else system_clock_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def ttl_ms(self) -> int:
        return self._ttl_ms

    async def save(
        self,
        run_root: PathLike,
        session_id: str,
        dim_id: str,
        result: DimensionResult,
        digest: DimensionDigest | None,
    ) -> bool:
        checkpoint = Checkpoint(
            dim_id=dim_id,
            session_id=session_id,
            result=result,
            digest=digest,
            completed_at_ms=self._clock(),
        )
        try:
            await asyncio.to_thread(self._write, Path(run_root), checkpoint)
        except (OSError, sqlite3.Error, TypeError, ValueError) as exc:
            self._logger.warning(
                "checkpoint_save_failed",
                backend=self.backend,
                dim_id=dim_id,
                error=str(exc),
            )
            return False
        self._logger.debug("checkpoint_saved", backend=self.backend, dim_id=dim_id)
        return True

    async def load_all(self, run_root: PathLike) -> dict[str, Checkpoint]:
        try:
            records = await asyncio.to_thread(self._read_all, Path(run_root))
        except (OSError, sqlite3.Error) as exc:
            self._logger.warning("checkpoint_load_failed", backend=self.backend, error=str(exc))
            return {}

        now_ms = self._clock()
        valid: dict[str, Checkpoint] = {}
        for source, payload in records:
            try:
                checkpoint = decode_checkpoint(payload)
            except CheckpointCorruptError as exc:
                self._logger.debug(
                    "checkpoint_corrupt_skipped", backend=self.backend, source=source, error=str(exc)
                )
                continue
            if not checkpoint.is_fresh(now_ms, self._ttl_ms):
                continue
            valid[checkpoint.dim_id] = checkpoint
        return valid

    async def clear_all(self, run_root: PathLike) -> None:
        try:
            await asyncio.to_thread(self._delete_all, Path(run_root))
        except (OSError, sqlite3.Error, ValueError) as exc:
            self._logger.warning("checkpoint_clear_failed", backend=self.backend, error=str(exc))
            return
        self._logger.debug("checkpoints_cleared", backend=self.backend)

    @abc.abstractmethod
    def _write(self, run_root: Path, checkpoint: Checkpoint) -> None: ...

    @abc.abstractmethod
    def _read_all(self, run_root: Path) -> list[tuple[str, object]]:
        """Return ``(source, payload)`` pairs; a payload may be a ``CheckpointCorruptError``."""

    @abc.abstractmethod
    def _delete_all(self, run_root: Path) -> None: ...


class FileCheckpointStore(_TtlCheckpointStore):
    """One JSON document per dimension: ``<run_root>/<directory>/<dim_id>.json``."""

    backend = "file"

    def __init__(
        self,
        *,
        directory: PathLike = CHECKPOINT_DIR,
        ttl_seconds: float = CHECKPOINT_TTL_SECONDS,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        self._directory = Path(directory)

    def directory_for(self, run_root: PathLike) -> Path:
        return Path(run_root) / self._directory

    def _write(self, run_root: Path, checkpoint: Checkpoint) -> None:
        target = self.directory_for(run_root) / f"{checkpoint.dim_id}.json"
        atomic_write_json(target, checkpoint.to_dict(), indent=2)

    def _read_all(self, run_root: Path) -> list[tuple[str, object]]:
        directory = self.directory_for(run_root)
        if not directory.is_dir():
            return []
        records: list[tuple[str, object]] = []
        for path in sorted(directory.glob("*.json")):
            try:
                records.append((path.name, read_json(path)))
            except (OSError, ValueError) as exc:
                records.append((path.name, CheckpointCorruptError(str(exc))))
        return records

    def _delete_all(self, run_root: Path) -> None:
        safe_delete(self.directory_for(run_root), run_root)


class SqliteCheckpointStore(_TtlCheckpointStore):
    """One row per dimension in ``<run_root>/<database>``."""

    backend = "sqlite"

    def __init__(
        self,
        *,
        database: PathLike = CHECKPOINT_DB,
        ttl_seconds: float = CHECKPOINT_TTL_SECONDS,
        clock: Clock | None = None,
        logger: Any | None = None,
        busy_timeout_ms: int = 5_000,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        self._database = Path(database)
        self._busy_timeout_ms = busy_timeout_ms

    def database_for(self, run_root: PathLike) -> Path:
        return Path(run_root) / self._database

    def _connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=self._busy_timeout_ms / 1000.0, isolation_level=None)
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        conn.execute(_SQLITE_SCHEMA)
        return conn

    def _write(self, run_root: Path, checkpoint: Checkpoint) -> None:
        with closing(self._connect(self.database_for(run_root))) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO checkpoints "
                "(dim_id, session_id, completed_at, schema_version, payload) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    checkpoint.dim_id,
                    checkpoint.session_id,
                    checkpoint.completed_at_ms,
                    CHECKPOINT_SCHEMA_VERSION,
                    checkpoint.to_json(),
                ),
            )

    def _read_all(self, run_root: Path) -> list[tuple[str, object]]:
        path = self.database_for(run_root)
        if not path.exists():
            return []
        with closing(self._connect(path)) as conn:
            rows = conn.execute(
                "SELECT dim_id, payload FROM checkpoints ORDER BY dim_id"
            ).fetchall()
        records: list[tuple[str, object]] = []
        for dim_id, payload in rows:
            try:
                records.append((str(dim_id), json.loads(payload)))
            except (TypeError, ValueError) as exc:
                records.append((str(dim_id), CheckpointCorruptError(str(exc))))
        return records

    def _delete_all(self, run_root: Path) -> None:
        path = self.database_for(run_root)
        if not path.exists():
            return
        with closing(self._connect(path)) as conn:
            conn.execute("DELETE FROM checkpoints")


class InMemoryCheckpointStore(_TtlCheckpointStore):
    """Process-local store keyed by run root; records are kept in serialized form."""

    backend = "memory"

    def __init__(
        self,
        *,
        ttl_seconds: float = CHECKPOINT_TTL_SECONDS,
        clock: Clock | None = None,
        logger: Any | None = None,
    ) -> None:
        super().__init__(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        self._records: dict[str, dict[str, dict[str, Any]]] = {}

    def put_raw(self, run_root: PathLike, dim_id: str, payload: Mapping[str, Any]) -> None:
        """Store a raw record as-is; used to seed corrupt or legacy data."""
        self._records.setdefault(_root_key(run_root), {})[dim_id] = dict(payload)

    def _write(self, run_root: Path, checkpoint: Checkpoint) -> None:
        self._records.setdefault(_root_key(run_root), {})[checkpoint.dim_id] = checkpoint.to_dict()

    def _read_all(self, run_root: Path) -> list[tuple[str, object]]:
        bucket = self._records.get(_root_key(run_root), {})
        return [(dim_id, dict(payload)) for dim_id, payload in sorted(bucket.items())]

    def _delete_all(self, run_root: Path) -> None:
        self._records.pop(_root_key(run_root), None)


def decode_checkpoint(payload: object) -> Checkpoint:
    """Decode one stored record, raising ``CheckpointCorruptError`` on any defect."""

    if isinstance(payload, CheckpointCorruptError):
        raise payload
    if not isinstance(payload, Mapping):
        raise CheckpointCorruptError(f"expected object, got {type(payload).__name__}")
    try:
        return Checkpoint.from_dict(payload)
    except CheckpointCorruptError:
        raise
    except (TypeError, ValueError) as exc:
        raise CheckpointCorruptError(str(exc)) from exc


def create_checkpoint_store(
    backend: str,
    *,
    ttl_seconds: float = CHECKPOINT_TTL_SECONDS,
    directory: PathLike = CHECKPOINT_DIR,
    clock: Clock | None = None,
    logger: Any | None = None,
) -> CheckpointStore:
    """Build the configured backend (``file``, ``sqlite`` or ``memory``)."""

    match backend:
        case "file":
            return FileCheckpointStore(
                directory=directory, ttl_seconds=ttl_seconds, clock=clock, logger=logger
            )
        case "sqlite":
            return SqliteCheckpointStore(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        case "memory":
            return InMemoryCheckpointStore(ttl_seconds=ttl_seconds, clock=clock, logger=logger)
        case _:
            raise ValueError(f"unknown checkpoint backend {backend!r}")


def checkpoint_store_from_config(
    config: Mapping[str, Any], *, clock: Clock | None = None, logger: Any | None = None
) -> CheckpointStore:
    """Build the store described by a validated config's ``[checkpoints]`` section."""

    section = config["checkpoints"]
    return create_checkpoint_store(
        str(section["backend"]),
        ttl_seconds=float(section["ttl_seconds"]),
        directory=str(section["directory"]),
        clock=clock,
        logger=logger,
    )


def _root_key(run_root: PathLike) -> str:
    return Path(run_root).resolve().as_posix()


__all__ = [
    "CheckpointStore",
    "Clock",
    "FileCheckpointStore",
    "InMemoryCheckpointStore",
    "SqliteCheckpointStore",
    "checkpoint_store_from_config",
    "create_checkpoint_store",
    "decode_checkpoint",
    "system_clock_ms",
]
