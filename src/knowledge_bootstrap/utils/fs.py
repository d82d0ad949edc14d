"""
knowledge-bootstrap — filesystem utilities

File: src/knowledge_bootstrap/utils/fs.py

Purpose
- Atomic JSON/text writes for checkpoints and run reports.
- Guarded deletion of run-scoped state directories.

Notes
- Readers never observe a partially written checkpoint or report.
- Deletion refuses paths outside the run root and tolerates already-absent targets.
"""

from __future__ import annotations

import contextlib
import json
import os
import shutil
import tempfile
from pathlib import Path

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "atomic_write_json",
    "is_within",
    "read_json",
    "safe_delete",
]


def atomic_write(path: PathLike, data: bytes | str, *, encoding: str = "utf-8") -> None:
    """Write ``data`` to a sibling temp file, fsync it, then ``os.replace`` it over ``path``."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target_parent = target.parent.resolve(strict=True)

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(target_parent),
    )
    temp_path = Path(temp_name)

    try:
        mode = "wb" if isinstance(data, bytes) else "w"
        with os.fdopen(fd, mode, encoding=None if isinstance(data, bytes) else encoding) as handle:
            handle.write(data)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def atomic_write_json(path: PathLike, payload: object, *, indent: int | None = None) -> None:
    """Serialize ``payload`` deterministically and write it atomically."""

    text = json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)
    atomic_write(path, text + "\n")


def read_json(path: PathLike) -> object:
    with Path(path).open("r", encoding="utf-8") as handle:
        return json.load(handle)


def is_within(child: PathLike, parent: PathLike) -> bool:
    """Return ``True`` if resolved ``child`` is within resolved ``parent``."""

    return _is_relative_to(Path(child).resolve(), Path(parent).resolve())


def safe_delete(path: PathLike, root: PathLike) -> bool:
    """
    Delete ``path`` only if it is contained within ``root``.

    Returns ``False`` when the target does not exist. Symlinks are unlinked
    without traversing into their targets.
    """

    target = Path(path)
    if not target.exists() and not target.is_symlink():
        return False

    candidate = target.parent.resolve() / target.name
    if not _is_relative_to(candidate, Path(root).resolve()):
        raise ValueError(f"refusing to delete path outside run root: {target!s}")

    if target.is_symlink() or not target.is_dir():
        target.unlink(missing_ok=True)
        return True

    shutil.rmtree(target, ignore_errors=False)
    return True


def _is_relative_to(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
    except ValueError:
        return False
    return True
