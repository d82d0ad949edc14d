"""Utility exports for filesystem and concurrency helpers."""

from knowledge_bootstrap.utils.concurrency import (
    CancellationToken,
    FifoSemaphore,
    run_with_timeout,
)
from knowledge_bootstrap.utils.fs import (
    atomic_write,
    atomic_write_json,
    is_within,
    read_json,
    safe_delete,
)

__all__ = [
    "CancellationToken",
    "FifoSemaphore",
    "atomic_write",
    "atomic_write_json",
    "is_within",
    "read_json",
    "run_with_timeout",
    "safe_delete",
]
