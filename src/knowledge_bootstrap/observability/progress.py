"""In-process progress sink with replay buffer and isolated subscribers."""

from __future__ import annotations

import threading
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Final

import structlog

from knowledge_bootstrap.domain.session import SessionRegistry

_DEFAULT_ERROR_BUFFER: Final[int] = 256


class ProgressKind(StrEnum):
    FILLING = "dimension:filling"
    COMPLETED = "dimension:completed"
    FAILED = "dimension:failed"
    PROGRESS = "progress"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    kind: ProgressKind
    name: str
    dim_id: str | None = None
    data: Mapping[str, Any] = field(default_factory=dict)
    emitted_at_ms: int = 0


@dataclass(frozen=True, slots=True)
class DispatchError:
    """Subscriber failure captured without interrupting the pipeline."""

    event_name: str
    target: str
    error_type: str
    message: str


Subscriber = Callable[[ProgressEvent], object]


class EventProgressSink:
    """``ProgressSink`` that buffers events and fans them out to subscribers.

    Session validity is delegated to a ``SessionRegistry`` so a newer run
    started through the same registry cooperatively stops this one.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        *,
        buffer_size: int = 512,
        logger: Any | None = None,
    ) -> None:
        if buffer_size <= 0:
            raise ValueError("buffer_size must be > 0")
        self._registry = registry
        self._buffer = deque[ProgressEvent](maxlen=buffer_size)
        self._errors = deque[DispatchError](maxlen=_DEFAULT_ERROR_BUFFER)
        self._subscribers: dict[int, Subscriber] = {}
        self._next_token = 1
        self._lock = threading.RLock()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def subscribe(self, callback: Subscriber) -> int:
        if not callable(callback):
            raise ValueError("callback must be callable")
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._subscribers[token] = callback
        return token

    def unsubscribe(self, token: int) -> bool:
        with self._lock:
            return self._subscribers.pop(token, None) is not None

    def events(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            return tuple(self._buffer)

    def dispatch_errors(self) -> tuple[DispatchError, ...]:
        with self._lock:
            return tuple(self._errors)

    def mark_filling(self, dim_id: str) -> None:
        self._publish(ProgressKind.FILLING, "dimension:filling", dim_id, {})

    def mark_completed(self, dim_id: str, payload: Mapping[str, Any]) -> None:
        self._publish(ProgressKind.COMPLETED, "dimension:completed", dim_id, dict(payload))

    def mark_failed(self, dim_id: str, error: BaseException) -> None:
        self._publish(
            ProgressKind.FAILED,
            "dimension:failed",
            dim_id,
            {"error": str(error), "errorType": type(error).__name__},
        )

    def is_session_valid(self, session_id: str) -> bool:
        return self._registry.is_session_valid(session_id)

    def emit_progress(self, event: str, data: Mapping[str, Any]) -> None:
        self._publish(ProgressKind.PROGRESS, event, None, dict(data))

    def _publish(
        self, kind: ProgressKind, name: str, dim_id: str | None, data: Mapping[str, Any]
    ) -> None:
        event = ProgressEvent(
            kind=kind,
            name=name,
            dim_id=dim_id,
            data=data,
            emitted_at_ms=time.time_ns() // 1_000_000,
        )
        with self._lock:
            self._buffer.append(event)
            subscribers = tuple(self._subscribers.values())

        for callback in subscribers:
            try:
                callback(event)
            except Exception as exc:  # noqa: BLE001 - subscriber isolation boundary.
                error = DispatchError(
                    event_name=name,
                    target=getattr(callback, "__qualname__", repr(callback)),
                    error_type=type(exc).__name__,
                    message=str(exc),
                )
                with self._lock:
                    self._errors.append(error)
                self._logger.warning(
                    "progress_subscriber_failed",
                    progress_event=name,
                    target=error.target,
                    error=error.message,
                )


__all__ = [
    "DispatchError",
    "EventProgressSink",
    "ProgressEvent",
    "ProgressKind",
    "Subscriber",
]
