"""Tiered executor: tiers run in order, dimensions inside a tier run bounded-parallel."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

import structlog

from knowledge_bootstrap.constants import DEFAULT_CONCURRENCY
from knowledge_bootstrap.domain.models import DimensionResult, FailureKind
from knowledge_bootstrap.utils.concurrency import FifoSemaphore

ExecuteDimension = Callable[[str], Awaitable[DimensionResult]]
ShouldAbort = Callable[[], bool]
OnTierComplete = Callable[[int, Mapping[str, DimensionResult]], None]


class TierScheduler:
    """Runs ordered tiers of dimension IDs with a hard barrier between tiers.

    ``execute`` never raises for dimension-level failures: an exception from
    ``execute_dimension`` becomes a ``DimensionResult`` carrying ``error`` and
    ``candidate_count == 0``, and every permit is released on every exit path.
    """

    def __init__(self, tiers: Sequence[Sequence[str]], *, logger: Any | None = None) -> None:
        seen: set[str] = set()
        normalized: list[tuple[str, ...]] = []
        for tier in tiers:
            for dim_id in tier:
                if dim_id in seen:
                    raise ValueError(f"dimension {dim_id!r} is configured in more than one tier")
                seen.add(dim_id)
            normalized.append(tuple(tier))
        self._tiers: tuple[tuple[str, ...], ...] = tuple(normalized)
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def get_tiers(self) -> tuple[tuple[str, ...], ...]:
        return self._tiers

    def get_tier_index(self, dim_id: str) -> int:
        """0-based tier index of ``dim_id``, or ``-1`` when it is not configured."""
        for index, tier in enumerate(self._tiers):
            if dim_id in tier:
                return index
        return -1

    async def execute(
        self,
        execute_dimension: ExecuteDimension,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
        should_abort: ShouldAbort | None = None,
        on_tier_complete: OnTierComplete | None = None,
    ) -> dict[str, DimensionResult]:
        if concurrency <= 0:
            raise ValueError("concurrency must be > 0")

        abort = should_abort if should_abort is not None else _never
        results: dict[str, DimensionResult] = {}
        tier_count = len(self._tiers)

        for tier_index, tier in enumerate(self._tiers):
            if abort():
                self._logger.warning("tier_scheduler_aborted", before_tier=tier_index + 1)
                break

            self._logger.info(
                "tier_started",
                tier=tier_index + 1,
                tier_count=tier_count,
                dimensions=list(tier),
                concurrency=concurrency,
            )
            tier_results = await self._execute_tier(tier, execute_dimension, concurrency, abort)
            results.update(tier_results)

            if on_tier_complete is not None:
                try:
                    on_tier_complete(tier_index, dict(tier_results))
                except Exception as exc:  # noqa: BLE001 - observability hook must not break the run.
                    self._logger.warning(
                        "tier_complete_hook_failed", tier=tier_index + 1, error=str(exc)
                    )

        return results

    async def _execute_tier(
        self,
        dimension_ids: tuple[str, ...],
        execute_dimension: ExecuteDimension,
        concurrency: int,
        should_abort: ShouldAbort,
    ) -> dict[str, DimensionResult]:
        semaphore = FifoSemaphore(concurrency)
        settled: dict[str, DimensionResult] = {}

        async def run_one(dim_id: str) -> None:
            if should_abort():
                return
            await semaphore.acquire()
            try:
                if should_abort():
                    return
                settled[dim_id] = await execute_dimension(dim_id)
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if current is not None and current.cancelling():
                    raise
                settled[dim_id] = self._uncaught(dim_id, "cancelled")
            except Exception as exc:  # noqa: BLE001 - dimension isolation boundary.
                settled[dim_id] = self._uncaught(dim_id, str(exc) or type(exc).__name__)
            finally:
                semaphore.release()

        await asyncio.gather(*(run_one(dim_id) for dim_id in dimension_ids))
        return {dim_id: settled[dim_id] for dim_id in dimension_ids if dim_id in settled}

    def _uncaught(self, dim_id: str, message: str) -> DimensionResult:
        self._logger.error(
            "dimension_failed", dim_id=dim_id, kind=FailureKind.UNCAUGHT.value, error=message
        )
        return DimensionResult.failure(message)


def _never() -> bool:
    return False


__all__ = ["ExecuteDimension", "OnTierComplete", "ShouldAbort", "TierScheduler"]
