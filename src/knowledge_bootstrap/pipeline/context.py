"""Cross-dimension knowledge accumulator for one run, plus digest parsing."""

from __future__ import annotations

import json
import re
import time
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any, Final

from knowledge_bootstrap.domain.models import (
    DimensionDigest,
    ProjectSnapshot,
    SubmittedItem,
)

_FENCED_BLOCK_RE: Final[re.Pattern[str]] = re.compile(r"```(?:json)?[ \t]*\n?(.*?)```", re.DOTALL)
_BARE_DIGEST_RE: Final[re.Pattern[str]] = re.compile(r'\{\s*"dimensionDigest"\s*:')
_DIGEST_KEY: Final[str] = "dimensionDigest"
_NO_DIGESTS_TEXT: Final[str] = "(no completed dimensions yet)"


class DimensionContext:
    """Append-only store of digests and submitted items, shared by every dimension.

    Writes from concurrent dimensions are safe because each writes under its
    own ``dim_id`` and nothing reads-modifies-writes. There is no deletion API.
    """

    def __init__(self, project: ProjectSnapshot) -> None:
        self._project = project
        self._digests: dict[str, DimensionDigest] = {}
        self._completed_at: dict[str, int] = {}
        self._items: list[SubmittedItem] = []

    @property
    def project(self) -> ProjectSnapshot:
        return self._project

    @property
    def digests(self) -> Mapping[str, DimensionDigest]:
        return MappingProxyType(self._digests)

    @property
    def submitted_items(self) -> tuple[SubmittedItem, ...]:
        return tuple(self._items)

    def add_dimension_digest(
        self, dim_id: str, digest: DimensionDigest, *, completed_at_ms: int | None = None
    ) -> None:
        self._digests[dim_id] = digest
        self._completed_at[dim_id] = (
            time.time_ns() // 1_000_000 if completed_at_ms is None else completed_at_ms
        )

    def add_submitted_item(self, dim_id: str, item: SubmittedItem) -> None:
        if item.dim_id != dim_id:
            raise ValueError(f"item belongs to {item.dim_id!r}, not {dim_id!r}")
        self._items.append(item)

    def items_for_dimension(self, dim_id: str) -> tuple[SubmittedItem, ...]:
        return tuple(item for item in self._items if item.dim_id == dim_id)

    def build_context_for_dimension(self, current_dim_id: str) -> dict[str, Any]:
        """Read-only snapshot handed to prompt construction for ``current_dim_id``."""

        previous: dict[str, Any] = {}
        for dim_id, digest in self._digests.items():
            payload = digest.to_dict()
            payload.pop("candidateTitles", None)
            previous[dim_id] = payload
        return {
            "project": self._project.to_dict(),
            "previousDimensions": previous,
            "existingCandidates": [
                {"dimId": item.dim_id, "title": item.title, "subTopic": item.sub_topic}
                for item in self._items
            ],
            "currentDimension": current_dim_id,
        }

    def digests_summary_text(self) -> str:
        """Compact markdown rendering of every digest, in completion order."""

        if not self._digests:
            return _NO_DIGESTS_TEXT

        lines: list[str] = []
        for dim_id, digest in self._digests.items():
            lines.append(f"### {dim_id}")
            lines.append(f"- Summary: {digest.summary or '(none)'}")
            lines.append(f"- Items produced: {digest.candidate_count}")
            if digest.key_findings:
                lines.append(f"- Key findings: {'; '.join(digest.key_findings)}")
            for target, suggestion in digest.cross_refs.items():
                lines.append(f"- -> {target}: {suggestion}")
            if digest.gaps:
                lines.append(f"- Gaps: {'; '.join(digest.gaps)}")
            if digest.remaining_tasks:
                lines.append(f"- Remaining tasks: {'; '.join(digest.remaining_tasks)}")
            lines.append("")
        return "\n".join(lines)

    def to_dict(self) -> dict[str, Any]:
        completed: dict[str, Any] = {}
        for dim_id, digest in self._digests.items():
            payload: dict[str, Any] = digest.to_dict()
            payload["dimId"] = dim_id
            payload["completedAt"] = self._completed_at.get(dim_id, 0)
            completed[dim_id] = payload
        return {
            "projectContext": self._project.to_dict(),
            "completedDimensions": completed,
            "submittedCandidates": [item.to_dict() for item in self._items],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DimensionContext:
        context = cls(ProjectSnapshot.from_dict(data.get("projectContext") or {}))
        for dim_id, payload in (data.get("completedDimensions") or {}).items():
            context.add_dimension_digest(
                dim_id,
                DimensionDigest.from_dict(payload),
                completed_at_ms=int(payload.get("completedAt") or 0),
            )
        for raw in data.get("submittedCandidates") or ():
            item = SubmittedItem(
                dim_id=str(raw.get("dimId") or ""),
                title=str(raw.get("title") or ""),
                sub_topic=str(raw.get("subTopic") or ""),
                summary=str(raw.get("summary") or ""),
            )
            context.add_submitted_item(item.dim_id, item)
        return context


def parse_dimension_digest(reply: str | None) -> DimensionDigest | None:
    """Extract a ``dimensionDigest`` JSON object from free-form Formatter text.

    Looks first in fenced code blocks, then for a bare ``{"dimensionDigest": ...}``
    object. Returns ``None`` when nothing parses or when the digest has neither
    a summary nor a candidate count.
    """

    if not reply or not isinstance(reply, str):
        return None

    payload = _find_fenced_digest(reply)
    if payload is None:
        payload = _find_bare_digest(reply)
    if payload is None:
        return None

    raw = payload.get(_DIGEST_KEY) or payload
    if not isinstance(raw, Mapping):
        return None
    if not raw.get("summary") and not raw.get("candidateCount"):
        return None
    try:
        return DimensionDigest.from_dict(raw)
    except (TypeError, ValueError):
        return None


def _find_fenced_digest(reply: str) -> Mapping[str, Any] | None:
    for match in _FENCED_BLOCK_RE.finditer(reply):
        body = match.group(1).strip()
        if _DIGEST_KEY not in body:
            continue
        try:
            parsed = json.loads(body)
        except ValueError:
            continue
        if isinstance(parsed, Mapping):
            return parsed
    return None


def _find_bare_digest(reply: str) -> Mapping[str, Any] | None:
    decoder = json.JSONDecoder()
    for match in _BARE_DIGEST_RE.finditer(reply):
        try:
            parsed, _ = decoder.raw_decode(reply, match.start())
        except ValueError:
            continue
        if isinstance(parsed, Mapping):
            return parsed
    return None


__all__ = ["DimensionContext", "parse_dimension_digest"]
