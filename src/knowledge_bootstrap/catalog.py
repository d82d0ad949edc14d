"""
knowledge-bootstrap — dimension catalog.

File: src/knowledge_bootstrap/catalog.py

Purpose
- Built-in dimension definitions and the default three-tier layout.
- YAML catalog loading for project-specific dimension sets.

Functional requirements
- Dimension IDs are unique across all tiers; every tiered ID is configured.
- A missing or invalid catalog is infrastructural and aborts the run.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping, Sequence
from pathlib import Path
from typing import Any, Final, cast

import yaml

from knowledge_bootstrap.domain.models import Dimension, OutputType
from knowledge_bootstrap.errors import CatalogError

DEFAULT_TIERS: Final[tuple[tuple[str, ...], ...]] = (
    ("project-profile", "objc-deep-scan", "category-scan"),
    ("code-standard", "architecture", "code-pattern"),
    ("event-and-data-flow", "best-practice", "agent-guidelines"),
)

_BUILTIN_DIMENSIONS: Final[tuple[Dimension, ...]] = (
    Dimension(
        id="project-profile",
        label="Project Profile",
        guide="Describe overall structure, tech stack, module layout and entry points.",
        output_type=OutputType.DUAL,
        focus_areas=(
            "Project structure and module layout",
            "Tech stack and framework dependencies",
            "Core entry points and startup flow",
        ),
        allowed_knowledge_types=frozenset({"architecture"}),
    ),
    Dimension(
        id="objc-deep-scan",
        label="Deep Scan (Constants/Hooks)",
        guide="Scan #define macros, extern/static constants and method-swizzling hooks.",
        output_type=OutputType.DUAL,
        focus_areas=(
            "#define value and function macros",
            "extern/static constant definitions",
            "Method swizzling hooks and load/initialize methods",
        ),
        allowed_knowledge_types=frozenset({"code-standard", "code-pattern"}),
    ),
    Dimension(
        id="category-scan",
        label="Base Class Category Scan",
        guide="Scan Foundation/UIKit category and extension methods and their implementations.",
        output_type=OutputType.DUAL,
        focus_areas=(
            "Categories on NSString/NSArray/NSDictionary and other base classes",
            "Categories on UIView/UIColor/UIImage and other UI components",
            "Usage scenarios and frequency of each category method",
        ),
        allowed_knowledge_types=frozenset({"code-standard", "code-pattern"}),
    ),
    Dimension(
        id="code-standard",
        label="Code Standards",
        guide="Analyze naming conventions, comment style and file organization.",
        output_type=OutputType.DUAL,
        focus_areas=(
            "Class prefixes and naming conventions",
            "Method signature style and API naming",
            "Comment style (language, format, MARK sections)",
            "File organization and directory conventions",
        ),
        allowed_knowledge_types=frozenset({"code-standard", "code-style"}),
    ),
    Dimension(
        id="architecture",
        label="Architecture",
        guide="Analyze layering, module responsibilities and dependency relationships.",
        output_type=OutputType.DUAL,
        focus_areas=(
            "Layered architecture (MVC, MVVM, other)",
            "Inter-module communication (protocol, notification, target-action)",
            "Dependency management and service registration",
            "Module boundary constraints",
        ),
        allowed_knowledge_types=frozenset(
            {"architecture", "module-dependency", "boundary-constraint"}
        ),
    ),
    Dimension(
        id="code-pattern",
        label="Design Patterns",
        guide="Identify the design and architectural patterns used in the project.",
        output_type=OutputType.CANDIDATE,
        focus_areas=(
            "Creational patterns (Singleton, Factory, Builder)",
            "Structural patterns (Proxy, Adapter, Decorator, Composite)",
            "Behavioral patterns (Observer, Strategy, Template Method, Delegate)",
            "Architectural patterns (MVC/MVVM, Service Locator, Coordinator)",
        ),
        allowed_knowledge_types=frozenset({"code-pattern", "code-relation", "inheritance"}),
    ),
    Dimension(
        id="event-and-data-flow",
        label="Events and Data Flow",
        guide="Analyze event propagation and data state management.",
        output_type=OutputType.CANDIDATE,
        focus_areas=(
            "Event propagation (delegate, notification, block, target-action)",
            "Data state management (KVO, property observation, reactive)",
            "Data persistence approach",
            "Data flow paths and state synchronization",
        ),
        allowed_knowledge_types=frozenset({"call-chain", "data-flow", "event-and-data-flow"}),
    ),
    Dimension(
        id="best-practice",
        label="Best Practices",
        guide="Analyze error handling, concurrency safety and memory management practices.",
        output_type=OutputType.CANDIDATE,
        focus_areas=(
            "Error handling strategies and patterns",
            "Concurrency safety (GCD, NSOperation, locks)",
            "Memory management (weak references and retain cycles under ARC)",
            "Logging conventions and debugging infrastructure",
        ),
        allowed_knowledge_types=frozenset({"best-practice"}),
    ),
    Dimension(
        id="agent-guidelines",
        label="Agent Development Guidelines",
        guide="Summarize the rules and constraints an agent must follow when working on this project.",
        output_type=OutputType.SKILL,
        focus_areas=(
            "Mandatory naming rules and prefix conventions",
            "Thread-safety constraints",
            "Deprecated API markers",
            "Architecture constraint comments (TODO/FIXME)",
        ),
        allowed_knowledge_types=frozenset({"boundary-constraint", "code-standard"}),
    ),
)


class DimensionCatalog:
    """Validated set of dimensions plus their ordered tier layout."""

    def __init__(
        self,
        dimensions: Iterable[Dimension],
        tiers: Sequence[Sequence[str]],
    ) -> None:
        by_id: dict[str, Dimension] = {}
        for dimension in dimensions:
            if dimension.id in by_id:
                raise CatalogError(f"duplicate dimension definition: {dimension.id!r}")
            by_id[dimension.id] = dimension

        seen: dict[str, int] = {}
        normalized: list[tuple[str, ...]] = []
        for tier_index, tier in enumerate(tiers):
            if isinstance(tier, str) or not tier:
                raise CatalogError(f"tiers[{tier_index}] must be a non-empty list of dimension ids")
            for dim_id in tier:
                if dim_id not in by_id:
                    raise CatalogError(f"tiers[{tier_index}] references unknown dimension {dim_id!r}")
                if dim_id in seen:
                    raise CatalogError(
                        f"dimension {dim_id!r} appears in tier {seen[dim_id]} and tier {tier_index}"
                    )
                seen[dim_id] = tier_index
            normalized.append(tuple(tier))

        untiered = sorted(set(by_id) - set(seen))
        if untiered:
            raise CatalogError(f"dimensions not assigned to any tier: {untiered}")

        self._dimensions = by_id
        self._tiers: tuple[tuple[str, ...], ...] = tuple(normalized)

    @property
    def tiers(self) -> tuple[tuple[str, ...], ...]:
        return self._tiers

    @property
    def ids(self) -> tuple[str, ...]:
        return tuple(dim_id for tier in self._tiers for dim_id in tier)

    def __len__(self) -> int:
        return len(self._dimensions)

    def __iter__(self) -> Iterator[Dimension]:
        for dim_id in self.ids:
            yield self._dimensions[dim_id]

    def __contains__(self, dim_id: object) -> bool:
        return dim_id in self._dimensions

    def get(self, dim_id: str) -> Dimension:
        try:
            return self._dimensions[dim_id]
        except KeyError:
            raise CatalogError(f"unknown dimension {dim_id!r}") from None

    def active_tiers(self, selected_ids: Iterable[str] | None = None) -> tuple[tuple[str, ...], ...]:
        """Tiers filtered to ``selected_ids``; empty tiers are dropped."""
        if selected_ids is None:
            return self._tiers
        selected = set(selected_ids)
        unknown = sorted(selected - set(self._dimensions))
        if unknown:
            raise CatalogError(f"unknown dimensions requested: {unknown}")
        filtered = (tuple(dim_id for dim_id in tier if dim_id in selected) for tier in self._tiers)
        return tuple(tier for tier in filtered if tier)

    def to_dict(self) -> dict[str, Any]:
        return {
            "dimensions": [dimension.to_dict() for dimension in self],
            "tiers": [list(tier) for tier in self._tiers],
        }


def builtin_catalog() -> DimensionCatalog:
    return DimensionCatalog(_BUILTIN_DIMENSIONS, DEFAULT_TIERS)


def load_catalog(path: str | Path) -> DimensionCatalog:
    """Load a catalog from YAML with top-level ``dimensions`` and ``tiers`` keys."""

    catalog_path = Path(path)
    try:
        with catalog_path.open("r", encoding="utf-8") as handle:
            loaded = cast("object", yaml.safe_load(handle))
    except FileNotFoundError as exc:
        raise CatalogError(f"{catalog_path}: catalog file not found") from exc
    except OSError as exc:
        raise CatalogError(f"{catalog_path}: unable to read catalog ({exc})") from exc
    except yaml.YAMLError as exc:
        raise CatalogError(f"{catalog_path}: invalid YAML ({exc})") from exc

    if not isinstance(loaded, Mapping):
        raise CatalogError(
            f"{catalog_path}: expected top-level YAML mapping, got {type(loaded).__name__}"
        )

    raw_dimensions = loaded.get("dimensions")
    if not isinstance(raw_dimensions, list) or not raw_dimensions:
        raise CatalogError(f"{catalog_path}: 'dimensions' must be a non-empty list")

    dimensions: list[Dimension] = []
    for index, item in enumerate(raw_dimensions):
        if not isinstance(item, Mapping):
            raise CatalogError(f"{catalog_path.name}.dimensions[{index}]: expected mapping")
        try:
            dimensions.append(Dimension.from_dict(item))
        except ValueError as exc:
            raise CatalogError(f"{catalog_path.name}.dimensions[{index}]: {exc}") from exc

    raw_tiers = loaded.get("tiers")
    if not isinstance(raw_tiers, list) or not raw_tiers:
        raise CatalogError(f"{catalog_path}: 'tiers' must be a non-empty list of lists")
    tiers = [tuple(str(dim_id) for dim_id in tier) if isinstance(tier, list) else () for tier in raw_tiers]

    return DimensionCatalog(dimensions, tiers)


def resolve_catalog(source: str | Path | None) -> DimensionCatalog:
    """Return the built-in catalog for ``None``/``"builtin"``, otherwise load YAML."""

    if source is None or str(source) == "builtin":
        return builtin_catalog()
    return load_catalog(source)


__all__ = [
    "DEFAULT_TIERS",
    "DimensionCatalog",
    "builtin_catalog",
    "load_catalog",
    "resolve_catalog",
]
