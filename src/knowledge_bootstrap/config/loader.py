"""
knowledge-bootstrap — runtime config loader.

File: src/knowledge_bootstrap/config/loader.py

Purpose
- Resolve the effective bootstrap config from four layers, lowest first:
  built-in defaults, ``bootstrap.toml``, ``KB_*`` environment variables and
  dotted CLI overrides such as ``pipeline.concurrency=2``.

Notes
- The environment layer only recognizes variables that name an existing
  scalar setting; everything else in the environment is ignored.
- Path settings are resolved against the directory holding the config file,
  except for the ``builtin`` catalog marker.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path
from typing import Any, Final

from knowledge_bootstrap.config.schema import (
    PATH_FIELDS,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from knowledge_bootstrap.errors import KnowledgeBootstrapError

DEFAULT_CONFIG_FILE: Final[str] = "bootstrap.toml"
ENV_PREFIX: Final[str] = "KB_"
BUILTIN_CATALOG: Final[str] = "builtin"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_ENV_EXCLUDED_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})

ConfigPath = tuple[str, ...]


class ConfigLoadError(KnowledgeBootstrapError, ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Return the validated effective config.

    An explicit ``config_path`` must exist; without one, ``./bootstrap.toml``
    is read when present. Profile selection order is the ``profile`` argument,
    then a ``profile`` CLI override, then ``KB_PROFILE``.
    """

    source = _config_source(config_path)
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})

    layered = merge_config(default_config(), _read_toml(source, required=config_path is not None))
    layered = assert_valid_config(layered)

    active_profile = _pick_profile(profile, overrides, env)
    if active_profile is not None:
        layered = apply_profile_overlay(layered, active_profile)

    layered = merge_config(layered, _environment_layer(layered, env))
    layered = merge_config(layered, _cli_layer(overrides))
    layered = assert_valid_config(layered, active_profile=active_profile)

    resolved = normalize_paths(layered, base_dir=source.parent)
    return assert_valid_config(resolved, active_profile=active_profile)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve every path setting, including those inside profile overlays."""

    resolved = merge_config({}, config)
    targets: list[ConfigPath] = list(PATH_FIELDS)

    profiles = resolved.get("profiles")
    if isinstance(profiles, Mapping):
        for name in sorted(profiles):
            overlay = profiles[name]
            if isinstance(overlay, Mapping):
                targets.extend(
                    ("profiles", name, *field) for field in PATH_FIELDS if field[0] in overlay
                )

    for target in targets:
        raw = _lookup(resolved, target)
        if isinstance(raw, str) and raw != BUILTIN_CATALOG:
            _assign(resolved, target, _absolute_posix(raw, base_dir))
    return resolved


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Deterministic compact JSON of the redacted config."""

    return json.dumps(
        redact_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


# ---------------------------------------------------------------------------
# Layers
# ---------------------------------------------------------------------------


def _config_source(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _pick_profile(
    explicit: str | None,
    overrides: Mapping[str, object],
    env: Mapping[str, str],
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
        if candidate is not None and not isinstance(candidate, str):
            raise ConfigLoadError("cli override 'profile' must be a string")
    if candidate is None:
        candidate = env.get(f"{ENV_PREFIX}PROFILE")
    if candidate is None:
        return None
    return str(candidate).strip() or None


def _environment_layer(config: Mapping[str, object], env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for path, current in _scalar_settings(config):
        name = ENV_PREFIX + "_".join(part.upper() for part in path)
        raw = env.get(name)
        if raw is None:
            continue
        coerce = _COERCERS.get(type(current))
        if coerce is None:
            continue
        try:
            value = coerce(raw.strip())
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {'.'.join(path)} {exc}") from exc
        _assign(layer, path, value)
    return layer


def _scalar_settings(
    payload: Mapping[str, object], prefix: ConfigPath = ()
) -> Iterator[tuple[ConfigPath, object]]:
    for key in sorted(payload):
        if not prefix and key in _ENV_EXCLUDED_SECTIONS:
            continue
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _scalar_settings(value, (*prefix, key))
        else:
            yield (*prefix, key), value


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for key in sorted(overrides):
        if key == "profile":
            continue
        path = tuple(part for part in key.split(".") if part)
        if not path:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = overrides[key]
        _assign(layer, path, merge_config({}, value) if isinstance(value, Mapping) else value)
    return layer


# ---------------------------------------------------------------------------
# Coercion and nested access
# ---------------------------------------------------------------------------


def _to_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _to_int(raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ValueError("must be an integer") from None


def _to_float(raw: str) -> float:
    try:
        return float(raw)
    except ValueError:
        raise ValueError("must be a number") from None


_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    bool: _to_bool,
    int: _to_int,
    float: _to_float,
    str: str,
}


def _lookup(payload: Mapping[str, object], path: ConfigPath) -> object | None:
    node: object = payload
    for part in path:
        if not isinstance(node, Mapping) or part not in node:
            return None
        node = node[part]
    return node


def _assign(target: dict[str, Any], path: ConfigPath, value: object) -> None:
    node = target
    for part in path[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = node[part] = {}
        node = child
    node[path[-1]] = value


def _absolute_posix(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "BUILTIN_CATALOG",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "dump_effective_config",
    "load_config",
    "normalize_paths",
]
