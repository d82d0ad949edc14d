"""
knowledge-bootstrap — configuration schema and validation.

File: src/knowledge_bootstrap/config/schema.py

Purpose
- Define the built-in defaults and the field rules every config layer is
  checked against.

Notes
- Each section is described by a table of ``_Field`` rules; validation walks
  the table instead of hand-written per-section code.
- Profile overlays are validated partially (any subset of fields), the
  effective config fully.
- Keys that look like credentials are rejected outright: the pipeline never
  needs secrets in its config file.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from knowledge_bootstrap.constants import (
    CHECKPOINT_TTL_SECONDS,
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CONCURRENCY,
    DIGEST_SUMMARY_CHARS,
    EXPLORE_TIMEOUT_SECONDS,
    FORMAT_TIMEOUT_SECONDS,
    MIN_ANALYSIS_CHARS,
)
from knowledge_bootstrap.errors import KnowledgeBootstrapError

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("fast", "thorough", "serial")
CHECKPOINT_BACKENDS: Final[tuple[str, ...]] = ("file", "sqlite", "memory")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

# Settings resolved relative to the config file's directory.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "run_root"),
    ("paths", "catalog"),
    ("observability", "log_dir"),
)

_PROFILE_NAME = re.compile(r"^[a-z][a-z0-9_-]*$")
_WORD_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_SEPARATORS = re.compile(r"[^a-z0-9]+")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private", "credential", "auth"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = (
    "api_key",
    "access_token",
    "client_secret",
    "private_key",
    "password",
    "secret",
)
REDACTED: Final[str] = "<redacted>"


class MetaConfig(TypedDict):
    schema_version: int


class PipelineConfig(TypedDict):
    concurrency: int
    parallel: bool
    explore_timeout_seconds: float
    format_timeout_seconds: float
    min_analysis_chars: int
    digest_summary_chars: int


class CheckpointsConfig(TypedDict):
    backend: Literal["file", "sqlite", "memory"]
    ttl_seconds: float
    directory: str


class PathsConfig(TypedDict):
    run_root: str
    catalog: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    pipeline: dict[str, object]
    checkpoints: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class BootstrapConfig(TypedDict):
    meta: MetaConfig
    pipeline: PipelineConfig
    checkpoints: CheckpointsConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[BootstrapConfig] = {
    "meta": {"schema_version": ConfigSchemaVersion},
    "pipeline": {
        "concurrency": DEFAULT_CONCURRENCY,
        "parallel": True,
        "explore_timeout_seconds": EXPLORE_TIMEOUT_SECONDS,
        "format_timeout_seconds": FORMAT_TIMEOUT_SECONDS,
        "min_analysis_chars": MIN_ANALYSIS_CHARS,
        "digest_summary_chars": DIGEST_SUMMARY_CHARS,
    },
    "checkpoints": {
        "backend": "file",
        "ttl_seconds": CHECKPOINT_TTL_SECONDS,
        "directory": ".autosnippet/bootstrap-checkpoint",
    },
    "paths": {"run_root": ".", "catalog": "builtin"},
    "observability": {
        "log_level": "INFO",
        "log_dir": ".autosnippet/logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "fast": {
            "pipeline": {
                "concurrency": 6,
                "explore_timeout_seconds": 90.0,
                "format_timeout_seconds": 60.0,
            },
        },
        "thorough": {
            "pipeline": {
                "concurrency": 2,
                "explore_timeout_seconds": 360.0,
                "format_timeout_seconds": 240.0,
            },
        },
        "serial": {"pipeline": {"concurrency": 1, "parallel": False}},
    },
}


# ---------------------------------------------------------------------------
# Field rules
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class _Field:
    kind: Literal["int", "seconds", "bool", "choice", "path"]
    minimum: int = 0
    choices: tuple[str, ...] = ()


_SECTIONS: Final[dict[str, dict[str, _Field]]] = {
    "pipeline": {
        "concurrency": _Field("int", minimum=1),
        "parallel": _Field("bool"),
        "explore_timeout_seconds": _Field("seconds"),
        "format_timeout_seconds": _Field("seconds"),
        "min_analysis_chars": _Field("int", minimum=0),
        "digest_summary_chars": _Field("int", minimum=1),
    },
    "checkpoints": {
        "backend": _Field("choice", choices=CHECKPOINT_BACKENDS),
        "ttl_seconds": _Field("seconds"),
        "directory": _Field("path"),
    },
    "paths": {
        "run_root": _Field("path"),
        "catalog": _Field("path"),
    },
    "observability": {
        "log_level": _Field("choice", choices=LOG_LEVELS),
        "log_dir": _Field("path"),
        "log_to_stdout": _Field("bool"),
        "redact_secrets": _Field("bool"),
    },
}
_META_FIELDS: Final[dict[str, _Field]] = {"schema_version": _Field("int", minimum=1)}


class _Invalid(ValueError):
    pass


def _check_field(rule: _Field, value: object) -> object:
    type_name = type(value).__name__
    if rule.kind == "bool":
        if not isinstance(value, bool):
            raise _Invalid(f"expected boolean, got {type_name}")
        return value

    if rule.kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise _Invalid(f"expected integer, got {type_name}")
        if value < rule.minimum:
            raise _Invalid(f"must be >= {rule.minimum}")
        return value

    if rule.kind == "seconds":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise _Invalid(f"expected number, got {type_name}")
        seconds = float(value)
        if not math.isfinite(seconds):
            raise _Invalid("must be finite")
        if seconds <= 0:
            raise _Invalid("must be > 0")
        return seconds

    if not isinstance(value, str):
        raise _Invalid(f"expected string, got {type_name}")
    text = value.strip()
    if not text:
        raise _Invalid("must not be empty")
    if rule.kind == "choice" and text not in rule.choices:
        raise _Invalid(f"invalid value {text!r}; expected one of: {', '.join(sorted(rule.choices))}")
    if rule.kind == "path" and "\x00" in text:
        raise _Invalid("must not contain NUL bytes")
    return text


# ---------------------------------------------------------------------------
# Validation results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Normalized config when valid, otherwise the list of issues."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(KnowledgeBootstrapError, ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))


class _Validator:
    """Walks a payload against the field rules, collecting issues in order."""

    def __init__(self) -> None:
        self.issues: list[ConfigValidationIssue] = []

    def report(self, path: str, message: str) -> None:
        self.issues.append(ConfigValidationIssue(path=path, message=message))

    def mapping(self, value: object, path: str) -> dict[str, object] | None:
        if not isinstance(value, Mapping):
            self.report(path, f"expected object, got {type(value).__name__}")
            return None
        out: dict[str, object] = {}
        for key, item in value.items():
            if isinstance(key, str):
                out[key] = item
            else:
                self.report(path, f"object key must be string, got {type(key).__name__}")
        return out

    def section(
        self, payload: Mapping[str, object], rules: Mapping[str, _Field], path: str, *, partial: bool
    ) -> dict[str, Any]:
        self.unknown_keys(payload, rules.keys(), path)
        out: dict[str, Any] = {}
        for name in sorted(rules):
            field_path = _join(path, name)
            if name not in payload:
                if not partial:
                    self.report(field_path, "missing required field")
                continue
            try:
                out[name] = _check_field(rules[name], payload[name])
            except _Invalid as exc:
                self.report(field_path, str(exc))
        return out

    def unknown_keys(self, payload: Mapping[str, object], allowed: Iterable[str], path: str) -> None:
        for key in sorted(set(payload) - set(allowed)):
            message = "embedded secret values are forbidden" if _is_sensitive(key) else "unknown field"
            self.report(_join(path, key), message)

    def sections(self, payload: Mapping[str, object], path: str, *, partial: bool) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name, rules in _SECTIONS.items():
            section_path = _join(path, name)
            if name not in payload:
                if not partial:
                    self.report(section_path, "missing required field")
                continue
            section = self.mapping(payload[name], section_path)
            if section is not None:
                out[name] = self.section(section, rules, section_path, partial=partial)
        return out

    def root(self, payload: Mapping[str, object]) -> dict[str, Any]:
        self.unknown_keys(payload, {"meta", "profiles", *_SECTIONS}, "")
        out: dict[str, Any] = {}

        meta = self.mapping(payload["meta"], "meta") if "meta" in payload else None
        if "meta" not in payload:
            self.report("meta", "missing required field")
        if meta is not None:
            out["meta"] = self.section(meta, _META_FIELDS, "meta", partial=False)
            version = out["meta"].get("schema_version")
            if version is not None and version != ConfigSchemaVersion:
                self.report("meta.schema_version", migration_guidance(version))

        out.update(self.sections(payload, "", partial=False))

        if "profiles" in payload:
            profiles = self.mapping(payload["profiles"], "profiles")
            if profiles is not None:
                out["profiles"] = self.profiles(profiles)
        return out

    def profiles(self, payload: Mapping[str, object]) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for name in sorted(payload):
            path = _join("profiles", name)
            if not _PROFILE_NAME.fullmatch(name):
                self.report(path, "profile name must match ^[a-z][a-z0-9_-]*$")
                continue
            overlay = self.mapping(payload[name], path)
            if overlay is None:
                continue
            self.unknown_keys(overlay, _SECTIONS.keys(), path)
            out[name] = self.sections(overlay, path, partial=True)
        return out


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def default_config() -> BootstrapConfig:
    """Fresh deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade bootstrap.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the knowledge-bootstrap runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; neither input is mutated."""

    merged: dict[str, Any] = _clone(base)
    for key in sorted(overlay):
        value = overlay[key]
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _clone(value)
    return merged


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate ``config`` (and, when named, the config with a profile applied)."""

    validator = _Validator()
    payload = validator.mapping(config, "<root>")
    if payload is None:
        return ConfigValidationResult(config=None, issues=tuple(validator.issues))

    normalized = validator.root(payload)

    profile = active_profile.strip() if isinstance(active_profile, str) else ""
    if profile:
        profiles = normalized.get("profiles")
        if not isinstance(profiles, Mapping) or profile not in profiles:
            validator.report("profiles", f"profile {profile!r} is not defined")
        else:
            validator.root(merge_config(normalized, profiles[profile]))

    if validator.issues:
        return ConfigValidationResult(config=None, issues=tuple(validator.issues))
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Merge the named profile over ``config`` and validate the result."""

    selected = (profile or "").strip()
    if not selected:
        return _clone(config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", "profiles section is required"),)
        )
    overlay = profiles.get(selected)
    if overlay is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Copy of ``config`` safe for logs and CLI output."""

    if not isinstance(config, Mapping):
        return {}
    return {
        key: REDACTED if _is_sensitive(key) else _redact(config[key])
        for key in sorted(config)
        if isinstance(key, str)
    }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _redact(value: object) -> object:
    if isinstance(value, Mapping):
        return redact_config(value)
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


def _is_sensitive(key: str) -> bool:
    words = _SEPARATORS.sub("_", _WORD_BOUNDARY.sub(r"\1_\2", key.strip()).lower()).strip("_")
    if any(phrase in words for phrase in _SECRET_PHRASES):
        return True
    return any(word in _SECRET_WORDS for word in words.split("_") if word)


def _clone(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _clone(value[key]) for key in sorted(value) if isinstance(key, str)}
    if isinstance(value, list):
        return [_clone(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_clone(item) for item in value)
    return copy.deepcopy(value)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "BootstrapConfig",
    "CHECKPOINT_BACKENDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ProfileOverlay",
    "REDACTED",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
