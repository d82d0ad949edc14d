"""Configuration loading, validation and profile overlays for knowledge-bootstrap."""

from knowledge_bootstrap.config.loader import (
    BUILTIN_CATALOG,
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from knowledge_bootstrap.config.schema import (
    BUILTIN_PROFILE_NAMES,
    CHECKPOINT_BACKENDS,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    BootstrapConfig,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ProfileOverlay,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_CATALOG",
    "BUILTIN_PROFILE_NAMES",
    "BootstrapConfig",
    "CHECKPOINT_BACKENDS",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "ProfileOverlay",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
