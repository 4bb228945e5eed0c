"""
pretested-integration config package public API.

Loading from ``pretested.toml`` + ``PRETESTED_`` env overrides, with structured
validation and load errors.
"""

from pretested_integration.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV_VAR,
    ConfigLoadError,
    bind_git_dir,
    dump_effective_config,
    env_bindings,
    load_config,
    normalize_paths,
)
from pretested_integration.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    SETTINGS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    Setting,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "PROFILE_ENV_VAR",
    "SETTINGS",
    "Setting",
    "apply_profile_overlay",
    "assert_valid_config",
    "bind_git_dir",
    "default_config",
    "dump_effective_config",
    "env_bindings",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
