"""
pretested-integration: configuration schema and validation.

Every scalar setting is declared once in :data:`SETTINGS`. Defaults, strict
validation, ``PRETESTED_*`` environment bindings and path normalization are
all derived from that table, so adding a setting means adding one row.

Validation never stops at the first problem: it returns every issue with a
dotted field path (``git.timeout_seconds``) so operators can fix a config file
in one pass.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal

from pretested_integration.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_GIT_EXECUTABLE,
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_REMOTE_NAME,
    LOG_DIR,
    STATE_FILE,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("ci", "debug")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

SettingKind = Literal["branch", "text", "path", "number", "bool", "level"]

_PROFILE_NAME_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9_-]*$")
_SECRET_WORDS: Final[frozenset[str]] = frozenset(
    {"secret", "secrets", "token", "password", "passwd", "apikey", "private", "credential",
     "credentials", "auth"}
)
_SECRET_PHRASES: Final[tuple[str, ...]] = ("api_key", "access_token", "private_key", "password")
# Setting names that merely mention secrets and hold no secret value.
_NOT_SECRET: Final[frozenset[str]] = frozenset({"redact_secrets"})


@dataclass(frozen=True, slots=True)
class Setting:
    section: str
    key: str
    kind: SettingKind
    default: object

    @property
    def path(self) -> tuple[str, str]:
        return (self.section, self.key)

    @property
    def dotted(self) -> str:
        return f"{self.section}.{self.key}"


SETTINGS: Final[tuple[Setting, ...]] = (
    Setting("integration", "branch", "branch", DEFAULT_INTEGRATION_BRANCH),
    Setting("integration", "remote_name", "text", DEFAULT_REMOTE_NAME),
    Setting("git", "executable", "path", DEFAULT_GIT_EXECUTABLE),
    Setting("git", "timeout_seconds", "number", 600.0),
    Setting("paths", "state_file", "path", STATE_FILE),
    Setting("observability", "log_level", "level", "INFO"),
    Setting("observability", "log_dir", "path", LOG_DIR),
    Setting("observability", "log_to_stderr", "bool", False),
    Setting("observability", "redact_secrets", "bool", True),
)

SETTING_SECTIONS: Final[tuple[str, ...]] = tuple(dict.fromkeys(s.section for s in SETTINGS))

# Relative values of these settings resolve against the config file's directory;
# values starting with GIT_DIR_TOKEN resolve against the workspace's git directory.
# The git executable is looked up on PATH and is deliberately not listed.
PATH_FIELDS: Final[tuple[tuple[str, str], ...]] = (
    ("paths", "state_file"),
    ("observability", "log_dir"),
)


def _build_defaults() -> dict[str, Any]:
    config: dict[str, Any] = {"meta": {"schema_version": ConfigSchemaVersion}}
    for setting in SETTINGS:
        config.setdefault(setting.section, {})[setting.key] = setting.default
    config["profiles"] = {
        "ci": {"observability": {"log_to_stderr": True}},
        "debug": {"observability": {"log_level": "DEBUG", "log_to_stderr": True}},
    }
    return config


DEFAULT_CONFIG: Final[dict[str, Any]] = _build_defaults()


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails; carries every issue found."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {issue.path}: {issue.message}" for issue in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "- unknown validation failure"))


def default_config() -> dict[str, Any]:
    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade pretested.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade pretested-integration"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested mappings merge key by key."""
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            merged[key] = merge_config(current, value)
        elif isinstance(value, Mapping):
            merged[key] = merge_config({}, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Overlay ``profiles.<profile>`` onto ``config`` and validate the result."""
    if profile is None or not profile.strip():
        return merge_config({}, config)
    name = profile.strip()
    profiles = config.get("profiles")
    overlay = profiles.get(name) if isinstance(profiles, Mapping) else None
    if overlay is None:
        raise ConfigValidationError([ConfigValidationIssue("profiles", f"profile {name!r} is not defined")])
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError(
            [ConfigValidationIssue(f"profiles.{name}", "profile overlay must be an object")]
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=name)


def validate_config(
    config: Mapping[str, object] | object, *, active_profile: str | None = None
) -> ConfigValidationResult:
    """Check ``config`` against :data:`SETTINGS` and return the normalized copy or issues."""
    issues: list[ConfigValidationIssue] = []
    if not isinstance(config, Mapping):
        issues.append(ConfigValidationIssue("<root>", f"expected object, got {type(config).__name__}"))
        return ConfigValidationResult(None, tuple(issues))

    _reject_unknown(config, {"meta", "profiles", *SETTING_SECTIONS}, "", issues)
    normalized: dict[str, Any] = {}

    meta = _section_mapping(config, "meta", "meta", issues, required=True)
    if meta is not None:
        normalized["meta"] = _check_meta(meta, issues)
    for section in SETTING_SECTIONS:
        raw = _section_mapping(config, section, section, issues, required=True)
        if raw is not None:
            normalized[section] = _check_section(section, raw, section, issues, partial=False)

    if "profiles" in config:
        profiles = _section_mapping(config, "profiles", "profiles", issues, required=True)
        if profiles is not None:
            normalized["profiles"] = _check_profiles(profiles, issues)

    if active_profile is not None and active_profile.strip():
        if active_profile.strip() not in normalized.get("profiles", {}):
            issues.append(
                ConfigValidationIssue("profiles", f"profile {active_profile.strip()!r} is not defined")
            )

    if issues:
        return ConfigValidationResult(None, tuple(issues))
    return ConfigValidationResult(normalized, ())


def assert_valid_config(
    config: Mapping[str, object] | object, *, active_profile: str | None = None
) -> dict[str, Any]:
    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a key-sorted copy with secret-looking values replaced by ``<redacted>``."""
    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def is_secret_key(key: str) -> bool:
    if key in _NOT_SECRET:
        return False
    snake = re.sub(r"([a-z0-9])([A-Z])", r"\1_\2", key.strip()).lower()
    snake = re.sub(r"[^a-z0-9]+", "_", snake).strip("_")
    if any(phrase in snake for phrase in _SECRET_PHRASES):
        return True
    return any(word in _SECRET_WORDS for word in snake.split("_"))


def _check_meta(meta: Mapping[str, object], issues: list[ConfigValidationIssue]) -> dict[str, Any]:
    _reject_unknown(meta, {"schema_version"}, "meta", issues)
    if "schema_version" not in meta:
        issues.append(ConfigValidationIssue("meta.schema_version", "missing required field"))
        return {}
    version = meta["schema_version"]
    if isinstance(version, bool) or not isinstance(version, int):
        issues.append(
            ConfigValidationIssue("meta.schema_version", f"expected integer, got {type(version).__name__}")
        )
        return {}
    if version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))
    return {"schema_version": version}


def _check_section(
    section: str,
    raw: Mapping[str, object],
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    settings = [setting for setting in SETTINGS if setting.section == section]
    _reject_unknown(raw, {setting.key for setting in settings}, path, issues)
    out: dict[str, Any] = {}
    for setting in settings:
        field_path = f"{path}.{setting.key}"
        if setting.key not in raw:
            if not partial:
                issues.append(ConfigValidationIssue(field_path, "missing required field"))
            continue
        value, problem = _coerce(setting.kind, raw[setting.key])
        if problem is not None:
            issues.append(ConfigValidationIssue(field_path, problem))
        else:
            out[setting.key] = value
    return out


def _check_profiles(
    profiles: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for name in sorted(profiles):
        path = f"profiles.{name}"
        if not _PROFILE_NAME_RE.fullmatch(name):
            issues.append(ConfigValidationIssue(path, "profile name must match ^[a-z][a-z0-9_-]*$"))
            continue
        overlay = profiles[name]
        if not isinstance(overlay, Mapping):
            issues.append(ConfigValidationIssue(path, f"expected object, got {type(overlay).__name__}"))
            continue
        _reject_unknown(overlay, set(SETTING_SECTIONS), path, issues)
        checked: dict[str, Any] = {}
        for section in SETTING_SECTIONS:
            raw = _section_mapping(overlay, section, f"{path}.{section}", issues, required=False)
            if raw is not None:
                checked[section] = _check_section(section, raw, f"{path}.{section}", issues, partial=True)
        out[name] = checked
    return out


def _coerce(kind: SettingKind, value: object) -> tuple[object, str | None]:
    if kind == "bool":
        if isinstance(value, bool):
            return value, None
        return None, f"expected boolean, got {type(value).__name__}"
    if kind == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None, f"expected number, got {type(value).__name__}"
        if not math.isfinite(value):
            return None, "must be finite"
        if value < 0:
            return None, "must be >= 0.0"
        return float(value), None

    if not isinstance(value, str):
        return None, f"expected string, got {type(value).__name__}"
    text = value.strip()
    if kind == "branch":
        # Unset or blank means the well-known default branch.
        return text or DEFAULT_INTEGRATION_BRANCH, None
    if not text:
        return None, "must not be empty"
    if kind == "path" and "\x00" in text:
        return None, "must not contain NUL bytes"
    if kind == "level" and text not in LOG_LEVELS:
        return None, f"invalid value {text!r}; expected one of: {', '.join(sorted(LOG_LEVELS))}"
    return text, None


def _section_mapping(
    parent: Mapping[str, object],
    key: str,
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    required: bool,
) -> Mapping[str, object] | None:
    if key not in parent:
        if required:
            issues.append(ConfigValidationIssue(path, "missing required field"))
        return None
    value = parent[key]
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    return value


def _reject_unknown(
    payload: Mapping[str, object], allowed: set[str], path: str, issues: list[ConfigValidationIssue]
) -> None:
    for key in sorted(str(k) for k in payload):
        if key in allowed:
            continue
        field_path = f"{path}.{key}" if path else key
        if is_secret_key(key):
            issues.append(
                ConfigValidationIssue(
                    field_path,
                    "embedded secret values are forbidden; use a git credential helper "
                    "or an environment variable",
                )
            )
        else:
            issues.append(ConfigValidationIssue(field_path, "unknown field"))


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if is_secret_key(key) else _redact(value[key]) for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "SETTINGS",
    "SETTING_SECTIONS",
    "Setting",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "is_secret_key",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
