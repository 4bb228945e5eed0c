"""
pretested-integration: runtime config loader.

Effective configuration is assembled in layers, later layers winning:

1. built-in defaults (:data:`~pretested_integration.config.schema.DEFAULT_CONFIG`)
2. ``pretested.toml`` in the workspace, or the file given with ``--config``
3. the selected profile overlay (``--profile``, ``PRETESTED_PROFILE``)
4. ``PRETESTED_<SECTION>_<KEY>`` environment variables
5. CLI overrides such as ``--branch``

Relative path settings resolve against the directory of the config file, so
a job can keep its ledger and logs next to a checked-in ``pretested.toml``.
Paths starting with ``{git_dir}`` (the defaults) stay symbolic until
:func:`bind_git_dir` is given the workspace's git directory.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Final

from pretested_integration.config.schema import (
    PATH_FIELDS,
    SETTINGS,
    Setting,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)
from pretested_integration.constants import GIT_DIR_TOKEN

DEFAULT_CONFIG_FILE: Final[str] = "pretested.toml"
ENV_PREFIX: Final[str] = "PRETESTED_"
PROFILE_ENV_VAR: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUE_WORDS: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSE_WORDS: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be read or an override cannot be coerced."""


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
    base_dir: str | Path | None = None,
) -> dict[str, Any]:
    """Return the validated effective configuration.

    Without ``config_path``, ``pretested.toml`` under ``base_dir`` (default:
    the current directory) is read when it exists. An explicit ``config_path``
    must exist. ``cli_overrides`` maps dotted keys (``"integration.branch"``)
    to values; ``None`` values are ignored.
    """
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    if config_path is not None:
        source = Path(config_path).expanduser().resolve()
        file_layer = _read_toml(source, required=True)
    else:
        root = Path.cwd() if base_dir is None else Path(base_dir).expanduser()
        source = (root / DEFAULT_CONFIG_FILE).resolve()
        file_layer = _read_toml(source, required=False)

    selected = _select_profile(profile, overrides, env)

    config = assert_valid_config(merge_config(default_config(), file_layer))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config, active_profile=selected)
    return normalize_paths(config, base_dir=source.parent)


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Make path settings absolute, including those inside profile overlays."""
    normalized = merge_config({}, config)
    scopes: list[dict[str, Any]] = [normalized]
    profiles = normalized.get("profiles")
    if isinstance(profiles, dict):
        scopes.extend(overlay for overlay in profiles.values() if isinstance(overlay, dict))
    for scope in scopes:
        for section, key in PATH_FIELDS:
            holder = scope.get(section)
            value = holder.get(key) if isinstance(holder, dict) else None
            if isinstance(value, str) and not value.startswith(GIT_DIR_TOKEN):
                holder[key] = _absolute(value, base_dir)
    return normalized


def bind_git_dir(config: Mapping[str, object], git_dir: Path) -> dict[str, Any]:
    """Replace a leading ``{git_dir}`` in path settings with ``git_dir``."""
    bound = merge_config({}, config)
    for section, key in PATH_FIELDS:
        holder = bound.get(section)
        value = holder.get(key) if isinstance(holder, dict) else None
        if isinstance(value, str) and value.startswith(GIT_DIR_TOKEN):
            rest = value[len(GIT_DIR_TOKEN) :].lstrip("/")
            holder[key] = Path(os.path.normpath(git_dir / rest)).as_posix()
    return bound


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    """Redacted, key-sorted JSON; compact unless ``indent`` is given."""
    separators = (",", ":") if indent is None else (",", ": ")
    return json.dumps(
        redact_config(config), sort_keys=True, indent=indent, separators=separators, ensure_ascii=False
    )


def env_bindings() -> dict[str, tuple[str, str]]:
    """Map every supported ``PRETESTED_*`` variable to the setting it overrides."""
    return {_env_name(setting): setting.path for setting in SETTINGS}


def _read_toml(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], environ: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = environ.get(PROFILE_ENV_VAR)
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    return candidate.strip() or None


def _env_layer(environ: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for setting in SETTINGS:
        name = _env_name(setting)
        if name in environ:
            layer.setdefault(setting.section, {})[setting.key] = _parse_env(setting, name, environ[name])
    return layer


def _parse_env(setting: Setting, name: str, raw: str) -> object:
    text = raw.strip()
    if setting.kind == "bool":
        if text.lower() in _TRUE_WORDS:
            return True
        if text.lower() in _FALSE_WORDS:
            return False
        raise ConfigLoadError(
            f"{name} -> {setting.dotted} must be a boolean (true/false/1/0/yes/no/on/off)"
        )
    if setting.kind == "number":
        try:
            return float(text)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {setting.dotted} must be a number") from exc
    return text


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in overrides.items():
        if dotted == "profile" or value is None:
            continue
        parts = [part for part in dotted.split(".") if part]
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {dotted!r}")
        cursor = layer
        for part in parts[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[parts[-1]] = value
    return layer


def _env_name(setting: Setting) -> str:
    return f"{ENV_PREFIX}{setting.section.upper()}_{setting.key.upper()}"


def _absolute(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PROFILE_ENV_VAR",
    "bind_git_dir",
    "dump_effective_config",
    "env_bindings",
    "load_config",
    "normalize_paths",
]
