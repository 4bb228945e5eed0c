"""Stable constants shared across the integration workflow."""

from __future__ import annotations

from typing import Final

# Git branch and remote names.
DEFAULT_INTEGRATION_BRANCH: Final[str] = "master"
DEFAULT_REMOTE_NAME: Final[str] = "origin"
DEFAULT_GIT_EXECUTABLE: Final[str] = "git"

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1
CHANGE_LEDGER_SCHEMA_VERSION: Final[int] = 1

# Default runtime paths live in the workspace's git directory, out of reach of
# `git clean`. The token is replaced with `git rev-parse --absolute-git-dir`, which
# also covers linked worktrees and submodule checkouts where `.git` is a file.
GIT_DIR_TOKEN: Final[str] = "{git_dir}"
STATE_FILE: Final[str] = f"{GIT_DIR_TOKEN}/pretested/state.json"
LOG_DIR: Final[str] = f"{GIT_DIR_TOKEN}/pretested/logs"

# Environment variables a build host exposes for one invocation.
ENV_REMOTE_URL: Final[str] = "GIT_URL"
ENV_TOPIC_BRANCH: Final[str] = "GIT_BRANCH"
ENV_TOPIC_HEAD: Final[str] = "GIT_COMMIT"

# Prefix for human-readable console lines.
LOG_PREFIX: Final[str] = "[pretested] "

__all__ = [
    "CHANGE_LEDGER_SCHEMA_VERSION",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_GIT_EXECUTABLE",
    "DEFAULT_INTEGRATION_BRANCH",
    "DEFAULT_REMOTE_NAME",
    "ENV_REMOTE_URL",
    "ENV_TOPIC_BRANCH",
    "ENV_TOPIC_HEAD",
    "GIT_DIR_TOKEN",
    "LOG_DIR",
    "LOG_PREFIX",
    "STATE_FILE",
]
