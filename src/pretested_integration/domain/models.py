"""Immutable value types for one pretested integration invocation."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Final

import yaml

from pretested_integration.constants import (
    DEFAULT_INTEGRATION_BRANCH,
    DEFAULT_REMOTE_NAME,
    ENV_REMOTE_URL,
    ENV_TOPIC_BRANCH,
    ENV_TOPIC_HEAD,
)
from pretested_integration.domain.errors import InvalidRevision


_REVISION_RE: Final[re.Pattern[str]] = re.compile(r"^(?:[0-9a-f]{40}|[0-9a-f]{64})$")
_URL_USERINFO_RE: Final[re.Pattern[str]] = re.compile(r"^([A-Za-z][A-Za-z0-9+.-]*://)[^/@\s]+@")
_REDACTED_USERINFO: Final[str] = "***REDACTED***@"

_CONTEXT_KEYS: Final[frozenset[str]] = frozenset(
    {"remote_url", "topic_branch", "topic_head", "build_already_failed"}
)


def normalize_revision(value: object, *, field_name: str = "revision") -> str:
    """Return ``value`` as a lowercase full-length hash or raise ``InvalidRevision``."""
    if not isinstance(value, str):
        raise InvalidRevision(
            f"{field_name} must be a string, got {type(value).__name__}",
            revision=repr(value),
        )
    normalized = value.strip().lower()
    if not _REVISION_RE.fullmatch(normalized):
        raise InvalidRevision(
            f"{field_name} is not a full commit hash: {value!r}",
            revision=value,
        )
    return normalized


def redact_remote_url(url: str) -> str:
    """Strip embedded ``user:password@`` credentials from a remote URL."""
    return _URL_USERINFO_RE.sub(lambda match: f"{match.group(1)}{_REDACTED_USERINFO}", url)


class WorkflowOutcome(StrEnum):
    """Result of a build invocation relevant to integration."""

    SUCCESS = "success"
    FAILURE = "failure"
    MERGE_CONFLICT = "merge-conflict"


class InvocationState(StrEnum):
    """States of the per-invocation prepare/build/commit-or-rollback machine."""

    IDLE = "idle"
    PREPARING = "preparing"
    PREPARED = "prepared"
    CONFLICT = "conflict"
    BUILDING = "building"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAULTED = "faulted"


TERMINAL_STATES: Final[frozenset[InvocationState]] = frozenset(
    {InvocationState.COMMITTED, InvocationState.ROLLED_BACK, InvocationState.FAULTED}
)

ALLOWED_TRANSITIONS: Final[Mapping[InvocationState, frozenset[InvocationState]]] = {
    InvocationState.IDLE: frozenset({InvocationState.PREPARING}),
    InvocationState.PREPARING: frozenset({InvocationState.PREPARED, InvocationState.CONFLICT}),
    InvocationState.PREPARED: frozenset({InvocationState.BUILDING}),
    InvocationState.CONFLICT: frozenset({InvocationState.ROLLING_BACK}),
    InvocationState.BUILDING: frozenset(
        {InvocationState.COMMITTING, InvocationState.ROLLING_BACK}
    ),
    InvocationState.COMMITTING: frozenset({InvocationState.COMMITTED}),
    InvocationState.ROLLING_BACK: frozenset({InvocationState.ROLLED_BACK}),
    InvocationState.COMMITTED: frozenset(),
    InvocationState.ROLLED_BACK: frozenset(),
    InvocationState.FAULTED: frozenset(),
}


class InvalidTransitionError(ValueError):
    """Raised when an invocation is driven through an illegal state change."""


def can_transition(current: InvocationState, target: InvocationState) -> bool:
    """Return whether ``current -> target`` is legal.

    Every non-terminal state may fault.
    """
    if target == InvocationState.FAULTED:
        return current not in TERMINAL_STATES
    return target in ALLOWED_TRANSITIONS[current]


@dataclass(frozen=True, slots=True)
class ChangeIdentifier:
    """Opaque handle to one candidate unit of work (a topic-branch head revision)."""

    revision: str

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "revision", normalize_revision(self.revision, field_name="change revision")
        )

    @property
    def short(self) -> str:
        return self.revision[:12]

    def __str__(self) -> str:
        return self.revision


@dataclass(frozen=True, slots=True)
class BranchReference:
    """A named branch and its head revision as resolved at one point in time."""

    name: str
    head: str

    def __post_init__(self) -> None:
        if not isinstance(self.name, str) or not self.name.strip():
            raise ValueError("BranchReference.name must be a non-empty string")
        object.__setattr__(self, "name", self.name.strip())
        object.__setattr__(
            self,
            "head",
            normalize_revision(self.head, field_name=f"head of branch {self.name.strip()!r}"),
        )


@dataclass(frozen=True, slots=True)
class IntegrationConfig:
    """Immutable workflow configuration captured once at construction."""

    branch: str = DEFAULT_INTEGRATION_BRANCH
    remote_name: str = DEFAULT_REMOTE_NAME

    def __post_init__(self) -> None:
        branch = self.branch.strip() if isinstance(self.branch, str) else ""
        remote = self.remote_name.strip() if isinstance(self.remote_name, str) else ""
        object.__setattr__(self, "branch", branch or DEFAULT_INTEGRATION_BRANCH)
        object.__setattr__(self, "remote_name", remote or DEFAULT_REMOTE_NAME)

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> IntegrationConfig:
        """Build from a validated config mapping (the ``[integration]`` table)."""
        section = config.get("integration")
        if not isinstance(section, Mapping):
            return cls()
        branch = section.get("branch")
        remote_name = section.get("remote_name")
        return cls(
            branch=branch if isinstance(branch, str) else DEFAULT_INTEGRATION_BRANCH,
            remote_name=remote_name if isinstance(remote_name, str) else DEFAULT_REMOTE_NAME,
        )


@dataclass(frozen=True, slots=True)
class TriggerContext:
    """Read-only snapshot of the environment for one build invocation."""

    remote_url: str
    topic_branch: str
    topic_head: str
    build_already_failed: bool = False

    def __post_init__(self) -> None:
        for name in ("remote_url", "topic_branch", "topic_head"):
            value = getattr(self, name)
            if not isinstance(value, str):
                raise ValueError(f"TriggerContext.{name} must be a string")
            stripped = value.strip()
            if name != "topic_head" and not stripped:
                raise ValueError(f"TriggerContext.{name} must not be empty")
            object.__setattr__(self, name, stripped)
        if not isinstance(self.build_already_failed, bool):
            raise ValueError("TriggerContext.build_already_failed must be a boolean")

    def __repr__(self) -> str:
        return (
            "TriggerContext("
            f"remote_url={redact_remote_url(self.remote_url)!r}, "
            f"topic_branch={self.topic_branch!r}, "
            f"topic_head={self.topic_head!r}, "
            f"build_already_failed={self.build_already_failed!r})"
        )

    @property
    def display_remote_url(self) -> str:
        return redact_remote_url(self.remote_url)

    def to_dict(self) -> dict[str, object]:
        return {
            "remote_url": self.display_remote_url,
            "topic_branch": self.topic_branch,
            "topic_head": self.topic_head,
            "build_already_failed": self.build_already_failed,
        }

    @classmethod
    def from_mapping(cls, payload: Mapping[str, object]) -> TriggerContext:
        unknown = sorted(str(key) for key in payload if key not in _CONTEXT_KEYS)
        if unknown:
            raise ValueError(f"unknown trigger context fields: {', '.join(unknown)}")
        missing = [key for key in ("remote_url", "topic_branch", "topic_head") if key not in payload]
        if missing:
            raise ValueError(f"missing trigger context fields: {', '.join(missing)}")

        return cls(
            remote_url=_expect_str(payload["remote_url"], "remote_url"),
            topic_branch=_expect_str(payload["topic_branch"], "topic_branch"),
            topic_head=_expect_str(payload["topic_head"], "topic_head"),
            build_already_failed=_expect_bool(
                payload.get("build_already_failed", False), "build_already_failed"
            ),
        )

    @classmethod
    def from_environ(
        cls,
        environ: Mapping[str, str],
        *,
        build_already_failed: bool = False,
        require_head: bool = True,
    ) -> TriggerContext:
        """Read the variables a build host exports (``GIT_URL``, ``GIT_BRANCH``, ``GIT_COMMIT``).

        ``GIT_COMMIT`` may be absent when ``require_head`` is false; steps that
        act on an already prepared workspace never look at the topic head.
        """
        required = [ENV_REMOTE_URL, ENV_TOPIC_BRANCH]
        if require_head:
            required.append(ENV_TOPIC_HEAD)
        missing = [name for name in required if not environ.get(name, "").strip()]
        if missing:
            raise ValueError(f"missing environment variables: {', '.join(missing)}")
        return cls(
            remote_url=environ[ENV_REMOTE_URL],
            topic_branch=environ[ENV_TOPIC_BRANCH],
            topic_head=environ.get(ENV_TOPIC_HEAD, ""),
            build_already_failed=build_already_failed,
        )

    @classmethod
    def from_file(cls, path: str | Path) -> TriggerContext:
        """Load a context document (YAML, or JSON as a YAML subset) written by the host."""
        resolved = Path(path).expanduser()
        try:
            raw = resolved.read_text(encoding="utf-8")
        except OSError as exc:
            raise ValueError(f"unable to read trigger context file {resolved}: {exc}") from exc

        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError as exc:
            raise ValueError(f"invalid trigger context file {resolved}: {exc}") from exc

        if not isinstance(parsed, Mapping):
            raise ValueError(f"trigger context file root must be a mapping: {resolved}")
        return cls.from_mapping(parsed)


def _expect_str(value: object, field_name: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    return value


def _expect_bool(value: object, field_name: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{field_name} must be a boolean, got {type(value).__name__}")
    return value


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BranchReference",
    "ChangeIdentifier",
    "IntegrationConfig",
    "InvalidTransitionError",
    "InvocationState",
    "TERMINAL_STATES",
    "TriggerContext",
    "WorkflowOutcome",
    "can_transition",
    "normalize_revision",
    "redact_remote_url",
]
