"""Error taxonomy for the pretested integration workflow.

Every failure the core reports upward is one of four kinds. Each error
carries an explicit :class:`ErrorKind`, a ``retryable`` hint for the caller,
and a ``details`` mapping with the revisions and branch names involved, so the
orchestration layer can choose its own retry policy without inspecting the
exception hierarchy.
"""

from __future__ import annotations

from collections.abc import Sequence
from enum import StrEnum


class ErrorKind(StrEnum):
    """Stable error categories reported to the orchestration layer."""

    REPOSITORY_UNAVAILABLE = "repository-unavailable"
    INVALID_REVISION = "invalid-revision"
    MERGE_CONFLICT = "merge-conflict"
    INTEGRATION_ADVANCE_CONFLICT = "integration-advance-conflict"


class IntegrationError(RuntimeError):
    """Base error for every failure surfaced by the workflow core."""

    kind: ErrorKind

    def __init__(self, message: str, **details: str | None) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, str] = {
            key: value for key, value in sorted(details.items()) if value is not None
        }

    @property
    def retryable(self) -> bool:
        return False

    def to_dict(self) -> dict[str, object]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "details": dict(self.details),
        }


class RepositoryUnavailable(IntegrationError):
    """The backend could not be reached or the branch does not exist there."""

    kind = ErrorKind.REPOSITORY_UNAVAILABLE

    @property
    def retryable(self) -> bool:
        return True


class InvalidRevision(IntegrationError):
    """A revision identifier is malformed or cannot be resolved."""

    kind = ErrorKind.INVALID_REVISION


class MergeConflict(IntegrationError):
    """Merging the change into the integration branch did not complete."""

    kind = ErrorKind.MERGE_CONFLICT

    def __init__(
        self,
        message: str,
        *,
        tool_output: str = "",
        conflicts: Sequence[str] = (),
        **details: str | None,
    ) -> None:
        super().__init__(message, **details)
        self.tool_output = tool_output
        self.conflicts = tuple(conflicts)

    def to_dict(self) -> dict[str, object]:
        payload = super().to_dict()
        payload["conflicts"] = list(self.conflicts)
        payload["tool_output"] = self.tool_output
        return payload


class IntegrationAdvanceConflict(IntegrationError):
    """The remote integration branch moved after checkout; the push was rejected."""

    kind = ErrorKind.INTEGRATION_ADVANCE_CONFLICT

    def __init__(self, message: str, *, tool_output: str = "", **details: str | None) -> None:
        super().__init__(message, **details)
        self.tool_output = tool_output


__all__ = [
    "ErrorKind",
    "IntegrationAdvanceConflict",
    "IntegrationError",
    "InvalidRevision",
    "MergeConflict",
    "RepositoryUnavailable",
]
