"""Capability set the integration core requires from a version-control backend."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pretested_integration.domain.models import BranchReference

if TYPE_CHECKING:
    from collections.abc import Sequence


@runtime_checkable
class RepositoryClient(Protocol):
    """Blocking repository operations against one isolated build workspace.

    Implementations raise the errors from :mod:`pretested_integration.domain.errors`:

    - ``resolve_head``: ``RepositoryUnavailable`` when the remote cannot be
      reached or has no such branch, ``InvalidRevision`` for malformed output.
    - ``merge``: ``MergeConflict`` when the merge cannot complete automatically.
    - ``push``: ``IntegrationAdvanceConflict`` when the remote ref has moved
      past the pushed local state.
    """

    def resolve_head(self, remote_url: str, branch_name: str) -> str:
        """Return the head revision of ``branch_name`` as seen by the remote."""
        ...

    def checkout_branch(self, branch_name: str, revision: str) -> None:
        """Point the local ``branch_name`` at ``revision`` and check it out."""
        ...

    def merge(self, revision: str) -> None:
        """Merge ``revision`` into the checked-out branch."""
        ...

    def ancestry_diff(self, from_revision: str, to_revision: str) -> Sequence[str]:
        """Return revisions reachable from ``to_revision`` but not from ``from_revision``."""
        ...

    def clean_working_tree(self) -> None:
        """Discard uncommitted and untracked changes in the workspace."""
        ...

    def push(self, remote_name: str, branch_name: str) -> None:
        """Push the local ``branch_name`` to the same name on ``remote_name``."""
        ...


def resolve_branch(client: RepositoryClient, remote_url: str, branch_name: str) -> BranchReference:
    """Resolve ``branch_name`` on the remote into a fresh :class:`BranchReference`."""
    return BranchReference(name=branch_name, head=client.resolve_head(remote_url, branch_name))


__all__ = ["RepositoryClient", "resolve_branch"]
