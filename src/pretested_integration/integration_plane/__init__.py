"""Integration plane: repository capability set, git backend, and the workflow components."""

from pretested_integration.integration_plane.change_detector import ChangeDetector
from pretested_integration.integration_plane.change_ledger import (
    ChangeLedger,
    ChangeLedgerStateError,
    LedgerEntry,
)
from pretested_integration.integration_plane.committer import IntegrationCommitter
from pretested_integration.integration_plane.git_engine import (
    CommandResult,
    GitCommandError,
    GitRepositoryClient,
)
from pretested_integration.integration_plane.repository import RepositoryClient, resolve_branch
from pretested_integration.integration_plane.rollback import RollbackHandler
from pretested_integration.integration_plane.workflow import (
    BuildCallback,
    Invocation,
    InvocationResult,
    PretestedIntegration,
)
from pretested_integration.integration_plane.workspace_preparer import WorkspacePreparer

__all__ = [
    "BuildCallback",
    "ChangeDetector",
    "ChangeLedger",
    "ChangeLedgerStateError",
    "CommandResult",
    "GitCommandError",
    "GitRepositoryClient",
    "IntegrationCommitter",
    "Invocation",
    "InvocationResult",
    "LedgerEntry",
    "PretestedIntegration",
    "RepositoryClient",
    "RollbackHandler",
    "WorkspacePreparer",
    "resolve_branch",
]
