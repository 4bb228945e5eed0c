"""Domain types: change identifiers, trigger contexts, outcomes, errors, and events."""

from pretested_integration.domain.errors import (
    ErrorKind,
    IntegrationAdvanceConflict,
    IntegrationError,
    InvalidRevision,
    MergeConflict,
    RepositoryUnavailable,
)
from pretested_integration.domain.events import EventType, IntegrationEvent
from pretested_integration.domain.models import (
    BranchReference,
    ChangeIdentifier,
    IntegrationConfig,
    InvalidTransitionError,
    InvocationState,
    TriggerContext,
    WorkflowOutcome,
    can_transition,
    normalize_revision,
    redact_remote_url,
)

__all__ = [
    "BranchReference",
    "ChangeIdentifier",
    "ErrorKind",
    "EventType",
    "IntegrationAdvanceConflict",
    "IntegrationConfig",
    "IntegrationError",
    "IntegrationEvent",
    "InvalidRevision",
    "InvalidTransitionError",
    "InvocationState",
    "MergeConflict",
    "RepositoryUnavailable",
    "TriggerContext",
    "WorkflowOutcome",
    "can_transition",
    "normalize_revision",
    "redact_remote_url",
]
