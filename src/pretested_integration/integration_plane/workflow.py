"""Pretested integration workflow: detect, prepare, build, then commit or roll back.

File: src/pretested_integration/integration_plane/workflow.py
Last updated: 2026-10-18

Purpose
- Drive one invocation through the lifecycle and record every state change.

What should be included in this file
- Invocation, the explicit per-invocation state machine.
- PretestedIntegration, the facade exposing each step and ``run``.
- InvocationResult, the JSON-ready summary of one run.

Functional requirements
- The remote integration branch is only ever written by a successful commit.
- A failed or aborted build is rolled back; repository faults are terminal and
  propagate without rollback.

Non-functional requirements
- Strictly sequential and synchronous; no internal retries.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from pretested_integration.constants import LOG_PREFIX
from pretested_integration.domain import ids
from pretested_integration.domain.errors import (
    ErrorKind,
    IntegrationAdvanceConflict,
    IntegrationError,
    InvalidRevision,
    MergeConflict,
    RepositoryUnavailable,
)
from pretested_integration.domain.events import EventType
from pretested_integration.domain.models import (
    IntegrationConfig,
    InvalidTransitionError,
    InvocationState,
    WorkflowOutcome,
    can_transition,
)
from pretested_integration.integration_plane.change_detector import ChangeDetector
from pretested_integration.integration_plane.committer import IntegrationCommitter
from pretested_integration.integration_plane.rollback import RollbackHandler
from pretested_integration.integration_plane.workspace_preparer import WorkspacePreparer
from pretested_integration.observability.logging import correlation_scope

if TYPE_CHECKING:
    from pretested_integration.domain.models import (
        BranchReference,
        ChangeIdentifier,
        TriggerContext,
    )
    from pretested_integration.integration_plane.repository import RepositoryClient
    from pretested_integration.observability.events import EventBus

logger = logging.getLogger(__name__)

BuildCallback = Callable[[], object]

_FAULTS = (RepositoryUnavailable, InvalidRevision, IntegrationAdvanceConflict)


class Invocation:
    """Explicit state machine for one prepare/build/commit-or-rollback sequence."""

    def __init__(
        self,
        *,
        invocation_id: str | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        if invocation_id is None:
            invocation_id = ids.generate_invocation_id()
        ids.validate_invocation_id(invocation_id)
        self.invocation_id = invocation_id
        self._event_bus = event_bus
        self._state = InvocationState.IDLE
        self._history: list[InvocationState] = [InvocationState.IDLE]
        self.error: IntegrationError | None = None

    @property
    def state(self) -> InvocationState:
        return self._state

    @property
    def history(self) -> tuple[InvocationState, ...]:
        return tuple(self._history)

    def transition(self, target: InvocationState) -> None:
        if not can_transition(self._state, target):
            raise InvalidTransitionError(
                f"illegal invocation transition {self._state.value} -> {target.value}"
            )
        previous = self._state
        self._state = target
        self._history.append(target)
        logger.debug("Invocation %s: %s -> %s", self.invocation_id, previous.value, target.value)
        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.INVOCATION_STATE_CHANGED,
                {
                    "invocation_id": self.invocation_id,
                    "from": previous.value,
                    "to": target.value,
                },
            )

    def fault(self, error: IntegrationError) -> None:
        self.error = error
        self.transition(InvocationState.FAULTED)


@dataclass(frozen=True, slots=True)
class InvocationResult:
    """What one ``run`` did, returned instead of signalled."""

    invocation_id: str
    change: ChangeIdentifier | None
    outcome: WorkflowOutcome | None
    state: InvocationState
    history: tuple[InvocationState, ...] = ()
    integration_base: str | None = None
    message: str = ""
    error_kind: ErrorKind | None = None
    conflicts: tuple[str, ...] = ()

    @property
    def integrated(self) -> bool:
        return self.outcome == WorkflowOutcome.SUCCESS

    def to_dict(self) -> dict[str, object]:
        return {
            "invocation_id": self.invocation_id,
            "change": self.change.revision if self.change is not None else None,
            "outcome": self.outcome.value if self.outcome is not None else None,
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "integration_base": self.integration_base,
            "message": self.message,
            "error_kind": self.error_kind.value if self.error_kind is not None else None,
            "conflicts": list(self.conflicts),
        }


class PretestedIntegration:
    """One configured workflow bound to one repository client."""

    def __init__(
        self,
        client: RepositoryClient,
        config: IntegrationConfig | None = None,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config = config if config is not None else IntegrationConfig()
        self._event_bus = event_bus
        self._detector = ChangeDetector(client, self._config, event_bus=event_bus)
        self._preparer = WorkspacePreparer(client, self._config, event_bus=event_bus)
        self._committer = IntegrationCommitter(client, self._config, event_bus=event_bus)
        self._rollback = RollbackHandler(client, event_bus=event_bus)

    @property
    def config(self) -> IntegrationConfig:
        return self._config

    def next_change(
        self,
        previous_change: ChangeIdentifier | None,
        context: TriggerContext,
        build_already_failed: bool = False,
    ) -> ChangeIdentifier | None:
        return self._detector.detect_next(previous_change, context, build_already_failed)

    def prepare(self, change: ChangeIdentifier, context: TriggerContext) -> BranchReference:
        return self._preparer.prepare(change, context)

    def commit(self, context: TriggerContext) -> None:
        self._committer.commit(context)

    def rollback(self, context: TriggerContext) -> None:
        self._rollback.rollback(context)

    def run(
        self,
        context: TriggerContext,
        build: BuildCallback,
        *,
        previous_change: ChangeIdentifier | None = None,
    ) -> InvocationResult:
        """Drive one invocation end to end.

        Merge conflicts and failed builds are rolled back and reported in the
        result. A build callback that raises is treated as a failed build.
        ``RepositoryUnavailable``, ``InvalidRevision`` and
        ``IntegrationAdvanceConflict`` fault the invocation and propagate.
        """
        invocation = Invocation(event_bus=self._event_bus)
        with correlation_scope(
            invocation_id=invocation.invocation_id,
            integration_branch=self._config.branch,
            topic_branch=context.topic_branch,
        ):
            try:
                return self._run(invocation, context, build, previous_change)
            except _FAULTS as exc:
                logger.error(
                    "%sInvocation %s faulted in %s: %s",
                    LOG_PREFIX,
                    invocation.invocation_id,
                    invocation.state.value,
                    exc.message,
                )
                invocation.fault(exc)
                raise

    def _run(
        self,
        invocation: Invocation,
        context: TriggerContext,
        build: BuildCallback,
        previous_change: ChangeIdentifier | None,
    ) -> InvocationResult:
        change = self.next_change(previous_change, context)
        if change is None:
            return _result(invocation, None, None, message="nothing to integrate")

        with correlation_scope(change_id=change.revision):
            invocation.transition(InvocationState.PREPARING)
            try:
                base = self.prepare(change, context)
            except MergeConflict as exc:
                invocation.transition(InvocationState.CONFLICT)
                invocation.transition(InvocationState.ROLLING_BACK)
                self.rollback(context)
                invocation.transition(InvocationState.ROLLED_BACK)
                return _result(
                    invocation,
                    change,
                    WorkflowOutcome.MERGE_CONFLICT,
                    message=exc.message,
                    error_kind=exc.kind,
                    conflicts=exc.conflicts,
                )
            invocation.transition(InvocationState.PREPARED)

            invocation.transition(InvocationState.BUILDING)
            try:
                succeeded = bool(build())
            except Exception:
                logger.exception("%sBuild of %s aborted", LOG_PREFIX, change.short)
                succeeded = False

            if not succeeded:
                invocation.transition(InvocationState.ROLLING_BACK)
                self.rollback(context)
                invocation.transition(InvocationState.ROLLED_BACK)
                return _result(
                    invocation,
                    change,
                    WorkflowOutcome.FAILURE,
                    integration_base=base.head,
                    message=f"build of {change.short} failed; {self._config.branch} left unchanged",
                )

            invocation.transition(InvocationState.COMMITTING)
            self.commit(context)
            invocation.transition(InvocationState.COMMITTED)
            return _result(
                invocation,
                change,
                WorkflowOutcome.SUCCESS,
                integration_base=base.head,
                message=f"{change.short} integrated into {self._config.branch}",
            )


def _result(
    invocation: Invocation,
    change: ChangeIdentifier | None,
    outcome: WorkflowOutcome | None,
    *,
    integration_base: str | None = None,
    message: str = "",
    error_kind: ErrorKind | None = None,
    conflicts: tuple[str, ...] = (),
) -> InvocationResult:
    return InvocationResult(
        invocation_id=invocation.invocation_id,
        change=change,
        outcome=outcome,
        state=invocation.state,
        history=invocation.history,
        integration_base=integration_base,
        message=message,
        error_kind=error_kind,
        conflicts=conflicts,
    )


__all__ = [
    "BuildCallback",
    "Invocation",
    "InvocationResult",
    "PretestedIntegration",
]
