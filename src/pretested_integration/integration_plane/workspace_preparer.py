"""Check out the fresh integration tip and merge the pending change into it."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pretested_integration.constants import LOG_PREFIX
from pretested_integration.domain.errors import MergeConflict
from pretested_integration.domain.events import EventType
from pretested_integration.integration_plane.repository import resolve_branch

if TYPE_CHECKING:
    from pretested_integration.domain.models import (
        BranchReference,
        ChangeIdentifier,
        IntegrationConfig,
        TriggerContext,
    )
    from pretested_integration.integration_plane.repository import RepositoryClient
    from pretested_integration.observability.events import EventBus

logger = logging.getLogger(__name__)


class WorkspacePreparer:
    def __init__(
        self,
        client: RepositoryClient,
        config: IntegrationConfig,
        *,
        event_bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._config = config
        self._event_bus = event_bus

    def prepare(self, change: ChangeIdentifier, context: TriggerContext) -> BranchReference:
        """Leave the workspace on the integration branch with ``change`` merged in.

        The integration head is resolved from the remote on every call. The
        workspace is cleaned before checkout so residue from an earlier build
        cannot reach this one or surface as a merge conflict. On a merge
        conflict the workspace is left as-is for diagnostics and
        ``MergeConflict`` propagates; the caller is responsible for rollback.
        Returns the integration base that was checked out.
        """
        base = resolve_branch(self._client, context.remote_url, self._config.branch)
        logger.info(
            "%sChecking out %s at %s and merging %s from %s",
            LOG_PREFIX,
            base.name,
            base.head[:12],
            change.short,
            context.topic_branch,
        )
        self._client.clean_working_tree()
        self._client.checkout_branch(base.name, base.head)

        try:
            self._client.merge(change.revision)
        except MergeConflict as exc:
            logger.warning(
                "%sMerge of %s into %s failed: %s",
                LOG_PREFIX,
                change.short,
                base.name,
                exc.message,
            )
            if self._event_bus is not None:
                self._event_bus.emit(
                    EventType.MERGE_CONFLICT,
                    {
                        "change": change.revision,
                        "integration_branch": base.name,
                        "integration_head": base.head,
                        "topic_branch": context.topic_branch,
                        "conflicts": list(exc.conflicts),
                    },
                )
            raise

        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.WORKSPACE_PREPARED,
                {
                    "change": change.revision,
                    "integration_branch": base.name,
                    "integration_head": base.head,
                    "topic_branch": context.topic_branch,
                },
            )
        return base


__all__ = ["WorkspacePreparer"]
