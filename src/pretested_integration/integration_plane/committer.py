"""Publish a successfully built merge result to the shared integration branch."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pretested_integration.constants import LOG_PREFIX
from pretested_integration.domain.errors import IntegrationAdvanceConflict
from pretested_integration.domain.events import EventType

if TYPE_CHECKING:
    from pretested_integration.domain.models import IntegrationConfig, TriggerContext
    from pretested_integration.integration_plane.repository import RepositoryClient
    from pretested_integration.observability.events import EventBus

logger = logging.getLogger(__name__)


class IntegrationCommitter:
    """The only component that advances the remote integration branch.

    A rejected push is surfaced as ``IntegrationAdvanceConflict``; it is
    never retried and never forced.
    """

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

    def commit(self, context: TriggerContext) -> None:
        branch = self._config.branch
        remote = self._config.remote_name
        logger.info("%sPushing %s to %s", LOG_PREFIX, branch, remote)
        try:
            self._client.push(remote, branch)
        except IntegrationAdvanceConflict as exc:
            logger.error(
                "%s%s on %s advanced since checkout; %s was not integrated",
                LOG_PREFIX,
                branch,
                remote,
                context.topic_branch,
            )
            self._emit(
                EventType.INTEGRATION_ADVANCE_CONFLICT,
                integration_branch=branch,
                remote=remote,
                topic_branch=context.topic_branch,
                message=exc.message,
            )
            raise

        self._emit(
            EventType.INTEGRATION_PUSHED,
            integration_branch=branch,
            remote=remote,
            topic_branch=context.topic_branch,
        )

    def _emit(self, event_type: EventType, **payload: object) -> None:
        if self._event_bus is not None:
            self._event_bus.emit(event_type, payload)


__all__ = ["IntegrationCommitter"]
