"""Return the local workspace to a pristine state after a failed build."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pretested_integration.constants import LOG_PREFIX
from pretested_integration.domain.events import EventType

if TYPE_CHECKING:
    from pretested_integration.domain.models import TriggerContext
    from pretested_integration.integration_plane.repository import RepositoryClient
    from pretested_integration.observability.events import EventBus

logger = logging.getLogger(__name__)


class RollbackHandler:
    """Local-only cleanup; the remote is never contacted."""

    def __init__(self, client: RepositoryClient, *, event_bus: EventBus | None = None) -> None:
        self._client = client
        self._event_bus = event_bus

    def rollback(self, context: TriggerContext) -> None:
        logger.info("%sCleaning workspace after %s", LOG_PREFIX, context.topic_branch)
        self._client.clean_working_tree()
        if self._event_bus is not None:
            self._event_bus.emit(
                EventType.WORKSPACE_ROLLED_BACK, {"topic_branch": context.topic_branch}
            )


__all__ = ["RollbackHandler"]
