"""Decide whether an invocation has pending work to integrate.

File: src/pretested_integration/integration_plane/change_detector.py
Last updated: 2026-10-18

Purpose
- Turn a trigger context and the previously processed change into either the
  next change to integrate or "no work".

Functional requirements
- A build already marked failed short-circuits with no repository queries.
- A topic head already contained in the integration branch is no work.
- Every revision that will be merged is reported, oldest first.
- A trigger repeating the previous change is no work.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pretested_integration.constants import LOG_PREFIX
from pretested_integration.domain.events import EventType
from pretested_integration.domain.models import (
    ChangeIdentifier,
    IntegrationConfig,
    TriggerContext,
    normalize_revision,
)
from pretested_integration.integration_plane.repository import resolve_branch

if TYPE_CHECKING:
    from pretested_integration.integration_plane.repository import RepositoryClient
    from pretested_integration.observability.events import EventBus

logger = logging.getLogger(__name__)


class ChangeDetector:
    """Compute the next change for a topic branch, or ``None`` when nothing is pending.

    Revisions that will be merged are reported in the order the repository
    returns them; the git backend lists them oldest first.
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

    def detect_next(
        self,
        previous_change: ChangeIdentifier | None,
        context: TriggerContext,
        build_already_failed: bool = False,
    ) -> ChangeIdentifier | None:
        logger.debug(
            "%sPrevious change: %s",
            LOG_PREFIX,
            previous_change.revision if previous_change is not None else None,
        )
        if build_already_failed or context.build_already_failed:
            logger.info(
                "%sBuild already failed for %s; nothing to integrate",
                LOG_PREFIX,
                context.topic_branch,
            )
            self._emit(EventType.CHANGE_SKIPPED, reason="build-already-failed", context=context)
            return None

        integration = resolve_branch(self._client, context.remote_url, self._config.branch)
        topic_head = normalize_revision(
            context.topic_head, field_name=f"head of topic branch {context.topic_branch!r}"
        )

        pending = tuple(
            normalize_revision(revision, field_name="ancestry diff entry")
            for revision in self._client.ancestry_diff(integration.head, topic_head)
        )
        if not pending:
            logger.info(
                "%s%s at %s is already contained in %s",
                LOG_PREFIX,
                context.topic_branch,
                topic_head[:12],
                integration.name,
            )
            self._emit(EventType.CHANGE_SKIPPED, reason="already-integrated", context=context)
            return None

        for revision in pending:
            logger.info("%sRevision %s will be merged", LOG_PREFIX, revision)
            self._emit(
                EventType.REVISION_WILL_MERGE,
                revision=revision,
                integration_branch=integration.name,
                context=context,
            )

        if previous_change is not None and previous_change.revision == topic_head:
            logger.info(
                "%sChange %s was already attempted; ignoring repeated trigger",
                LOG_PREFIX,
                previous_change.short,
            )
            self._emit(EventType.CHANGE_SKIPPED, reason="repeated-trigger", context=context)
            return None

        change = ChangeIdentifier(topic_head)
        self._emit(
            EventType.CHANGE_DETECTED,
            change=change.revision,
            integration_branch=integration.name,
            integration_head=integration.head,
            pending=list(pending),
            context=context,
        )
        return change

    def _emit(self, event_type: EventType, *, context: TriggerContext, **payload: object) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(event_type, {"topic_branch": context.topic_branch, **payload})


__all__ = ["ChangeDetector"]
