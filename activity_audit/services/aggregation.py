"""
Update-vs-insert decision for repeated occurrences.

Error events (failed logins, failed role changes, ...) keep counting on
one open record until their successor (the matching success event) is
logged for the same object and IP. Aggregatable events keep counting on
their most recent record while log aggregation is enabled.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from activity_audit.config import AuditSettings
from activity_audit.context import RequestContext
from activity_audit.models.definitions import EventDefinition
from activity_audit.models.log import ActivityLog
from activity_audit.services.registry import EventRegistry
from activity_audit.services.repository import ActivityLogRepository
from activity_audit.services.state_machine import ActiveEvent

logger = logging.getLogger(__name__)


@dataclass
class AggregationDecision:
    update: bool = False
    existing: Optional[ActivityLog] = None

    @property
    def counter(self) -> int:
        """Counter value the written record will carry."""
        if self.existing is None:
            return 1
        return 1 + int(self.existing.log_counter or 0)


class AggregationPolicy:
    def __init__(
        self,
        settings: AuditSettings,
        registry: EventRegistry,
        repository: ActivityLogRepository,
        context: RequestContext,
    ):
        self.settings = settings
        self.registry = registry
        self.repository = repository
        self.context = context

    def is_aggregating(self, definition: EventDefinition) -> bool:
        return definition.aggregatable and self.settings.log_aggregation

    def successor_id(self, definition: EventDefinition) -> int:
        successor = definition.successor
        if isinstance(successor, tuple):
            group, slug = successor[0], successor[1]
            return self.registry.get_event_id_by_slug(slug, group)
        try:
            return int(successor or 0)
        except (TypeError, ValueError):
            return 0

    def should_update_existing(self, active: ActiveEvent) -> AggregationDecision:
        """
        Decide whether this occurrence increments an open record.

        Invariants:
        - An event never counts on its own record when it is its own successor
        - Error events only count while no successor record is newer than the
          open record
        - The window (in days, 0 = all time) includes both of its bounds
        """
        definition = active.definition
        aggregating = self.is_aggregating(definition)
        if not (definition.has_error_flag() or aggregating):
            return AggregationDecision()

        successor_id = 0
        if not aggregating:
            successor_id = self.successor_id(definition)
            if successor_id < 1 or successor_id == active.event_id:
                return AggregationDecision()

        since = until = None
        limit = self.settings.failed_event_log_increment_limit
        if limit > 0:
            until = self.context.now()
            since = until - timedelta(days=limit)

        object_id = active.object_id
        source_ip = self.context.client_ip or "0.0.0.0"
        candidate = self.repository.select_most_recent(
            active.event_id, object_id, source_ip, self.context.blog_id, since, until
        )
        if candidate is None:
            return AggregationDecision()
        if aggregating:
            return AggregationDecision(update=True, existing=candidate)

        if candidate.log_id < 1:
            return AggregationDecision()

        successor_log_id = self.repository.most_recent_log_id(
            successor_id, object_id, source_ip, self.context.blog_id
        )
        if candidate.log_id > successor_log_id:
            return AggregationDecision(update=True, existing=candidate)

        logger.debug("Event %s chain closed by successor record %s", active.event_id, successor_log_id)
        return AggregationDecision()
