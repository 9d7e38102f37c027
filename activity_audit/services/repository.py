"""
Activity log persistence.

Every query the engine runs against ``activity_logs`` lives here. Reads
used by the aggregation decision follow one contract: most recent means
highest ``log_id``, descending, limit 1.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from activity_audit.exceptions import QueryConfigurationError
from activity_audit.models.log import ActivityLog

logger = logging.getLogger(__name__)

FILTERABLE_COLUMNS = {"event_id", "event_group", "object_id", "user_id", "source_ip", "blog_id", "severity"}


def _column(name: str):
    if name not in inspect(ActivityLog).column_attrs.keys():
        raise QueryConfigurationError(f"Unknown activity log column '{name}'")
    return getattr(ActivityLog, name)


class ActivityLogRepository:
    """Reads and writes activity log rows through one session."""

    def __init__(self, db: Session):
        self.db = db

    def _chain_query(self, event_id: int, object_id: int, source_ip: str, blog_id: Optional[int]):
        query = self.db.query(ActivityLog).filter(
            _column("event_id") == event_id,
            _column("object_id") == object_id,
            _column("source_ip") == source_ip,
        )
        if blog_id is not None:
            query = query.filter(_column("blog_id") == blog_id)
        return query

    def select_most_recent(
        self,
        event_id: int,
        object_id: int,
        source_ip: str,
        blog_id: Optional[int] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Optional[ActivityLog]:
        """
        Most recent row for (event, object, ip), optionally restricted to
        ``since <= created_at <= until`` (both bounds inclusive).
        """
        query = self._chain_query(event_id, object_id, source_ip, blog_id)
        if since is not None:
            query = query.filter(_column("created_at") >= since)
        if until is not None:
            query = query.filter(_column("created_at") <= until)
        return query.order_by(_column("log_id").desc()).limit(1).first()

    def most_recent_log_id(
        self,
        event_id: int,
        object_id: int,
        source_ip: str,
        blog_id: Optional[int] = None,
    ) -> int:
        row = (
            self._chain_query(event_id, object_id, source_ip, blog_id)
            .with_entities(_column("log_id"))
            .order_by(_column("log_id").desc())
            .limit(1)
            .first()
        )
        return int(row[0]) if row else 0

    def insert(self, values: Dict[str, Any]) -> Optional[ActivityLog]:
        """Insert a row. Returns None and rolls back on database errors."""
        for name in values:
            _column(name)
        log = ActivityLog(**values)
        try:
            self.db.add(log)
            self.db.commit()
            self.db.refresh(log)
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to insert activity log for event %s", values.get("event_id"))
            return None
        return log

    def update(self, log: ActivityLog, values: Dict[str, Any]) -> bool:
        """Apply column values to an existing row. False on database errors."""
        for name in values:
            _column(name)
        try:
            for name, value in values.items():
                setattr(log, name, value)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("Failed to update activity log %s", log.log_id)
            return False
        return True

    def get(self, log_id: int) -> Optional[ActivityLog]:
        return self.db.query(ActivityLog).filter(ActivityLog.log_id == log_id).first()

    def list_logs(self, limit: int = 50, offset: int = 0, **filters) -> List[ActivityLog]:
        query = self.db.query(ActivityLog)
        for name, value in filters.items():
            if value is None:
                continue
            if name not in FILTERABLE_COLUMNS:
                raise QueryConfigurationError(f"Cannot filter activity logs by '{name}'")
            query = query.filter(_column(name) == value)
        return query.order_by(ActivityLog.log_id.desc()).offset(offset).limit(limit).all()
