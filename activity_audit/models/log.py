"""
Persisted activity log record.

Invariants:
- A record is created on the first occurrence of a chain, or for any
  event that does not aggregate
- Repeated occurrences only ever increment log_counter on the open record
- The engine never deletes records
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Text, Boolean, Index

from activity_audit.database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ActivityLog(Base):
    __tablename__ = "activity_logs"

    log_id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_id = Column(Integer, nullable=False, index=True)
    event_slug = Column(String(255), nullable=False)

    blog_id = Column(Integer, nullable=False, default=1, index=True)
    blog_name = Column(String(255), nullable=True)
    blog_url = Column(String(255), nullable=True)

    user_id = Column(BigInteger, nullable=False, default=0, index=True)
    object_id = Column(BigInteger, nullable=False, default=0, index=True)
    user_login = Column(String(255), nullable=True)
    user_role = Column(String(255), nullable=True)
    first_name = Column(String(255), nullable=True)
    last_name = Column(String(255), nullable=True)

    user_data = Column(Text, nullable=True)
    object_data = Column(Text, nullable=True)

    severity = Column(String(20), nullable=False, default="notice")
    event_group = Column(String(50), nullable=False, index=True)
    event_object = Column(String(50), nullable=True)
    event_action = Column(String(50), nullable=True)
    event_title = Column(String(255), nullable=True)
    event_action_trigger = Column(String(50), nullable=True)

    log_counter = Column(Integer, nullable=False, default=1)
    log_status = Column(String(20), nullable=True)
    message = Column(Text, nullable=True)

    source_ip = Column(String(100), nullable=False, default="0.0.0.0", index=True)
    referer_url = Column(Text, nullable=True)
    browser = Column(String(255), nullable=True)
    platform = Column(String(255), nullable=True)
    is_robot = Column(Boolean, nullable=False, default=False)
    is_mobile = Column(Boolean, nullable=False, default=False)

    previous_content = Column(Text, nullable=True)
    new_content = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", Text, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_activity_logs_chain", "event_id", "object_id", "source_ip", "blog_id"),
    )
