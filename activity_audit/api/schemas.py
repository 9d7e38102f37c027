"""Pydantic schemas for the read API."""
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict


class ActivityLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    log_id: int
    event_id: int
    event_slug: str
    event_group: Optional[str]
    event_title: Optional[str]
    event_action: Optional[str]
    event_object: Optional[str]
    severity: Optional[str]
    blog_id: int
    object_id: int
    user_id: int
    user_login: Optional[str]
    user_role: Optional[str]
    source_ip: str
    log_counter: int
    message: Optional[str]
    created_at: datetime
    updated_at: Optional[datetime]


class DataBlock(BaseModel):
    """One block of an accumulated data column. The first block has no timestamp."""
    updated_at: Optional[str] = None
    data: Dict[str, Any] = {}


class ActivityLogDetail(ActivityLogResponse):
    message_fields: Dict[str, str] = {}
    display: str = ""
    user_data: List[DataBlock] = []
    object_data: List[DataBlock] = []
    metadata: List[DataBlock] = []
    previous_content: Optional[str] = None
    new_content: Optional[str] = None


class EventDefinitionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    slug: str
    group: str
    title: str
    action: str
    object: str
    severity: str
    object_id_label: str
    error_flag: bool
    successor: Optional[Union[int, Tuple[str, str]]]
    aggregatable: bool
    disabled: bool


class EventGroupResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    title: str
    object: str
    description: str
    object_id_label: str
