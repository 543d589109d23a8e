# Pydantic schemas

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, field_validator
from datetime import datetime
from typing import Literal, Union
import json

from eventpulse.core.config import settings

# Property values are scalars only; nested objects and lists are rejected
PropertyValue = Union[StrictBool, StrictInt, StrictFloat, StrictStr]

Platform = Literal["web", "android", "ios"]


class EventCreate(BaseModel):
    """Schema for one incoming event"""

    model_config = ConfigDict(extra="forbid")

    id: str | None = Field(default=None, min_length=1, max_length=64)
    user_id: str | None = Field(default=None, min_length=1, max_length=255)
    session_id: str | None = Field(default=None, min_length=1, max_length=255)
    event_name: str = Field(..., min_length=1, max_length=settings.max_event_name_length)
    properties: dict[str, PropertyValue] = Field(default_factory=dict)
    timestamp: datetime | None = None
    platform: Platform = "web"

    @field_validator('event_name')
    @classmethod
    def validate_not_empty(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError('Field cannot be empty or whitespace')
        return v.strip()

    @field_validator('properties')
    @classmethod
    def validate_property_bounds(cls, v: dict[str, PropertyValue]) -> dict[str, PropertyValue]:
        if len(v) > settings.max_property_keys:
            raise ValueError(
                f'At most {settings.max_property_keys} properties allowed, got {len(v)}'
            )
        if any(not key.strip() for key in v):
            raise ValueError('Property keys cannot be empty')
        size = len(json.dumps(v, separators=(",", ":")).encode("utf-8"))
        if size > settings.max_properties_bytes:
            raise ValueError(
                f'Properties exceed {settings.max_properties_bytes} bytes when serialized ({size})'
            )
        return v


class EventBatchCreate(BaseModel):
    """Schema for batch event creation"""

    model_config = ConfigDict(extra="forbid")

    events: list[EventCreate] = Field(..., min_length=1, max_length=settings.max_batch_size)


class StoredEvent(BaseModel):
    """An accepted event with tenant and server-observed metadata attached"""

    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    user_id: str
    session_id: str | None = None
    event_name: str
    properties: dict[str, PropertyValue] = Field(default_factory=dict)
    timestamp: datetime
    platform: Platform = "web"
    ip: str | None = None
    user_agent: str | None = None
    received_at: datetime

    @property
    def partition_key(self) -> str:
        return self.timestamp.strftime("%Y%m")


class IngestResponse(BaseModel):
    """Acknowledgment for single and batch ingestion"""

    message: str
    accepted: int
    event_ids: list[str]
    timestamp: datetime


class RecentEventsResponse(BaseModel):
    events: list[StoredEvent]
    source: Literal["cache", "database"]
    count: int
