"""Base schemas for the application."""

from datetime import UTC, datetime
from typing import Annotated
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def as_utc(value: datetime) -> datetime:
    """Mark a stored timestamp as UTC; columns hold naive UTC values."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


UTCDateTime = Annotated[datetime, AfterValidator(as_utc)]


class BaseSchema(BaseModel):
    """Base schema class with common configuration.

    Fields are snake_case in Python and camelCase on the wire.
    """
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class BaseModelSchema(BaseSchema):
    """Base schema for database models."""
    id: UUID
    created_at: UTCDateTime


class ErrorResponse(BaseSchema):
    """Error body: ``{error, message, details?, retryAfterMs?, requestId?}``."""
    error: str
    message: str
    details: dict | list | None = None
    retry_after_ms: int | None = None
    request_id: str | None = None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
