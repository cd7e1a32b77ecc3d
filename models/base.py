"""
Base entity classes.
"""

from datetime import datetime
from pydantic import BaseModel, Field, ConfigDict


class TimestampMixin(BaseModel):
    """Mixin for created/updated timestamps."""
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class BaseEntity(TimestampMixin):
    """
    Base for all persistent entities.

    Subclasses define their own id field with appropriate type.
    """
    model_config = ConfigDict(
        validate_assignment=True,
        extra="ignore",
        str_strip_whitespace=True,
        populate_by_name=True,
    )

    def touch(self) -> None:
        """Update the updated_at timestamp."""
        self.updated_at = datetime.now()


class WireModel(BaseModel):
    """
    Value object that crosses the LLM / HTTP boundary.

    Accepts both snake_case field names and their camelCase aliases,
    ignores anything the model invents on top, and reads numeric ids as
    strings.
    """
    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        str_strip_whitespace=True,
        coerce_numbers_to_str=True,
    )
