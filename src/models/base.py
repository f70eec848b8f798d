"""Shared Pydantic base model for API schemas."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CareLinkBase(BaseModel):
    """Base model with shared config for all CareLink schemas.

    Fields are snake_case in Python and camelCase on the wire, matching
    the patient app.
    """

    model_config = ConfigDict(
        from_attributes=True,
        populate_by_name=True,
        str_strip_whitespace=True,
        alias_generator=to_camel,
    )
