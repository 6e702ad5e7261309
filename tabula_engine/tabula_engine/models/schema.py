"""Schema models describing the inferred shape of a dataset."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class FieldType(str, Enum):
    """Tagged value kinds a record field can hold."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    NULL = "null"


class SchemaField(BaseModel):
    """One column of an inferred schema."""

    name: str = Field(..., min_length=1, description="Column name.")
    type: FieldType = Field(..., description="Value kind shared by every non-null value.")
    nullable: bool = Field(
        default=False,
        description="True when at least one sampled record has a null or missing value.",
    )
