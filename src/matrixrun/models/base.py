# Copyright (c) Syntropy Systems
"""Shared Pydantic model helpers for matrixrun."""

from __future__ import annotations

from typing import ClassVar, Union

from pydantic import BaseModel, ConfigDict, JsonValue
from pydantic.alias_generators import to_camel
from typing_extensions import TypeAlias

JSONPrimitive: TypeAlias = Union[str, int, float, bool, None]
JSONValue: TypeAlias = JsonValue
JSONObject: TypeAlias = dict[str, JSONValue]


class MatrixBaseModel(BaseModel):
    """Base model with shared config for matrixrun schemas."""

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
    )


class ReportModel(BaseModel):
    """Base model for records written to the output directory.

    Attributes are snake_case in Python and camelCase on disk.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
        frozen=True,
    )
