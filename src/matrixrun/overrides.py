# Copyright (c) Syntropy Systems
"""Dot/bracket parameter paths and scenario overrides."""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import TYPE_CHECKING, Union, cast

from typing_extensions import TypeAlias

from matrixrun.errors import ParameterPathError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from matrixrun.models.base import JSONValue
    from matrixrun.models.matrix import MatrixAxis

Segment: TypeAlias = Union[str, int]

_IDENTIFIER = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")
_MAX_SUGGESTED_KEYS = 5


@lru_cache(maxsize=512)
def parse_parameter_path(path: str) -> tuple[Segment, ...]:
    """Parse a path such as ``run[0].input`` into ``("run", 0, "input")``.

    Raises ParameterPathError if the path is malformed.
    """
    if not path:
        msg = "Path must be a non-empty string"
        raise ParameterPathError(msg)
    if path.startswith(".") or path.endswith("."):
        msg = f"Path cannot start or end with a dot: {path}"
        raise ParameterPathError(msg)

    segments: list[Segment] = []
    current = ""
    after_bracket = False
    i = 0
    while i < len(path):
        char = path[i]
        if char == ".":
            if current:
                segments.append(current)
                current = ""
            elif not after_bracket:
                msg = f"Empty segment in path: {path}"
                raise ParameterPathError(msg)
            after_bracket = False
        elif char == "[":
            if current:
                segments.append(current)
                current = ""
            elif not after_bracket:
                msg = f"Array access must follow a property name: {path}"
                raise ParameterPathError(msg)
            close = path.find("]", i)
            if close == -1:
                msg = f"Missing closing bracket in path: {path}"
                raise ParameterPathError(msg)
            index = path[i + 1 : close]
            if not index.isdigit():
                msg = f"Invalid array index '{index}' in path: {path}"
                raise ParameterPathError(msg)
            segments.append(int(index))
            i = close
            after_bracket = True
        elif char == "]":
            msg = f"Unexpected closing bracket in path: {path}"
            raise ParameterPathError(msg)
        else:
            if after_bracket:
                msg = f"Expected '.' or '[' after array index in path: {path}"
                raise ParameterPathError(msg)
            current += char
        i += 1

    if current:
        segments.append(current)

    for segment in segments:
        if isinstance(segment, str) and not _IDENTIFIER.match(segment):
            msg = f"Invalid property name '{segment}' in path: {path}"
            raise ParameterPathError(msg)

    return tuple(segments)


def is_valid_path_syntax(path: str) -> bool:
    """Return True if the path parses."""
    try:
        _ = parse_parameter_path(path)
    except ParameterPathError:
        return False
    return True


def format_path(segments: Iterable[Segment]) -> str:
    """Rebuild a path string from segments."""
    path = ""
    for segment in segments:
        if isinstance(segment, int):
            path += f"[{segment}]"
        elif path:
            path += f".{segment}"
        else:
            path = segment
    return path


def suggest_path_corrections(path: str) -> list[str]:
    """Suggest fixes for common path mistakes."""
    suggestions: list[str] = []
    if re.search(r"\.\d+", path):
        suggestions.append(re.sub(r"\.(\d+)", r"[\1]", path))
    if "[" in path and "]" not in path:
        suggestions.append(path + "]")
    if ".." in path:
        suggestions.append(re.sub(r"\.+", ".", path))
    return suggestions


def _step(current: object, segment: Segment, path: str) -> object:
    if isinstance(segment, int):
        if not isinstance(current, list):
            msg = f"Expected array at '{segment}', found {type(current).__name__} in path: {path}"
            raise ParameterPathError(msg)
        items = cast("list[object]", current)
        if segment >= len(items):
            msg = f"Array index out of bounds: {segment} in path: {path}"
            raise ParameterPathError(msg)
        return items[segment]
    if not isinstance(current, dict):
        msg = f"Expected object at '{segment}', found {type(current).__name__} in path: {path}"
        raise ParameterPathError(msg)
    mapping = cast("dict[str, object]", current)
    if segment not in mapping:
        msg = f"Property '{segment}' not found in path: {path}"
        raise ParameterPathError(msg)
    return mapping[segment]


def get_value_at_path(obj: object, path: str) -> object:
    """Return the value stored at ``path``."""
    current = obj
    for segment in parse_parameter_path(path):
        current = _step(current, segment, path)
    return current


def set_value_at_path(obj: dict[str, object], path: str, value: object) -> None:
    """Set ``value`` at ``path`` in place.

    Intermediate containers must already exist; the final key of an object may
    be new, a final list index must be in range.
    """
    segments = parse_parameter_path(path)
    parent: object = obj
    for segment in segments[:-1]:
        parent = _step(parent, segment, path)

    last = segments[-1]
    if isinstance(last, int):
        if not isinstance(parent, list):
            msg = f"Expected array for final segment in path: {path}"
            raise ParameterPathError(msg)
        items = cast("list[object]", parent)
        if last >= len(items):
            msg = f"Array index out of bounds: {last} in path: {path}"
            raise ParameterPathError(msg)
        items[last] = value
    else:
        if not isinstance(parent, dict):
            msg = f"Expected object for final segment in path: {path}"
            raise ParameterPathError(msg)
        cast("dict[str, object]", parent)[last] = value


def apply_overrides(
    base: Mapping[str, object],
    overrides: Mapping[str, JSONValue],
) -> dict[str, object]:
    """Return a deep copy of ``base`` with every override applied.

    ``base`` itself is never modified.
    """
    scenario = cast("dict[str, object]", copy.deepcopy(dict(base)))
    for path, value in overrides.items():
        set_value_at_path(scenario, path, copy.deepcopy(value))
    return scenario


@dataclass
class PathCheck:
    """Outcome of resolving one parameter path against a scenario."""

    path: str
    valid: bool
    error: str | None = None
    suggestion: str | None = None


@dataclass
class PathValidation:
    """Outcome of resolving every axis path against a scenario."""

    checks: list[PathCheck] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return all(check.valid for check in self.checks)

    @property
    def invalid_paths(self) -> list[str]:
        return [check.path for check in self.checks if not check.valid]


def check_parameter_path(obj: object, path: str) -> PathCheck:
    """Resolve ``path`` in ``obj`` and explain what went wrong, if anything."""
    try:
        segments = parse_parameter_path(path)
    except ParameterPathError as e:
        corrections = suggest_path_corrections(path)
        return PathCheck(
            path=path,
            valid=False,
            error=str(e),
            suggestion=f"Did you mean: {', '.join(corrections)}" if corrections else None,
        )

    current = obj
    walked: list[Segment] = []
    for segment in segments:
        walked.append(segment)
        try:
            current = _step(current, segment, path)
        except ParameterPathError as e:
            suggestion = None
            if isinstance(segment, str) and isinstance(current, dict):
                keys = list(cast("dict[str, object]", current))
                shown = ", ".join(keys[:_MAX_SUGGESTED_KEYS])
                more = "..." if len(keys) > _MAX_SUGGESTED_KEYS else ""
                suggestion = f"Available properties: {shown}{more}" if keys else None
            elif isinstance(segment, int) and isinstance(current, list):
                size = len(cast("list[object]", current))
                suggestion = f"Use an index between 0 and {size - 1}" if size else None
            return PathCheck(
                path=path,
                valid=False,
                error=f"{e} (at '{format_path(walked)}')",
                suggestion=suggestion,
            )
    return PathCheck(path=path, valid=True)


def validate_parameter_paths(
    base: Mapping[str, object],
    axes: Iterable[MatrixAxis],
) -> PathValidation:
    """Check that every axis parameter resolves in the base scenario."""
    return PathValidation(
        checks=[check_parameter_path(dict(base), axis.parameter) for axis in axes]
    )
