"""Series specifications and their textual form on the wire.

A metric type points at one series, several series merged together, a
regex pattern, or a rule computing the name from the instance being
written. Query paths use the quoted form returned by ``quote_series``;
the write path needs the bare name returned by ``unquote``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Optional, Tuple, Union

from ..errors import SeriesResolutionError

_REGEX_FLAGS = ((re.IGNORECASE, "i"), (re.MULTILINE, "m"), (re.DOTALL, "s"), (re.VERBOSE, "x"))
_ACRONYM_BOUNDARY = re.compile(r"([A-Z\d]+)([A-Z][a-z])")
_WORD_BOUNDARY = re.compile(r"([a-z\d])([A-Z])")
_METRICS_SUFFIX = "Metrics"


@dataclass(frozen=True)
class FixedName:
    name: Any


@dataclass(frozen=True)
class NameList:
    names: Tuple[Any, ...]


@dataclass(frozen=True)
class Pattern:
    regex: "re.Pattern[str]"


@dataclass(frozen=True)
class ComputedRule:
    fn: Callable[[Any], Any]


SeriesSpec = Union[FixedName, NameList, Pattern, ComputedRule]
_SPEC_TYPES = (FixedName, NameList, Pattern, ComputedRule)


def build_spec(*args: Any) -> Optional[SeriesSpec]:
    """Turn ``set_series`` arguments into a series specification."""
    if not args:
        return None
    if len(args) == 1:
        value = args[0]
        if isinstance(value, _SPEC_TYPES):
            return value
        if isinstance(value, re.Pattern):
            return Pattern(value)
        if callable(value):
            return ComputedRule(value)
    return NameList(tuple(args))


def _quote(value: Any) -> str:
    return '"' + str(value).replace('"', '\\"') + '"'


def _pattern_literal(regex: "re.Pattern[str]") -> str:
    flags = "".join(letter for flag, letter in _REGEX_FLAGS if regex.flags & flag)
    return f"/{regex.pattern}/{flags}"


def quote_series(value: Any, metric: Any = None) -> str:
    """Resolve ``value`` recursively into the quoted series reference."""
    if value is None:
        raise SeriesResolutionError("series is not set")
    if isinstance(value, FixedName):
        return quote_series(value.name, metric)
    if isinstance(value, NameList):
        return quote_series(list(value.names), metric)
    if isinstance(value, Pattern):
        return _pattern_literal(value.regex)
    if isinstance(value, ComputedRule):
        return quote_series(value.fn, metric)
    if isinstance(value, re.Pattern):
        return _pattern_literal(value)
    if callable(value):
        if metric is None:
            raise SeriesResolutionError(
                "a computed series can only be resolved for a metric instance"
            )
        return quote_series(value(metric), metric)
    if isinstance(value, (list, tuple)):
        if not value:
            raise SeriesResolutionError("series list is empty")
        if len(value) == 1:
            return quote_series(value[0], metric)
        return "merge(" + ",".join(quote_series(item, metric) for item in value) + ")"
    return _quote(value)


def unquote(name: str) -> str:
    """Strip one leading and one trailing quote character."""
    if name[:1] in ("'", '"'):
        name = name[1:]
    if name[-1:] in ("'", '"'):
        name = name[:-1]
    return name


def is_writable(quoted: str) -> bool:
    """Only a single named series can receive points."""
    return not (quoted.startswith("/") or quoted.startswith("merge("))


def underscore(name: str) -> str:
    name = _ACRONYM_BOUNDARY.sub(r"\1_\2", name)
    name = _WORD_BOUNDARY.sub(r"\1_\2", name)
    return name.replace("-", "_").lower()


def derive_series_name(qualname: str) -> Optional[str]:
    """``Api.RequestMetrics`` -> ``api_request``; ``None`` without the suffix."""
    if not qualname.endswith(_METRICS_SUFFIX) or qualname == _METRICS_SUFFIX:
        return None
    stem = qualname[: -len(_METRICS_SUFFIX)].rpartition("<locals>.")[2]
    parts = [part for part in stem.split(".") if part]
    if not parts:
        return None
    return "_".join(underscore(part) for part in parts)
