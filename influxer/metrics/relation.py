"""Query builder producing InfluxQL (0.8 dialect) for a metric type."""

from __future__ import annotations

import copy
import logging
import re
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional

from ..errors import MetricsError, SeriesResolutionError
from .series import NameList, quote_series

logger = logging.getLogger(__name__)

QUERY_METHODS = (
    "select",
    "where",
    "not_",
    "group",
    "merge",
    "time",
    "past",
    "since",
    "limit",
    "fill",
    "delete_all",
)

CALCULATION_METHODS = (
    "count",
    "min",
    "max",
    "mean",
    "mode",
    "median",
    "distinct",
    "derivative",
    "stddev",
    "sum",
    "first",
    "last",
    "difference",
    "percentile",
    "histogram",
)

DURATION_NAMES = {
    "second": "1s",
    "minute": "1m",
    "hour": "1h",
    "day": "1d",
    "week": "1w",
}
_DURATION = re.compile(r"^\d+(u|ms|s|m|h|d|w)$")
_UNSET: Any = object()

_current_scopes: ContextVar[Optional[Dict[type, "Relation"]]] = ContextVar(
    "influxer_current_scopes", default=None
)


def current_scope(klass: type) -> Optional["Relation"]:
    scopes = _current_scopes.get()
    return scopes.get(klass) if scopes else None


@contextmanager
def use_scope(relation: "Relation") -> Iterator["Relation"]:
    scopes = dict(_current_scopes.get() or {})
    scopes[relation.klass] = relation
    token = _current_scopes.set(scopes)
    try:
        yield relation
    finally:
        _current_scopes.reset(token)


def _epoch_seconds(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def format_duration(value: Any) -> str:
    if isinstance(value, timedelta):
        return f"{int(value.total_seconds())}s"
    text = str(value)
    if text in DURATION_NAMES:
        return DURATION_NAMES[text]
    if _DURATION.match(text):
        return text
    raise ValueError(f"Unknown duration '{value}'.")


def format_value(value: Any) -> str:
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return f"{_epoch_seconds(value)}s"
    if isinstance(value, date):
        return f"{_epoch_seconds(datetime(value.year, value.month, value.day))}s"
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "\\'") + "'"


def format_condition(key: str, value: Any, negate: bool = False) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, re.Pattern):
        return f"{key} {'!~' if negate else '=~'} {quote_series(value)}"
    if isinstance(value, range):
        if negate:
            return f"({key} < {value.start} or {key} >= {value.stop})"
        return f"({key} >= {value.start} and {key} < {value.stop})"
    if isinstance(value, (list, tuple, set, frozenset)):
        if negate:
            return "(" + " and ".join(f"{key} <> {format_value(item)}" for item in value) + ")"
        return "(" + " or ".join(f"{key} = {format_value(item)}" for item in value) + ")"
    return f"{key} {'<>' if negate else '='} {format_value(value)}"


class Relation:
    """Chainable query over the series of ``klass``.

    Every builder method returns a new relation; results are loaded lazily
    through the client bound to the class's registry.
    """

    def __init__(self, klass: type) -> None:
        self.klass = klass
        self._select: List[str] = []
        self._where: List[str] = []
        self._group: List[str] = []
        self._merge: List[Any] = []
        self._time: Optional[str] = None
        self._fill: Any = _UNSET
        self._limit: Optional[int] = None
        self._records: Optional[List[Dict[str, Any]]] = None

    def clone(self) -> "Relation":
        clone = copy.copy(self)
        for name in ("_select", "_where", "_group", "_merge"):
            setattr(clone, name, list(getattr(self, name)))
        clone._records = None
        return clone

    # builders

    def select(self, *fields: str) -> "Relation":
        clone = self.clone()
        clone._select.extend(fields)
        return clone

    def where(self, *conditions: Any, **equals: Any) -> "Relation":
        return self._add_conditions(conditions, equals, negate=False)

    def not_(self, *conditions: Any, **equals: Any) -> "Relation":
        return self._add_conditions(conditions, equals, negate=True)

    def _add_conditions(self, conditions, equals: Mapping[str, Any], negate: bool) -> "Relation":
        clone = self.clone()
        for condition in conditions:
            if isinstance(condition, Mapping):
                clone._where.extend(self._format_all(condition, negate))
            else:
                clone._where.append(f"not ({condition})" if negate else str(condition))
        clone._where.extend(self._format_all(equals, negate))
        return clone

    @staticmethod
    def _format_all(conditions: Mapping[str, Any], negate: bool) -> List[str]:
        formatted = (format_condition(key, value, negate) for key, value in conditions.items())
        return [condition for condition in formatted if condition is not None]

    def merge(self, *series: Any) -> "Relation":
        clone = self.clone()
        clone._merge.extend(series)
        return clone

    def time(self, duration: Any, fill: Any = _UNSET) -> "Relation":
        clone = self.clone()
        clone._time = f"time({format_duration(duration)})"
        if fill is not _UNSET:
            clone._fill = format_value(fill)
        return clone

    def group(self, *fields: str) -> "Relation":
        clone = self.clone()
        clone._group.extend(fields)
        return clone

    def fill(self, value: Any) -> "Relation":
        clone = self.clone()
        clone._fill = format_value(value)
        return clone

    def past(self, duration: Any) -> "Relation":
        return self.where(f"time > now() - {format_duration(duration)}")

    def since(self, when: datetime) -> "Relation":
        return self.where(f"time > {_epoch_seconds(when)}s")

    def limit(self, value: int) -> "Relation":
        clone = self.clone()
        clone._limit = int(value)
        return clone

    # sql

    def series_clause(self) -> str:
        spec = self.klass.series
        if not self._merge:
            return quote_series(spec)
        names = list(spec.names) if isinstance(spec, NameList) else [spec]
        return quote_series(names + self._merge)

    def where_clause(self) -> str:
        return f" where {' and '.join(self._where)}" if self._where else ""

    def to_sql(self) -> str:
        sql = f"select {', '.join(self._select) or '*'} from {self.series_clause()}"
        sql += self.where_clause()
        groups = ([self._time] if self._time else []) + self._group
        if groups:
            sql += f" group by {', '.join(groups)}"
        if self._fill is not _UNSET:
            sql += f" fill({self._fill})"
        if self._limit is not None:
            sql += f" limit {self._limit}"
        return sql

    # execution

    @property
    def client(self):
        client = self.klass._schema.registry.client
        if client is None:
            raise MetricsError(f"No client bound to the registry of {self.klass.__qualname__}")
        return client

    def load(self) -> List[Dict[str, Any]]:
        if self._records is None:
            sql = self.to_sql()
            logger.debug("Query %s", sql)
            result = self.client.query(sql)
            self._records = list(next(iter(result.values()), []))
        return self._records

    def to_a(self) -> List[Dict[str, Any]]:
        return list(self.load())

    def reload(self) -> "Relation":
        self._records = None
        self.load()
        return self

    def delete_all(self) -> Any:
        sql = f"delete from {self.series_clause()}{self.where_clause()}"
        logger.debug("Query %s", sql)
        return self.client.query(sql)

    def write(self, attributes: Optional[Mapping[str, Any]] = None, **kwargs: Any):
        return self.klass(attributes, **kwargs).write()

    @contextmanager
    def scoping(self) -> Iterator["Relation"]:
        """Make this relation the base of ``klass.all()`` inside the block."""
        with use_scope(self) as relation:
            yield relation

    # calculations

    def _calculate(self, func: str, field: str, *args: Any, alias: Optional[str] = None):
        expression = f"{func}({', '.join([field, *map(str, args)])})"
        if alias:
            expression += f" as {alias}"
        clone = self.clone()
        clone._select = [expression]
        return clone.load()

    def percentile(self, field: str, value: float, alias: Optional[str] = None):
        return self._calculate("percentile", field, value, alias=alias)

    def histogram(self, field: str, bucket_size: float = 1.0, alias: Optional[str] = None):
        return self._calculate("histogram", field, bucket_size, alias=alias)

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        return iter(self.load())

    def __len__(self) -> int:
        return len(self.load())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Relation):
            return NotImplemented
        return self.klass is other.klass and self.to_sql() == other.to_sql()

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        try:
            return f"<Relation {self.to_sql()}>"
        except SeriesResolutionError:
            return f"<Relation {self.klass.__qualname__}>"


def _calculation(func: str):
    def calculate(self, field: str, alias: Optional[str] = None):
        return self._calculate(func, field, alias=alias)

    calculate.__name__ = func
    calculate.__doc__ = f"Load ``{func}(field)`` over the relation."
    return calculate


for _func in CALCULATION_METHODS:
    if not hasattr(Relation, _func):
        setattr(Relation, _func, _calculation(_func))
