"""Metric types and the write pipeline.

A metric class declares its attributes and the series its points go to::

    class VisitsMetrics(Metrics, attributes=("user_id", "page_id"), required=("user_id",)):
        @before_write
        def stamp(self):
            self.time = datetime.now(timezone.utc)

    VisitsMetrics.write(user_id=1, page_id=42)

Instances go through ``NEW -> VALIDATED -> COMMITTING -> COMMITTED`` (or
``REJECTED`` when validation fails) and can be committed exactly once.
"""

from __future__ import annotations

import enum
import inspect
import logging
import types
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from ..errors import (
    MetricsAborted,
    MetricsAlreadyWritten,
    MetricsError,
    MetricsInvalid,
    SeriesResolutionError,
)
from .registry import MetricSchema, SchemaRegistry, default_registry
from .relation import CALCULATION_METHODS, QUERY_METHODS
from .scoping import Scoping
from .series import build_spec, is_writable, quote_series, unquote
from .validation import Errors

logger = logging.getLogger(__name__)

_HOOK_MARK = "__influxer_hook__"
_VALIDATOR_MARK = "__influxer_validator__"
_UNSET: Any = object()
_DELEGATED = frozenset(QUERY_METHODS) | frozenset(CALCULATION_METHODS)
_RESERVED = frozenset(
    {
        "attributes",
        "client",
        "errors",
        "is_invalid",
        "is_valid",
        "persisted",
        "series",
        "state",
        "write",
        "write_or_raise",
    }
)


class MetricState(str, enum.Enum):
    NEW = "new"
    VALIDATED = "validated"
    COMMITTING = "committing"
    COMMITTED = "committed"
    REJECTED = "rejected"


def before_write(fn: Callable) -> Callable:
    """Mark a method to run before the point is written.

    Returning ``False`` halts the write.
    """
    setattr(fn, _HOOK_MARK, "before_write")
    return fn


def after_write(fn: Callable) -> Callable:
    """Mark a method to run once the point is written."""
    setattr(fn, _HOOK_MARK, "after_write")
    return fn


def validator(fn: Callable) -> Callable:
    """Mark a method as a validation rule; it reports through ``self.errors``."""
    setattr(fn, _VALIDATOR_MARK, True)
    return fn


def _delegate(name: str) -> Callable:
    def query(cls, *args, **kwargs):
        return getattr(cls.all(), name)(*args, **kwargs)

    query.__name__ = name
    query.__doc__ = f"Shortcut for ``cls.all().{name}(...)``."
    return query


class Attribute:
    """Accessor pair backed by the instance's attribute store.

    Accessed on the class, names shared with the query API (``time``,
    ``count``...) resolve to the class-level query method instead.
    """

    def __init__(self, name: str) -> None:
        self.name = name

    def __get__(self, obj: Any, owner: Optional[type] = None) -> Any:
        if obj is None:
            if self.name in _DELEGATED and owner is not None:
                return types.MethodType(_delegate(self.name), owner)
            return self
        return obj._attributes.get(self.name)

    def __set__(self, obj: Any, value: Any) -> None:
        if obj.persisted:
            raise MetricsError(f"Cannot change '{self.name}' of written metrics")
        obj._attributes[self.name] = value

    def __repr__(self) -> str:
        return f"Attribute({self.name!r})"


class hybridmethod:
    """Bind ``on_class`` when looked up on the class, ``on_instance`` otherwise."""

    def __init__(self, on_class: Callable, on_instance: Callable) -> None:
        self.on_class = on_class
        self.on_instance = on_instance

    def __get__(self, obj: Any, owner: Optional[type] = None) -> Any:
        if obj is None:
            return types.MethodType(self.on_class, owner)
        return types.MethodType(self.on_instance, obj)


class _SeriesAccessor:
    """``Cls.series`` is the series spec; ``instance.series`` its quoted form."""

    def __get__(self, obj: Any, owner: Optional[type] = None) -> Any:
        if obj is None:
            return owner._schema.series_spec()
        return quote_series(obj._schema.series_spec(), obj)


def _write_new(cls, attributes: Optional[Mapping[str, Any]] = None, **kwargs: Any):
    return cls(attributes, **kwargs).write()


def _write_new_or_raise(cls, attributes: Optional[Mapping[str, Any]] = None, **kwargs: Any):
    return cls(attributes, **kwargs).write_or_raise()


def _write(self) -> Union["Metrics", bool]:
    """Commit the point; ``False`` when validation or a before hook rejects it."""
    return self._commit(strict=False)


def _write_or_raise(self) -> "Metrics":
    """Commit the point, raising instead of returning ``False``."""
    return self._commit(strict=True)


class Metrics(Scoping):
    _schema: MetricSchema

    series = _SeriesAccessor()
    write = hybridmethod(_write_new, _write)
    write_or_raise = hybridmethod(_write_new_or_raise, _write_or_raise)

    def __init_subclass__(
        cls,
        registry: Optional[SchemaRegistry] = None,
        series: Any = _UNSET,
        attributes: Iterable[str] = (),
        required: Iterable[str] = (),
        **kwargs: Any,
    ) -> None:
        super().__init_subclass__(**kwargs)
        parent = next(base._schema for base in cls.__mro__[1:] if "_schema" in base.__dict__)
        owner = registry if registry is not None else parent.registry
        cls._schema = owner.register(cls, parent)
        if attributes:
            cls.declare_attributes(*attributes)
        if series is not _UNSET:
            cls.set_series(*(series if isinstance(series, (list, tuple)) else (series,)))
        if required:
            cls.validates_presence_of(*required)
        for attr, member in cls.__dict__.items():
            kind = getattr(member, _HOOK_MARK, None)
            if kind:
                cls._schema.add_hook(kind, attr)
            if getattr(member, _VALIDATOR_MARK, False):
                cls._schema.validators.append(member)

    @classmethod
    def declare_attributes(cls, *names: str) -> None:
        for name in names:
            if name in _RESERVED or name.startswith("_"):
                raise ValueError(f"'{name}' cannot be used as a metric attribute.")
            existing = inspect.getattr_static(cls, name, None)
            if existing is not None and not isinstance(existing, Attribute) and name not in _DELEGATED:
                raise ValueError(f"'{name}' clashes with a member of {cls.__qualname__}.")
            setattr(cls, name, Attribute(name))
        cls._schema.declare(names)

    @classmethod
    def set_series(cls, *args: Any) -> None:
        """Point the type at one or more series, a regex or a callable.

        Without arguments the series is derived again from the class name,
        falling back to the parent's series.
        """
        if not args:
            cls._schema.derive_series(cls.__qualname__)
        else:
            cls._schema.set_series(build_spec(*args))

    @classmethod
    def validates_presence_of(cls, *names: str) -> None:
        cls._schema.required.extend(names)

    @classmethod
    def validates_with(cls, fn: Callable[[Any], None]) -> Callable[[Any], None]:
        cls._schema.validators.append(fn)
        return fn

    @classmethod
    def before_write(cls, fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
        cls._schema.add_hook("before_write", fn)
        return fn

    @classmethod
    def after_write(cls, fn: Callable[[Any], Any]) -> Callable[[Any], Any]:
        cls._schema.add_hook("after_write", fn)
        return fn

    @classmethod
    def schema(cls) -> MetricSchema:
        return cls._schema

    def __init__(self, attributes: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> None:
        self._attributes: Dict[str, Any] = {}
        self._state = MetricState.NEW
        self.errors = Errors()
        declared = set(self._schema.all_attributes())
        for name, value in {**(attributes or {}), **kwargs}.items():
            if name in declared:
                setattr(self, name, value)
            else:
                self._attributes[name] = value

    @property
    def attributes(self) -> Mapping[str, Any]:
        return types.MappingProxyType(self._attributes)

    @property
    def state(self) -> MetricState:
        return self._state

    @property
    def persisted(self) -> bool:
        return self._state is MetricState.COMMITTED

    @property
    def client(self):
        return self._schema.registry.client

    def is_valid(self) -> bool:
        valid = self._schema.validator().validate(self, self.errors)
        if self._state in (MetricState.NEW, MetricState.VALIDATED):
            self._state = MetricState.VALIDATED if valid else MetricState.REJECTED
        return valid

    def is_invalid(self) -> bool:
        return not self.is_valid()

    def _commit(self, strict: bool) -> Union["Metrics", bool]:
        if self.persisted:
            raise MetricsAlreadyWritten("Cannot write the same metrics twice")
        if self._state is MetricState.REJECTED:
            logger.debug("%s was rejected and cannot be written", type(self).__qualname__)
            if strict:
                raise MetricsInvalid(self.errors)
            return False
        if self.is_invalid():
            logger.debug("%s rejected: %s", type(self).__qualname__, self.errors.full_messages())
            if strict:
                raise MetricsInvalid(self.errors)
            return False
        for hook in self._schema.hooks("before_write"):
            if self._run_hook(hook) is False:
                name = hook if isinstance(hook, str) else getattr(hook, "__name__", repr(hook))
                logger.debug("%s write halted by %s", type(self).__qualname__, name)
                if strict:
                    raise MetricsAborted(f"Write halted by {name}")
                return False
        self._state = MetricState.COMMITTING
        self._write_point()
        self._state = MetricState.COMMITTED
        for hook in self._schema.hooks("after_write"):
            self._run_hook(hook)
        return self

    def _run_hook(self, hook: Any) -> Any:
        if isinstance(hook, str):
            return getattr(self, hook)()
        return hook(self)

    def _write_point(self) -> None:
        client = self.client
        if client is None:
            raise MetricsError(f"No client bound to the registry of {type(self).__qualname__}")
        quoted = self.series
        if not is_writable(quoted):
            raise SeriesResolutionError(f"Cannot write points to {quoted}")
        series = unquote(quoted)
        logger.debug("Writing point to %s", series)
        client.write_point(series, self._point_data())

    def _point_data(self) -> Dict[str, Any]:
        declared = set(self._schema.all_attributes())
        dropped = [str(name) for name in self._attributes if name not in declared]
        if dropped:
            logger.warning(
                "Dropping undeclared attributes %s from %s point",
                ", ".join(sorted(dropped)),
                type(self).__qualname__,
            )
        return {name: value for name, value in self._attributes.items() if name in declared}

    def __repr__(self) -> str:
        return f"<{type(self).__qualname__} {self._state.value} {self._attributes!r}>"


for _name in sorted(_DELEGATED):
    setattr(Metrics, _name, classmethod(_delegate(_name)))

Metrics._schema = default_registry.register(Metrics)
Metrics.declare_attributes("time")
