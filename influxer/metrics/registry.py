from __future__ import annotations

import logging
from collections import OrderedDict
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Optional, Union

from .series import FixedName, SeriesSpec, derive_series_name, underscore
from .validation import MetricValidator, Validator

if TYPE_CHECKING:
    from ..client import Transport

logger = logging.getLogger(__name__)

# Marked methods are stored by name so an override replaces the inherited hook.
Hook = Union[str, Callable[[Any], Any]]
HOOK_KINDS = ("before_write", "after_write")


class MetricSchema:
    """Per-type configuration of a metric class.

    Schemas form a tree mirroring the class hierarchy. Lookups that walk
    ``parent`` are live, so a descendant without its own series sees later
    changes made to its ancestor.
    """

    def __init__(
        self,
        name: str,
        parent: Optional["MetricSchema"],
        registry: "SchemaRegistry",
    ) -> None:
        self.name = name
        self.parent = parent
        self.registry = registry
        self.attributes: List[str] = []
        self.series: Optional[SeriesSpec] = None
        self.required: List[str] = []
        self.validators: List[MetricValidator] = []
        self.default_scopes: List[Callable[[Any], Any]] = []
        self._hooks: Dict[str, List[Hook]] = {kind: [] for kind in HOOK_KINDS}

    def lineage(self) -> List["MetricSchema"]:
        """Schemas from the root down to this one."""
        chain: List[MetricSchema] = []
        node: Optional[MetricSchema] = self
        while node is not None:
            chain.append(node)
            node = node.parent
        return list(reversed(chain))

    def declare(self, names: Iterable[str]) -> None:
        for name in names:
            if name not in self.attributes:
                self.attributes.append(name)

    def all_attributes(self) -> List[str]:
        names: List[str] = []
        for schema in self.lineage():
            names.extend(name for name in schema.attributes if name not in names)
        return names

    def set_series(self, spec: Optional[SeriesSpec]) -> None:
        self.series = spec

    def derive_series(self, qualname: str) -> None:
        derived = derive_series_name(qualname)
        self.set_series(FixedName(derived) if derived else None)

    def series_spec(self) -> Optional[SeriesSpec]:
        node: Optional[MetricSchema] = self
        while node is not None:
            if node.series is not None:
                return node.series
            node = node.parent
        if self.parent is None:
            return None
        return FixedName(underscore(self.name.rpartition(".")[2]))

    def add_hook(self, kind: str, hook: Hook) -> None:
        if kind not in self._hooks:
            raise ValueError(f"Unknown hook '{kind}'.")
        self._hooks[kind].append(hook)

    def hooks(self, kind: str) -> List[Hook]:
        """Ancestor hooks first; a method name is listed once, where first declared."""
        seen = set()
        hooks: List[Hook] = []
        for schema in self.lineage():
            for hook in schema._hooks[kind]:
                if isinstance(hook, str):
                    if hook in seen:
                        continue
                    seen.add(hook)
                hooks.append(hook)
        return hooks

    def validator(self) -> Validator:
        required: List[str] = []
        validators: List[MetricValidator] = []
        for schema in self.lineage():
            required.extend(schema.required)
            validators.extend(schema.validators)
        return Validator(required, validators)

    def scopes(self) -> List[Callable[[Any], Any]]:
        return [scope for schema in self.lineage() for scope in schema.default_scopes]

    def __repr__(self) -> str:
        return f"MetricSchema({self.name!r}, series={self.series_spec()!r})"


class SchemaRegistry:
    """Registry of metric schemas keyed by class, bound to one transport."""

    def __init__(self, client: Optional["Transport"] = None) -> None:
        self.client = client
        self._schemas: "OrderedDict[type, MetricSchema]" = OrderedDict()

    def bind(self, client: Optional["Transport"]) -> None:
        self.client = client

    def register(self, cls: type, parent: Optional[MetricSchema] = None) -> MetricSchema:
        if cls in self._schemas:
            raise ValueError(f"Metric '{cls.__qualname__}' is already registered.")
        schema = MetricSchema(cls.__qualname__, parent, self)
        if parent is not None:
            schema.derive_series(cls.__qualname__)
        self._schemas[cls] = schema
        logger.debug("Registered metric %s with series %r", schema.name, schema.series_spec())
        return schema

    def all(self) -> Iterable[MetricSchema]:
        return self._schemas.values()

    def get(self, cls: type) -> MetricSchema:
        if cls not in self._schemas:
            raise KeyError(f"Metric '{cls.__qualname__}' is not registered.")
        return self._schemas[cls]

    def __contains__(self, cls: object) -> bool:
        return cls in self._schemas

    def __len__(self) -> int:
        return len(self._schemas)


default_registry = SchemaRegistry()
