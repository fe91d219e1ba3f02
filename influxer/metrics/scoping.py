from __future__ import annotations

from typing import Any, Callable, Optional

from .relation import Relation, current_scope

ScopeFn = Callable[..., Relation]


class Scoping:
    """Class-level entry points into ``Relation`` for metric types."""

    @classmethod
    def default_scope(cls, fn: ScopeFn) -> ScopeFn:
        """Apply ``fn(relation)`` to every query of this type and its subtypes."""
        cls._schema.default_scopes.append(fn)
        return fn

    @classmethod
    def scope(cls, name: str, fn: ScopeFn) -> None:
        """Install ``cls.<name>(*args)`` returning ``fn(cls.all(), *args)``."""
        if name.startswith("_") or name in cls.__dict__:
            raise ValueError(f"Scope '{name}' clashes with a member of {cls.__qualname__}.")

        def named_scope(klass, *args: Any, **kwargs: Any) -> Relation:
            return fn(klass.all(), *args, **kwargs)

        named_scope.__name__ = name
        setattr(cls, name, classmethod(named_scope))

    @classmethod
    def unscoped(cls) -> Relation:
        return Relation(cls)

    @classmethod
    def default_scoped(cls) -> Relation:
        relation = Relation(cls)
        for fn in cls._schema.scopes():
            relation = fn(relation)
        return relation

    @classmethod
    def current_scope(cls) -> Optional[Relation]:
        return current_scope(cls)

    @classmethod
    def all(cls) -> Relation:
        scope = cls.current_scope()
        if scope is not None:
            return scope.clone()
        return cls.default_scoped()
