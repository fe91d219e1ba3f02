from __future__ import annotations

from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, Iterator, List, Sequence, Tuple, Type

from pydantic import BaseModel, ConfigDict, ValidationError, create_model

MetricValidator = Callable[[Any], None]


class Errors:
    """Validation failures of a metric instance, keyed by attribute."""

    def __init__(self) -> None:
        self._items: List[Tuple[str, str]] = []

    def add(self, attribute: str, message: str) -> None:
        self._items.append((attribute, message))

    def clear(self) -> None:
        self._items.clear()

    def is_empty(self) -> bool:
        return not self._items

    def full_messages(self) -> List[str]:
        return [f"{attribute} {message}" for attribute, message in self._items]

    def to_dict(self) -> Dict[str, List[str]]:
        grouped: Dict[str, List[str]] = {}
        for attribute, message in self._items:
            grouped.setdefault(attribute, []).append(message)
        return grouped

    def __getitem__(self, attribute: str) -> List[str]:
        return [message for name, message in self._items if name == attribute]

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"Errors({self.to_dict()!r})"


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


@lru_cache(maxsize=None)
def _presence_model(names: Tuple[str, ...]) -> Type[BaseModel]:
    fields: Dict[str, Any] = {name: (Any, ...) for name in names}
    return create_model(
        "PresenceCheck",
        __config__=ConfigDict(protected_namespaces=(), extra="ignore"),
        **fields,
    )


class Validator:
    """Runs presence checks and custom rules against a metric instance.

    Presence is delegated to a pydantic model whose fields are the required
    attribute names; blank values are left out of the payload so pydantic
    reports them as missing.
    """

    def __init__(
        self,
        required: Sequence[str] = (),
        validators: Iterable[MetricValidator] = (),
    ) -> None:
        self.required = tuple(dict.fromkeys(required))
        self.validators = list(validators)

    def validate(self, metric: Any, errors: Errors) -> bool:
        errors.clear()
        if self.required:
            payload = {
                name: value
                for name, value in metric.attributes.items()
                if name in self.required and not _is_blank(value)
            }
            try:
                _presence_model(self.required).model_validate(payload)
            except ValidationError as exc:
                for error in exc.errors():
                    attribute = str(error["loc"][0]) if error["loc"] else "base"
                    errors.add(attribute, error["msg"])
        for validator in self.validators:
            validator(metric)
        return errors.is_empty()
