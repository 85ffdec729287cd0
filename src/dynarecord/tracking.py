from __future__ import annotations

import copy
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .errors import ValidationError
from .model import TRACKING_ATTRIBUTE, ModelDefinition


@dataclass
class ItemData:
    """Shadow record kept alongside a model instance.

    `clean_copies` is None until the first clean point, so freshly built
    items compare every field against None.
    """

    track_mutations: bool = True
    new_record: bool = True
    destroyed: bool = False
    clean_copies: dict[str, Any] | None = None
    dirty_flags: set[str] = field(default_factory=set)

    @property
    def persisted(self) -> bool:
        return not (self.new_record or self.destroyed)

    def snapshot(self, value: Any) -> Any:
        if self.track_mutations:
            return copy.deepcopy(value)
        return value

    def was(self, name: str) -> Any:
        if self.clean_copies is None:
            return None
        return self.clean_copies.get(name)


def item_data(item: Any, definition: ModelDefinition[Any] | None = None) -> ItemData:
    data = item.__dict__.get(TRACKING_ATTRIBUTE)
    if data is None:
        track = definition.track_mutations if definition is not None else True
        data = ItemData(track_mutations=track)
        object.__setattr__(item, TRACKING_ATTRIBUTE, data)
    return data


def _field_names(item: Any, definition: ModelDefinition[Any] | None) -> list[str]:
    if definition is not None:
        return list(definition.attributes)
    fields = getattr(item, "__dataclass_fields__", None)
    if fields is None:
        raise ValidationError(f"{type(item).__name__} is not a model instance")
    return list(fields)


def _check_field(item: Any, name: str, definition: ModelDefinition[Any] | None) -> None:
    if name not in _field_names(item, definition):
        raise ValidationError(f"unknown attribute: {name}")


def attribute_dirty(item: Any, name: str, definition: ModelDefinition[Any] | None = None) -> bool:
    _check_field(item, name, definition)
    data = item_data(item, definition)
    if name in data.dirty_flags:
        return True
    return getattr(item, name) != data.was(name)


def dirty_fields(item: Any, definition: ModelDefinition[Any] | None = None) -> list[str]:
    data = item_data(item, definition)
    return [
        name
        for name in _field_names(item, definition)
        if name in data.dirty_flags or getattr(item, name) != data.was(name)
    ]


def is_dirty(item: Any, definition: ModelDefinition[Any] | None = None) -> bool:
    return bool(dirty_fields(item, definition))


def attribute_was(item: Any, name: str, definition: ModelDefinition[Any] | None = None) -> Any:
    _check_field(item, name, definition)
    return item_data(item, definition).was(name)


def mark_dirty(item: Any, name: str, definition: ModelDefinition[Any] | None = None) -> None:
    _check_field(item, name, definition)
    item_data(item, definition).dirty_flags.add(name)


def clean(item: Any, definition: ModelDefinition[Any] | None = None) -> None:
    data = item_data(item, definition)
    data.clean_copies = {name: data.snapshot(getattr(item, name)) for name in _field_names(item, definition)}
    data.dirty_flags.clear()


def rollback(
    item: Any,
    fields: Iterable[str] | None = None,
    definition: ModelDefinition[Any] | None = None,
) -> None:
    names = dirty_fields(item, definition) if fields is None else list(fields)
    for name in names:
        rollback_attribute(item, name, definition)


def rollback_attribute(item: Any, name: str, definition: ModelDefinition[Any] | None = None) -> None:
    if not attribute_dirty(item, name, definition):
        return
    data = item_data(item, definition)
    # Copy again so the clean snapshot survives later in-place edits.
    setattr(item, name, data.snapshot(data.was(name)))
    data.dirty_flags.discard(name)


def assign(item: Any, definition: ModelDefinition[Any] | None = None, /, **values: Any) -> None:
    names = set(_field_names(item, definition))
    unknown = sorted(set(values) - names)
    if unknown:
        raise ValidationError(f"unknown attribute(s): {', '.join(unknown)}")
    for name, value in values.items():
        setattr(item, name, value)


def is_new_record(item: Any) -> bool:
    return item_data(item).new_record


def is_persisted(item: Any) -> bool:
    return item_data(item).persisted


def is_destroyed(item: Any) -> bool:
    return item_data(item).destroyed


def mark_persisted(item: Any, definition: ModelDefinition[Any] | None = None) -> None:
    data = item_data(item, definition)
    data.new_record = False
    data.destroyed = False
    clean(item, definition)


def mark_destroyed(item: Any, definition: ModelDefinition[Any] | None = None) -> None:
    data = item_data(item, definition)
    data.destroyed = True
