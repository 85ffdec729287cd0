from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import MISSING, dataclass, field, fields, is_dataclass
from typing import Any, cast, get_type_hints, overload

from .errors import ModelDefinitionError, NameCollisionError, ReservedNameError
from .marshalers import Marshaler, marshaler_for_annotation

_KEY_TYPES = frozenset({"S", "N", "B"})

# Private attribute holding per-item tracking state; see tracking.ItemData.
TRACKING_ATTRIBUTE = "_dynarecord_item_data"

_RESERVED_NAMES = frozenset({TRACKING_ATTRIBUTE, "__dataclass_fields__", "__dataclass_params__"})


@dataclass(frozen=True)
class AttributeDefinition:
    python_name: str
    attribute_name: str
    roles: tuple[str, ...]
    marshaler: Marshaler
    persist_nil: bool = False

    @property
    def dynamodb_type(self) -> str:
        return self.marshaler.dynamodb_type

    def type_cast(self, value: Any) -> Any:
        return self.marshaler.type_cast(value)

    def serialize(self, value: Any) -> Any:
        return self.marshaler.serialize(value)


@dataclass(frozen=True)
class Projection:
    type: str
    fields: tuple[str, ...] = ()

    @staticmethod
    def all() -> Projection:
        return Projection(type="ALL")

    @staticmethod
    def keys_only() -> Projection:
        return Projection(type="KEYS_ONLY")

    @staticmethod
    def include(*fields: str) -> Projection:
        return Projection(type="INCLUDE", fields=tuple(fields))


@dataclass(frozen=True)
class IndexSpec:
    name: str
    type: str
    partition: str
    sort: str | None = None
    projection: Projection = field(default_factory=Projection.all)


@dataclass(frozen=True)
class IndexDefinition:
    name: str
    type: str
    partition: str
    sort: str | None = None
    projection: Projection = field(default_factory=Projection.all)

    def key_schema(self) -> list[dict[str, str]]:
        schema = [{"AttributeName": self.partition, "KeyType": "HASH"}]
        if self.sort is not None:
            schema.append({"AttributeName": self.sort, "KeyType": "RANGE"})
        return schema

    def projection_request(self) -> dict[str, Any]:
        proj: dict[str, Any] = {"ProjectionType": self.projection.type}
        if self.projection.type == "INCLUDE" and self.projection.fields:
            proj["NonKeyAttributes"] = list(self.projection.fields)
        return proj


@overload
def record_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    marshaler: Marshaler | None = None,
    persist_nil: bool = False,
    ignore: bool = False,
) -> Any: ...


@overload
def record_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    marshaler: Marshaler | None = None,
    persist_nil: bool = False,
    ignore: bool = False,
    default: Any,
) -> Any: ...


@overload
def record_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    marshaler: Marshaler | None = None,
    persist_nil: bool = False,
    ignore: bool = False,
    default_factory: Any,
) -> Any: ...


def record_field(
    *,
    name: str | None = None,
    roles: Sequence[str] | None = None,
    marshaler: Marshaler | None = None,
    persist_nil: bool = False,
    ignore: bool = False,
    default: Any = MISSING,
    default_factory: Any = MISSING,
) -> Any:
    if default is not MISSING and default_factory is not MISSING:
        raise ValueError("record_field: cannot set both default and default_factory")

    opts: dict[str, Any] = {
        "marshaler": marshaler,
        "persist_nil": persist_nil,
        "ignore": ignore,
    }
    if name is not None:
        opts["name"] = name
    if roles is not None:
        opts["roles"] = list(roles)

    return field(default=default, default_factory=default_factory, metadata={"dynarecord": opts})


def gsi(
    name: str,
    *,
    partition: str,
    sort: str | None = None,
    projection: Projection | None = None,
) -> IndexSpec:
    return IndexSpec(
        name=name, type="GSI", partition=partition, sort=sort, projection=projection or Projection.all()
    )


def lsi(name: str, *, sort: str, projection: Projection | None = None) -> IndexSpec:
    return IndexSpec(
        name=name, type="LSI", partition="__TABLE_PK__", sort=sort, projection=projection or Projection.all()
    )


def default_table_name(model_type: type[Any]) -> str:
    return model_type.__qualname__.replace(".<locals>.", "_").replace(".", "_")


def _field_annotations(model_type: type[Any]) -> dict[str, Any]:
    try:
        return get_type_hints(model_type)
    except Exception:
        return {f.name: f.type for f in fields(model_type)}


@dataclass(frozen=True)
class ModelDefinition[T]:
    model_type: type[T]
    table_name: str
    pk: AttributeDefinition
    sk: AttributeDefinition | None
    attributes: Mapping[str, AttributeDefinition]
    indexes: tuple[IndexDefinition, ...]
    index_specs: tuple[IndexSpec, ...] = ()
    track_mutations: bool = True

    @classmethod
    def from_dataclass(
        cls,
        model_type: type[T],
        *,
        table_name: str | None = None,
        indexes: Sequence[IndexSpec] = (),
        track_mutations: bool = True,
    ) -> ModelDefinition[T]:
        if not is_dataclass(model_type):
            raise ModelDefinitionError("model_type must be a dataclass")

        annotations = _field_annotations(model_type)
        attributes: dict[str, AttributeDefinition] = {}
        storage_names: dict[str, str] = {}
        pk_fields: list[str] = []
        sk_fields: list[str] = []

        for dc_field in fields(model_type):
            opts = cast(dict[str, Any], dc_field.metadata.get("dynarecord", {}))
            if bool(opts.get("ignore", False)):
                continue

            if dc_field.name in _RESERVED_NAMES or dc_field.name.startswith("_dynarecord"):
                raise ReservedNameError(f"cannot name an attribute {dc_field.name}")

            roles = tuple(cast(list[str], opts.get("roles", [])))
            if "pk" in roles and "sk" in roles:
                raise ModelDefinitionError(f"field cannot be both pk and sk: {dc_field.name}")
            if "pk" in roles:
                pk_fields.append(dc_field.name)
            if "sk" in roles:
                sk_fields.append(dc_field.name)

            attribute_name = cast(str, opts.get("name") or dc_field.name)
            _check_for_naming_collisions(dc_field.name, attribute_name, attributes, storage_names)

            marshaler = cast(Marshaler | None, opts.get("marshaler"))
            if marshaler is None:
                marshaler = marshaler_for_annotation(annotations.get(dc_field.name, dc_field.type))

            attributes[dc_field.name] = AttributeDefinition(
                python_name=dc_field.name,
                attribute_name=attribute_name,
                roles=roles,
                marshaler=marshaler,
                persist_nil=bool(opts.get("persist_nil", False)),
            )
            storage_names[attribute_name] = dc_field.name

        if len(pk_fields) != 1:
            raise ModelDefinitionError(f"model must define exactly one pk field (found {len(pk_fields)})")

        if len(sk_fields) > 1:
            raise ModelDefinitionError(f"model must define at most one sk field (found {len(sk_fields)})")

        pk = attributes[pk_fields[0]]
        sk = attributes[sk_fields[0]] if sk_fields else None
        for key_attr in (pk, sk):
            if key_attr is not None and key_attr.dynamodb_type not in _KEY_TYPES:
                raise ModelDefinitionError(
                    f"key field must marshal to S/N/B: {key_attr.python_name} ({key_attr.dynamodb_type})"
                )

        resolved_indexes = _resolve_indexes(indexes, attributes, pk)

        return cls(
            model_type=model_type,
            table_name=table_name or default_table_name(model_type),
            pk=pk,
            sk=sk,
            attributes=attributes,
            indexes=tuple(resolved_indexes),
            index_specs=tuple(indexes),
            track_mutations=track_mutations,
        )

    @classmethod
    def inherit(
        cls,
        parent: ModelDefinition[Any],
        model_type: type[T],
        *,
        table_name: str | None = None,
        indexes: Sequence[IndexSpec] = (),
        track_mutations: bool | None = None,
    ) -> ModelDefinition[T]:
        if not issubclass(model_type, parent.model_type):
            raise ModelDefinitionError(
                f"{model_type.__name__} does not extend {parent.model_type.__name__}"
            )

        # A parent with a generated table name hands the default down to the child.
        parent_table = parent.table_name
        if parent_table == default_table_name(parent.model_type):
            parent_table = None

        return cls.from_dataclass(
            model_type,
            table_name=table_name or parent_table,
            indexes=(*parent.index_specs, *indexes),
            track_mutations=parent.track_mutations if track_mutations is None else track_mutations,
        )

    def attribute_for(self, field_name: str) -> AttributeDefinition:
        try:
            return self.attributes[field_name]
        except KeyError:
            raise ModelDefinitionError(f"unknown field: {field_name}") from None

    def storage_name_for(self, field_name: str) -> str:
        return self.attribute_for(field_name).attribute_name

    def field_for_storage_name(self, attribute_name: str) -> str | None:
        for name, attr in self.attributes.items():
            if attr.attribute_name == attribute_name:
                return name
        return None

    def key_fields(self) -> tuple[str, ...]:
        if self.sk is None:
            return (self.pk.python_name,)
        return (self.pk.python_name, self.sk.python_name)

    def key_schema(self) -> list[dict[str, str]]:
        schema = [{"AttributeName": self.pk.attribute_name, "KeyType": "HASH"}]
        if self.sk is not None:
            schema.append({"AttributeName": self.sk.attribute_name, "KeyType": "RANGE"})
        return schema

    def global_secondary_indexes(self) -> tuple[IndexDefinition, ...]:
        return tuple(idx for idx in self.indexes if idx.type == "GSI")

    def local_secondary_indexes(self) -> tuple[IndexDefinition, ...]:
        return tuple(idx for idx in self.indexes if idx.type == "LSI")


def _check_for_naming_collisions(
    python_name: str,
    attribute_name: str,
    attributes: Mapping[str, AttributeDefinition],
    storage_names: Mapping[str, str],
) -> None:
    if attribute_name != python_name and attribute_name in attributes:
        raise NameCollisionError(
            f"custom storage name {attribute_name} already exists as an attribute name"
        )
    if python_name in storage_names and storage_names[python_name] != python_name:
        raise NameCollisionError(f"attribute name {python_name} already exists as a custom storage name")
    if attribute_name in storage_names:
        raise NameCollisionError(f"custom storage name {attribute_name} already in use")


def _resolve_indexes(
    indexes: Sequence[IndexSpec],
    attributes: Mapping[str, AttributeDefinition],
    pk: AttributeDefinition,
) -> list[IndexDefinition]:
    resolved: list[IndexDefinition] = []
    seen_index_names: set[str] = set()

    for spec in indexes:
        if spec.name in seen_index_names:
            raise ModelDefinitionError(f"duplicate index name: {spec.name}")
        seen_index_names.add(spec.name)

        if spec.type not in {"GSI", "LSI"}:
            raise ModelDefinitionError(f"unsupported index type: {spec.type}")

        if spec.type == "LSI" and spec.sort is None:
            raise ModelDefinitionError(f"index {spec.name}: LSI requires a sort field")

        partition_field = (
            pk.python_name if spec.type == "LSI" and spec.partition == "__TABLE_PK__" else spec.partition
        )
        if partition_field not in attributes:
            raise ModelDefinitionError(f"index {spec.name}: unknown partition field: {partition_field}")

        if spec.type == "LSI" and partition_field != pk.python_name:
            raise ModelDefinitionError(
                f"index {spec.name}: LSI partition must be the table pk ({pk.python_name})"
            )
        if attributes[partition_field].dynamodb_type not in _KEY_TYPES:
            raise ModelDefinitionError(
                f"index {spec.name}: partition field must marshal to S/N/B: {partition_field}"
            )

        sort_attr: str | None = None
        if spec.sort is not None:
            if spec.sort not in attributes:
                raise ModelDefinitionError(f"index {spec.name}: unknown sort field: {spec.sort}")
            if attributes[spec.sort].dynamodb_type not in _KEY_TYPES:
                raise ModelDefinitionError(
                    f"index {spec.name}: sort field must marshal to S/N/B: {spec.sort}"
                )
            sort_attr = attributes[spec.sort].attribute_name

        projection = spec.projection
        if projection.type == "INCLUDE":
            unknown = [name for name in projection.fields if name not in attributes]
            if unknown:
                raise ModelDefinitionError(f"index {spec.name}: unknown projected fields: {unknown}")
            projection = Projection(
                type="INCLUDE",
                fields=tuple(attributes[name].attribute_name for name in projection.fields),
            )

        resolved.append(
            IndexDefinition(
                name=spec.name,
                type=spec.type,
                partition=attributes[partition_field].attribute_name,
                sort=sort_attr,
                projection=projection,
            )
        )

    return resolved
