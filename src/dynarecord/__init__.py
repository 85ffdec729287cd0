from __future__ import annotations

import json
import re
from importlib.resources import files
from typing import TYPE_CHECKING, Any

from .errors import (
    AwsError,
    BatchRetryExceededError,
    ConditionFailedError,
    DynarecordError,
    ItemAlreadyExistsError,
    KeyMissingError,
    MissingRequiredConfigurationError,
    ModelDefinitionError,
    NameCollisionError,
    NotFoundError,
    ReservedNameError,
    TableDoesNotExistError,
    TransactionalSaveConditionCollisionError,
    TransactionCanceledError,
    ValidationError,
)
from .model import (
    AttributeDefinition,
    IndexDefinition,
    IndexSpec,
    ModelDefinition,
    Projection,
    gsi,
    lsi,
    record_field,
)
from .query import FilterCondition, FilterGroup, Page, SortKeyCondition
from .transaction import (
    TransactConditionCheck,
    TransactDelete,
    TransactDeleteItem,
    TransactFindResult,
    TransactPut,
    TransactSave,
    TransactUpdate,
    TransactWriteAction,
)

if TYPE_CHECKING:
    from .batch import BatchRead, BatchWrite, batch_read, batch_write
    from .client import (
        AwsCallMetric,
        ClientSettings,
        configure_client,
        create_boto3_config,
        default_client,
        get_boto3_client,
        instrument_boto3_client,
        logging_metrics,
    )
    from .marshalers import (
        BooleanMarshaler,
        DateMarshaler,
        DateTimeMarshaler,
        EpochTimeMarshaler,
        FloatMarshaler,
        IntegerMarshaler,
        ListMarshaler,
        MapMarshaler,
        Marshaler,
        NumericSetMarshaler,
        StringMarshaler,
        StringSetMarshaler,
    )
    from .schema import (
        TableMigration,
        build_create_table_request,
        create_table,
        delete_table,
        describe_table,
        ensure_table,
        provisioned_throughput,
        table_exists,
        update_table,
    )
    from .search import ItemCollection, SearchBuilder
    from .table import Table
    from .table_config import GsiConfig, TableConfig
    from .transaction import transact_find, transact_write
    from .update_builder import UpdateBuilder


def _read_repo_version() -> str:
    try:
        data = json.loads(files(__package__).joinpath("version.json").read_text(encoding="utf-8"))
    except Exception:
        return "0.0.0"

    version = data.get("version")
    return version if isinstance(version, str) and version else "0.0.0"


def _normalize_repo_version(repo_version: str) -> str:
    match = re.match(r"^(\d+\.\d+\.\d+)-rc\.?([0-9]+)$", repo_version)
    if match:
        return f"{match.group(1)}rc{match.group(2)}"
    return repo_version


__repo_version__ = _read_repo_version()
__version__ = _normalize_repo_version(__repo_version__)


_LAZY_EXPORTS: dict[str, tuple[str, ...]] = {
    "batch": ("BatchRead", "BatchWrite", "batch_read", "batch_write"),
    "client": (
        "AwsCallMetric",
        "ClientSettings",
        "configure_client",
        "create_boto3_config",
        "default_client",
        "get_boto3_client",
        "instrument_boto3_client",
        "logging_metrics",
    ),
    "marshalers": (
        "BooleanMarshaler",
        "DateMarshaler",
        "DateTimeMarshaler",
        "EpochTimeMarshaler",
        "FloatMarshaler",
        "IntegerMarshaler",
        "ListMarshaler",
        "MapMarshaler",
        "Marshaler",
        "NumericSetMarshaler",
        "StringMarshaler",
        "StringSetMarshaler",
    ),
    "schema": (
        "TableMigration",
        "build_create_table_request",
        "create_table",
        "delete_table",
        "describe_table",
        "ensure_table",
        "provisioned_throughput",
        "table_exists",
        "update_table",
    ),
    "search": ("ItemCollection", "SearchBuilder"),
    "table": ("Table",),
    "table_config": ("GsiConfig", "TableConfig"),
    "transaction": ("transact_find", "transact_write"),
    "update_builder": ("UpdateBuilder",),
}


def __getattr__(name: str) -> Any:
    for module_name, names in _LAZY_EXPORTS.items():
        if name in names:
            from importlib import import_module

            module = import_module(f".{module_name}", __name__)
            return getattr(module, name)
    raise AttributeError(name)


__all__ = [
    "AttributeDefinition",
    "AwsCallMetric",
    "AwsError",
    "BatchRead",
    "BatchRetryExceededError",
    "BatchWrite",
    "BooleanMarshaler",
    "ClientSettings",
    "ConditionFailedError",
    "DateMarshaler",
    "DateTimeMarshaler",
    "DynarecordError",
    "EpochTimeMarshaler",
    "FilterCondition",
    "FilterGroup",
    "FloatMarshaler",
    "GsiConfig",
    "IndexDefinition",
    "IndexSpec",
    "IntegerMarshaler",
    "ItemAlreadyExistsError",
    "ItemCollection",
    "KeyMissingError",
    "ListMarshaler",
    "MapMarshaler",
    "Marshaler",
    "MissingRequiredConfigurationError",
    "ModelDefinition",
    "ModelDefinitionError",
    "NameCollisionError",
    "NotFoundError",
    "NumericSetMarshaler",
    "Page",
    "Projection",
    "ReservedNameError",
    "SearchBuilder",
    "SortKeyCondition",
    "StringMarshaler",
    "StringSetMarshaler",
    "Table",
    "TableConfig",
    "TableDoesNotExistError",
    "TableMigration",
    "TransactConditionCheck",
    "TransactDelete",
    "TransactDeleteItem",
    "TransactFindResult",
    "TransactPut",
    "TransactSave",
    "TransactUpdate",
    "TransactWriteAction",
    "TransactionCanceledError",
    "TransactionalSaveConditionCollisionError",
    "UpdateBuilder",
    "ValidationError",
    "__repo_version__",
    "__version__",
    "batch_read",
    "batch_write",
    "build_create_table_request",
    "configure_client",
    "create_boto3_config",
    "create_table",
    "default_client",
    "delete_table",
    "describe_table",
    "ensure_table",
    "get_boto3_client",
    "gsi",
    "instrument_boto3_client",
    "logging_metrics",
    "lsi",
    "provisioned_throughput",
    "record_field",
    "table_exists",
    "transact_find",
    "transact_write",
    "update_table",
]
