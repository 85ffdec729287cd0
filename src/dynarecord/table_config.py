from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, cast

import yaml
from botocore.exceptions import ClientError

from .aws_errors import map_table_error
from .client import default_client
from .errors import MissingRequiredConfigurationError, TableDoesNotExistError, ValidationError
from .model import ModelDefinition
from .schema import (
    _wait_for_table_active,
    attribute_definitions,
    build_create_table_request,
    describe_table,
    gsi_request,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class GsiConfig:
    read_capacity_units: int | None = None
    write_capacity_units: int | None = None

    def provisioned_throughput(self) -> dict[str, int]:
        out: dict[str, int] = {}
        if self.read_capacity_units is not None:
            out["ReadCapacityUnits"] = self.read_capacity_units
        if self.write_capacity_units is not None:
            out["WriteCapacityUnits"] = self.write_capacity_units
        return out


def _unsorted_equal(a: list[Any], b: list[Any]) -> bool:
    return all(x in b for x in a) and all(x in a for x in b)


def _normalized_projection(projection: Mapping[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {"ProjectionType": projection.get("ProjectionType")}
    if projection.get("NonKeyAttributes"):
        out["NonKeyAttributes"] = sorted(projection["NonKeyAttributes"])
    return out


@dataclass
class TableConfig:
    """Declared throughput and GSI settings for one model's table.

    `migrate()` brings the remote table in line with the declaration;
    `is_compatible()` and `is_exact_match()` only inspect it.
    """

    model: ModelDefinition[Any] | None
    read_capacity_units: int | None = None
    write_capacity_units: int | None = None
    billing_mode: str = "PROVISIONED"
    global_secondary_indexes: Mapping[str, GsiConfig] = field(default_factory=dict)
    client: Any | None = None
    wait_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 0.25
    sleep: Callable[[float], None] = time.sleep

    @property
    def _on_demand(self) -> bool:
        return self.billing_mode == "PAY_PER_REQUEST"

    def _client(self) -> Any:
        if self.client is None:
            self.client = default_client()
        return self.client

    def _model(self) -> ModelDefinition[Any]:
        self.validate()
        return cast(ModelDefinition[Any], self.model)

    def validate(self) -> None:
        missing: list[str] = []
        if self.model is None:
            missing.append("model")
        if self.billing_mode not in {"PROVISIONED", "PAY_PER_REQUEST"}:
            raise ValidationError(f"unsupported billing_mode: {self.billing_mode}")
        if not self._on_demand:
            if self.read_capacity_units is None:
                missing.append("read_capacity_units")
            if self.write_capacity_units is None:
                missing.append("write_capacity_units")
            if self.model is not None:
                for idx in self.model.global_secondary_indexes():
                    gsi = self.global_secondary_indexes.get(idx.name)
                    if gsi is None or len(gsi.provisioned_throughput()) != 2:
                        missing.append(f"global_secondary_indexes[{idx.name}]")
        if missing:
            raise MissingRequiredConfigurationError("missing: " + ", ".join(missing))

    def _throughput(self) -> dict[str, int] | None:
        if self._on_demand:
            return None
        return {
            "ReadCapacityUnits": int(self.read_capacity_units or 0),
            "WriteCapacityUnits": int(self.write_capacity_units or 0),
        }

    def _gsi_throughput(self, name: str) -> dict[str, int] | None:
        if self._on_demand:
            return None
        return self.global_secondary_indexes[name].provisioned_throughput()

    def _local_gsis(self, model: ModelDefinition[Any]) -> list[dict[str, Any]]:
        return [gsi_request(idx, self._gsi_throughput(idx.name)) for idx in model.global_secondary_indexes()]

    def _call(self, operation: str, **req: Any) -> Any:
        try:
            return getattr(self._client(), operation)(**req)
        except ClientError as err:
            raise map_table_error(err) from err

    def _describe(self, model: ModelDefinition[Any]) -> dict[str, Any] | None:
        try:
            return describe_table(model, client=self._client()).get("Table", {})
        except TableDoesNotExistError:
            return None

    def _wait(self, model: ModelDefinition[Any]) -> None:
        _wait_for_table_active(
            self._client(),
            model.table_name,
            timeout_seconds=self.wait_timeout_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            sleep=self.sleep,
        )

    def migrate(self) -> None:
        model = self._model()
        remote = self._describe(model)

        if remote is None:
            gsi_throughput = None
            if not self._on_demand:
                gsi_throughput = {
                    idx.name: self.global_secondary_indexes[idx.name].provisioned_throughput()
                    for idx in model.global_secondary_indexes()
                }
            req = build_create_table_request(
                model,
                billing_mode=self.billing_mode,
                provisioned_throughput=self._throughput(),
                gsi_throughput=gsi_throughput,
            )
            log.info("table %s missing; creating", model.table_name)
            self._call("create_table", **req)
            self._wait(model)
            return

        if self._compatible(model, remote):
            log.debug("table %s is compatible; nothing to migrate", model.table_name)
            return

        if not self._throughput_equal(remote):
            log.info("updating throughput of %s", model.table_name)
            if self._on_demand:
                self._call("update_table", TableName=model.table_name, BillingMode="PAY_PER_REQUEST")
            else:
                self._call(
                    "update_table",
                    TableName=model.table_name,
                    BillingMode="PROVISIONED",
                    ProvisionedThroughput=self._throughput(),
                )
            self._wait(model)

        if not self._gsi_superset(model, remote):
            updates, incremental = self._gsi_updates(model, remote)
            if updates:
                log.info("updating %d global secondary index(es) of %s", len(updates), model.table_name)
                update_req: dict[str, Any] = {
                    "TableName": model.table_name,
                    "GlobalSecondaryIndexUpdates": updates,
                }
                if incremental:
                    update_req["AttributeDefinitions"] = incremental
                self._call("update_table", **update_req)
                self._wait(model)

    def is_compatible(self) -> bool:
        model = self._model()
        remote = self._describe(model)
        return remote is not None and self._compatible(model, remote)

    def is_exact_match(self) -> bool:
        model = self._model()
        remote = self._describe(model)
        if remote is None:
            return False
        return (
            self._throughput_equal(remote)
            and self._keys_equal(model, remote)
            and _unsorted_equal(list(remote.get("AttributeDefinitions") or []), attribute_definitions(model))
            and self._gsi_equal(model, remote)
        )

    def _compatible(self, model: ModelDefinition[Any], remote: Mapping[str, Any]) -> bool:
        remote_ad = list(remote.get("AttributeDefinitions") or [])
        return (
            self._throughput_equal(remote)
            and self._keys_equal(model, remote)
            and all(ad in remote_ad for ad in attribute_definitions(model))
            and self._gsi_superset(model, remote)
        )

    def _throughput_equal(self, remote: Mapping[str, Any]) -> bool:
        remote_mode = (remote.get("BillingModeSummary") or {}).get("BillingMode", "PROVISIONED")
        if self._on_demand:
            return remote_mode == "PAY_PER_REQUEST"
        if remote_mode == "PAY_PER_REQUEST":
            return False
        remote_pt = remote.get("ProvisionedThroughput") or {}
        expected = self._throughput() or {}
        return all(remote_pt.get(k) == v for k, v in expected.items())

    def _keys_equal(self, model: ModelDefinition[Any], remote: Mapping[str, Any]) -> bool:
        return _unsorted_equal(list(remote.get("KeySchema") or []), model.key_schema())

    def _gsi_superset(self, model: ModelDefinition[Any], remote: Mapping[str, Any]) -> bool:
        remote_gsis = list(remote.get("GlobalSecondaryIndexes") or [])
        local = self._local_gsis(model)
        remote_names = {g["IndexName"] for g in remote_gsis}
        if not {g["IndexName"] for g in local} <= remote_names:
            return False
        return self._gsi_set_compare(remote_gsis, local)

    def _gsi_equal(self, model: ModelDefinition[Any], remote: Mapping[str, Any]) -> bool:
        remote_gsis = list(remote.get("GlobalSecondaryIndexes") or [])
        local = self._local_gsis(model)
        if {g["IndexName"] for g in local} != {g["IndexName"] for g in remote_gsis}:
            return False
        return self._gsi_set_compare(remote_gsis, local)

    def _gsi_set_compare(self, remote_gsis: list[Mapping[str, Any]], local: list[dict[str, Any]]) -> bool:
        by_name = {g["IndexName"]: g for g in remote_gsis}
        for lgsi in local:
            rgsi = by_name[lgsi["IndexName"]]
            if not _unsorted_equal(list(rgsi.get("KeySchema") or []), lgsi["KeySchema"]):
                return False
            rpt = rgsi.get("ProvisionedThroughput") or {}
            if any(rpt.get(k) != v for k, v in (lgsi.get("ProvisionedThroughput") or {}).items()):
                return False
            if _normalized_projection(rgsi.get("Projection") or {}) != _normalized_projection(lgsi["Projection"]):
                return False
        return True

    def _gsi_updates(
        self, model: ModelDefinition[Any], remote: Mapping[str, Any]
    ) -> tuple[list[dict[str, Any]], list[dict[str, str]]]:
        remote_names = {g["IndexName"] for g in remote.get("GlobalSecondaryIndexes") or []}
        updates: list[dict[str, Any]] = []
        created = []
        for idx in model.global_secondary_indexes():
            throughput = self._gsi_throughput(idx.name)
            if idx.name not in remote_names:
                created.append(idx)
                updates.append({"Create": gsi_request(idx, throughput)})
            elif throughput is not None:
                updates.append({"Update": {"IndexName": idx.name, "ProvisionedThroughput": throughput}})

        incremental = attribute_definitions(model, tuple(created)) if created else []
        return updates, incremental

    @classmethod
    def from_document(
        cls,
        raw: str | Mapping[str, Any],
        *,
        models: Mapping[str, ModelDefinition[Any]],
        client: Any | None = None,
    ) -> dict[str, TableConfig]:
        """Build configs from a YAML/JSON document.

        The document maps model names to settings:

            tables:
              Order:
                read_capacity_units: 5
                write_capacity_units: 2
                global_secondary_indexes:
                  by_customer: {read_capacity_units: 1, write_capacity_units: 1}
        """
        doc = yaml.safe_load(raw) if isinstance(raw, str) else raw
        if not isinstance(doc, Mapping) or not isinstance(doc.get("tables"), Mapping):
            raise ValidationError("table config document must contain a 'tables' mapping")

        out: dict[str, TableConfig] = {}
        for name, settings in doc["tables"].items():
            if name not in models:
                raise ValidationError(f"table config names an unknown model: {name}")
            settings = settings or {}
            if not isinstance(settings, Mapping):
                raise ValidationError(f"table config for {name} must be a mapping")

            gsis = {
                str(index_name): GsiConfig(
                    read_capacity_units=(gsi or {}).get("read_capacity_units"),
                    write_capacity_units=(gsi or {}).get("write_capacity_units"),
                )
                for index_name, gsi in (settings.get("global_secondary_indexes") or {}).items()
            }
            config = cls(
                model=models[name],
                read_capacity_units=settings.get("read_capacity_units"),
                write_capacity_units=settings.get("write_capacity_units"),
                billing_mode=str(settings.get("billing_mode", "PROVISIONED")),
                global_secondary_indexes=gsis,
                client=client,
            )
            config.validate()
            out[str(name)] = config
        return out
