from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, cast

import boto3
from botocore.config import Config

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class AwsCallMetric:
    service: str
    operation: str
    seconds: float
    ok: bool


@dataclass(frozen=True)
class ClientSettings:
    region: str | None = None
    endpoint_url: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> ClientSettings:
        region = (environ.get("AWS_REGION") or environ.get("AWS_DEFAULT_REGION") or "").strip() or None
        endpoint = (environ.get("DYNAMODB_ENDPOINT") or "").strip() or None
        return cls(region=region, endpoint_url=endpoint)


def user_agent_suffix() -> str:
    from . import __version__

    return f"dynarecord/{__version__}"


def create_boto3_config(
    *,
    connect_timeout: float = 1.0,
    read_timeout: float = 3.0,
    max_attempts: int = 3,
    retry_mode: str = "adaptive",
) -> Config:
    return Config(
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        retries={"max_attempts": max_attempts, "mode": retry_mode},
        user_agent_extra=user_agent_suffix(),
    )


class _InstrumentedClient:
    def __init__(self, client: Any, service: str, on_call: Callable[[AwsCallMetric], None]) -> None:
        self._client = client
        self._service = service
        self._on_call = on_call

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._client, name)
        if name.startswith("_") or not callable(attr):
            return attr

        def wrapped(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            ok = False
            try:
                out = attr(*args, **kwargs)
                ok = True
                return out
            finally:
                self._on_call(
                    AwsCallMetric(
                        service=self._service,
                        operation=name,
                        seconds=time.monotonic() - start,
                        ok=ok,
                    )
                )

        return wrapped


def instrument_boto3_client(
    client: Any,
    *,
    service: str,
    on_call: Callable[[AwsCallMetric], None],
) -> Any:
    return _InstrumentedClient(client, service, on_call)


def logging_metrics(logger: logging.Logger | None = None) -> Callable[[AwsCallMetric], None]:
    target = logger or log

    def on_call(metric: AwsCallMetric) -> None:
        target.debug(
            "%s.%s %s in %.3fs",
            metric.service,
            metric.operation,
            "ok" if metric.ok else "failed",
            metric.seconds,
        )

    return on_call


_clients: dict[tuple[str, str | None, str | None], Any] = {}
_clients_lock = threading.Lock()


def get_boto3_client(
    service: str,
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
    config: Config | None = None,
    session: Any | None = None,
    metrics: Callable[[AwsCallMetric], None] | None = None,
) -> Any:
    key = (service, region, endpoint_url)
    with _clients_lock:
        existing = _clients.get(key)
        if existing is not None:
            return existing

        sess = session or boto3.session.Session(region_name=region)
        kwargs: dict[str, Any] = {"region_name": region, "config": config or create_boto3_config()}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        client = cast(Any, sess).client(service, **kwargs)
        if metrics is not None:
            client = instrument_boto3_client(client, service=service, on_call=metrics)

        log.debug("created %s client (region=%s endpoint=%s)", service, region, endpoint_url)
        _clients[key] = client
        return client


_default_client: Any | None = None


def configure_client(
    client: Any | None = None,
    *,
    region: str | None = None,
    endpoint_url: str | None = None,
    config: Config | None = None,
    session: Any | None = None,
    metrics: Callable[[AwsCallMetric], None] | None = None,
) -> Any:
    """Set the process-wide DynamoDB client used when a Table gets no client.

    Passing an existing client installs it as-is; otherwise one is built from
    the arguments, falling back to the environment for region and endpoint.
    """
    global _default_client

    if client is None:
        settings = ClientSettings.from_env()
        region = region or settings.region
        endpoint_url = endpoint_url or settings.endpoint_url
        sess = session or boto3.session.Session(region_name=region)
        kwargs: dict[str, Any] = {"region_name": region, "config": config or create_boto3_config()}
        if endpoint_url:
            kwargs["endpoint_url"] = endpoint_url
        client = cast(Any, sess).client("dynamodb", **kwargs)
        if metrics is not None:
            client = instrument_boto3_client(client, service="dynamodb", on_call=metrics)

    _default_client = client
    return client


def default_client() -> Any:
    if _default_client is None:
        settings = ClientSettings.from_env()
        return get_boto3_client("dynamodb", region=settings.region, endpoint_url=settings.endpoint_url)
    return _default_client


def _reset_clients_for_tests() -> None:
    global _default_client

    _default_client = None
    with _clients_lock:
        _clients.clear()
