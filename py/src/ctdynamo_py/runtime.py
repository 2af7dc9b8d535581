from __future__ import annotations

import inspect
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, cast

import boto3
import structlog
from botocore.config import Config

from .config import RuntimeSettings

logger = structlog.get_logger()


@dataclass(frozen=True)
class AwsCallMetric:
    service: str
    operation: str
    seconds: float
    ok: bool


def create_boto3_config(settings: RuntimeSettings | None = None) -> Config:
    settings = settings or RuntimeSettings.from_env()
    return Config(
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
        retries={"max_attempts": settings.max_attempts, "mode": "adaptive"},
        max_pool_connections=settings.max_workers,
    )


class _InstrumentedClient:
    def __init__(self, client: Any, service: str, on_call: Callable[[AwsCallMetric], None]) -> None:
        self._client = client
        self._service = service
        self._on_call = on_call

    def _record(self, operation: str, start: float, ok: bool) -> None:
        self._on_call(
            AwsCallMetric(
                service=self._service,
                operation=operation,
                seconds=time.monotonic() - start,
                ok=ok,
            )
        )

    def __getattr__(self, name: str) -> Any:
        attr = getattr(self._client, name)
        if name.startswith("_") or not callable(attr):
            return attr

        if inspect.iscoroutinefunction(attr):

            async def awaited(*args: Any, **kwargs: Any) -> Any:
                start = time.monotonic()
                try:
                    out = await attr(*args, **kwargs)
                except Exception:
                    self._record(name, start, ok=False)
                    raise
                self._record(name, start, ok=True)
                return out

            return awaited

        def wrapped(*args: Any, **kwargs: Any) -> Any:
            start = time.monotonic()
            try:
                out = attr(*args, **kwargs)
            except Exception:
                self._record(name, start, ok=False)
                raise
            self._record(name, start, ok=True)
            return out

        return wrapped


def instrument_client(
    client: Any,
    *,
    on_call: Callable[[AwsCallMetric], None],
    service: str = "dynamodb",
) -> Any:
    """Wraps a blocking or aiobotocore client so every public call reports an ``AwsCallMetric``."""
    return _InstrumentedClient(client, service, on_call)


_clients: dict[tuple[str | None, str | None], Any] = {}


def get_dynamodb_client(
    settings: RuntimeSettings | None = None,
    *,
    session: Any | None = None,
    metrics: Callable[[AwsCallMetric], None] | None = None,
) -> Any:
    settings = settings or RuntimeSettings.from_env()
    key = (settings.region, settings.endpoint_url)
    existing = _clients.get(key)
    if existing is not None:
        return existing

    sess = session or boto3.session.Session(region_name=settings.region)
    client = cast(Any, sess).client(
        "dynamodb",
        region_name=settings.region,
        endpoint_url=settings.endpoint_url,
        config=create_boto3_config(settings),
    )
    if metrics is not None:
        client = instrument_client(client, on_call=metrics)

    logger.debug("dynamodb_client_created", region=settings.region, endpoint_url=settings.endpoint_url)
    _clients[key] = client
    return client


def create_async_dynamodb_client(settings: RuntimeSettings | None = None) -> Any:
    """Returns an aiobotocore client context manager; enter it with ``async with``.

    Requires the ``async`` extra.
    """
    import aiobotocore.session

    settings = settings or RuntimeSettings.from_env()
    session = aiobotocore.session.get_session()
    kwargs: dict[str, Any] = {"config": create_boto3_config(settings)}
    if settings.region:
        kwargs["region_name"] = settings.region
    if settings.endpoint_url:
        kwargs["endpoint_url"] = settings.endpoint_url
    return session.create_client("dynamodb", **kwargs)


def _reset_clients_for_tests() -> None:
    _clients.clear()
