from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from ordersync.domain.alerts.dispatcher import AlertDispatcher
from ordersync.domain.handlers.registry import HandlerRegistry, build_registry
from ordersync.infra import models  # noqa: F401
from ordersync.infra.alerting import build_channels
from ordersync.infra.db import Database
from ordersync.infra.email import EmailAdapter, NoopEmailAdapter, resolve_email_adapter
from ordersync.infra.metrics import Metrics, configure_metrics
from ordersync.infra.provider_client import ProviderClient
from ordersync.infra.security import RateLimiter, create_rate_limiter

logger = logging.getLogger(__name__)


@dataclass
class AppServices:
    """Runtime dependencies stored on ``app.state.services`` and handed to jobs.

    Nothing here is usable before ``open()``; ``close()`` releases every
    connection the container owns.
    """

    app_settings: Any
    database: Database
    provider: ProviderClient
    email_adapter: EmailAdapter | NoopEmailAdapter
    alert_dispatcher: AlertDispatcher
    registry: HandlerRegistry
    metrics: Metrics
    rate_limiter: RateLimiter

    @property
    def session_factory(self):
        return self.database.session_factory

    async def open(self) -> None:
        await self.database.open()
        await self.provider.open()
        logger.info("services_opened")

    async def close(self) -> None:
        await self.provider.close()
        await self.email_adapter.close()
        await self.rate_limiter.close()
        await self.database.close()
        logger.info("services_closed")


def build_app_services(
    app_settings,
    *,
    metrics: Metrics | None = None,
    database: Database | None = None,
    provider_transport: httpx.AsyncBaseTransport | None = None,
    alert_transport: httpx.AsyncBaseTransport | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    email_adapter = resolve_email_adapter(app_settings)
    channels = build_channels(app_settings, email_adapter=email_adapter, transport=alert_transport)
    return AppServices(
        app_settings=app_settings,
        database=database or Database(app_settings.database_url, app_settings=app_settings),
        provider=ProviderClient.from_settings(app_settings, transport=provider_transport),
        email_adapter=email_adapter,
        alert_dispatcher=AlertDispatcher.from_settings(channels, app_settings),
        registry=build_registry(app_settings),
        metrics=metrics_client,
        rate_limiter=create_rate_limiter(app_settings),
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
