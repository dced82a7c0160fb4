"""
Flowgate Server

Application factory and server entry point for the admin HTTP surface.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
import uvicorn
from fastapi import FastAPI

from flowgate.api import setup_flowgate_routes
from flowgate.capabilities.notification import Notifier
from flowgate.capabilities.registry import CapabilityRegistry
from flowgate.core.config import FlowgateConfig, get_config, set_config
from flowgate.core.logging import setup_logging
from flowgate.service import OrchestrationService

logger = structlog.get_logger(__name__)


def create_app(
    config: Optional[FlowgateConfig] = None,
    capabilities: Optional[CapabilityRegistry] = None,
    notifier: Optional[Notifier] = None,
) -> FastAPI:
    """
    Create and configure the Flowgate FastAPI application.

    Args:
        config: Optional configuration override
        capabilities: Capability registry the engine invokes
        notifier: Notification sink for failure policies

    Returns:
        Configured FastAPI application
    """
    if config:
        set_config(config)
    else:
        config = get_config()

    setup_logging(config.log_level.value, json_logs=config.json_logs)

    service = OrchestrationService(
        config=config,
        capabilities=capabilities,
        notifier=notifier,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("flowgate_starting", instance_id=config.instance_id)
        await service.initialize()

        yield

        logger.info("flowgate_shutting_down")
        await service.shutdown()

    app = FastAPI(
        title="Flowgate",
        description="Workflow orchestration engine admin API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.service = service

    setup_flowgate_routes(app, service)

    return app


def run_server(
    config: Optional[FlowgateConfig] = None,
    capabilities: Optional[CapabilityRegistry] = None,
    host: Optional[str] = None,
    port: Optional[int] = None,
) -> None:
    """
    Run the Flowgate server.

    Args:
        config: Optional configuration override
        capabilities: Capability registry the engine invokes
        host: Host to bind to, defaults to the configured one
        port: Port to bind to, defaults to the configured one
    """
    config = config or get_config()
    app = create_app(config, capabilities)

    uvicorn.run(
        app,
        host=host or config.server.host,
        port=port or config.server.port,
        log_level=config.log_level.value.lower(),
    )
