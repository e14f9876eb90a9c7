"""
Topic Gateway main application.

Clients connect to `/ws?client_id=<id>`, subscribe to named topics and
publish to them. The ConnectionManager is built in the lifespan and kept
on `app.state.manager`.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request, WebSocket
from fastapi.responses import JSONResponse, PlainTextResponse

from shared.config.logging import gateway_logger as logger, setup_logging
from shared.config.settings import Settings, settings as default_settings
from shared.infrastructure.correlation import CorrelationIdMiddleware
from shared.infrastructure.redis_pool import check_redis_health, close_redis_pool
from topic_gateway import __version__
from topic_gateway.components.core.constants import WSCloseCode
from topic_gateway.components.endpoints.handler import TopicEndpoint
from topic_gateway.components.metrics.prometheus import generate_prometheus_metrics
from topic_gateway.connection_manager import ConnectionManager, create_connection_manager


# =============================================================================
# Background tasks
# =============================================================================


async def run_maintenance_loop(manager: ConnectionManager, interval: float) -> None:
    """
    Periodic maintenance.

    Every `interval` seconds:
    - Reap connections the broadcaster marked dead
    - Refresh membership expiry of connected clients
    - Retry cascades deferred by a backend outage
    - Drop locks of clients that are no longer connected
    """
    while True:
        try:
            await asyncio.sleep(interval)
            result = await manager.run_maintenance()
            if any(v for k, v in result.items() if k != "refreshed"):
                logger.info("Maintenance cycle", **result)
            else:
                logger.debug("Maintenance cycle", **result)
        except asyncio.CancelledError:
            break
        except Exception as e:
            logger.error("Error in maintenance loop", error=str(e), exc_info=True)


# =============================================================================
# Application factory
# =============================================================================


def create_app(app_settings: Settings | None = None) -> FastAPI:
    """
    Build the gateway application.

    Args:
        app_settings: Settings to use; the environment-loaded settings by default.
    """
    config = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(config)
        for problem in config.validate_for_production():
            logger.warning("Configuration problem", problem=problem)

        manager = await create_connection_manager(config)
        app.state.manager = manager
        logger.info(
            "Starting Topic Gateway",
            port=config.gateway_port,
            env=config.environment,
            backend=config.membership_backend,
        )

        maintenance_task = asyncio.create_task(
            run_maintenance_loop(manager, config.ws_maintenance_interval),
            name="maintenance",
        )

        yield

        logger.info("Shutting down Topic Gateway")
        maintenance_task.cancel()
        try:
            await maintenance_task
        except asyncio.CancelledError:
            pass

        await manager.shutdown()
        if config.membership_backend == "redis":
            await close_redis_pool()
            logger.info("Redis connection pool closed")

    app = FastAPI(
        title="Topic Gateway",
        description="Topic membership and fan-out over WebSockets",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(CorrelationIdMiddleware)

    # =========================================================================
    # Health Check
    # =========================================================================

    @app.get("/ws/health")
    def health_check(request: Request):
        """Basic health check endpoint."""
        manager: ConnectionManager = request.app.state.manager
        return {
            "status": "healthy",
            "service": "topic-gateway",
            "version": app.version,
            "environment": config.environment,
            "total_connections": manager.registry.connection_count,
            "clients_connected": manager.registry.client_count,
        }

    @app.get("/ws/health/detailed")
    async def detailed_health_check(request: Request):
        """Detailed health check with membership backend status."""
        manager: ConnectionManager = request.app.state.manager
        checks = {
            "service": "topic-gateway",
            "environment": config.environment,
            "connections": manager.get_stats(),
            "dependencies": {},
        }

        store_ok = await manager.store.ping()
        checks["dependencies"]["membership_store"] = {
            "status": "healthy" if store_ok else "unhealthy",
            "backend": manager.store.backend_name,
        }
        all_healthy = store_ok

        if config.membership_backend == "redis":
            redis_health = await check_redis_health()
            checks["dependencies"]["redis"] = redis_health
            all_healthy = all_healthy and redis_health["status"] == "healthy"

        checks["status"] = "healthy" if all_healthy else "degraded"
        if not all_healthy:
            return JSONResponse(content=checks, status_code=503)
        return checks

    # =========================================================================
    # Prometheus Metrics Endpoint
    # =========================================================================

    @app.get("/ws/metrics")
    def prometheus_metrics(request: Request):
        """
        Prometheus-compatible metrics endpoint.

        Configure Prometheus scrape:
            scrape_configs:
              - job_name: 'topic-gateway'
                static_configs:
                  - targets: ['localhost:8001']
                metrics_path: '/ws/metrics'
        """
        return PlainTextResponse(
            content=generate_prometheus_metrics(request.app.state.manager),
            media_type="text/plain; version=0.0.4; charset=utf-8",
        )

    @app.get("/ws/state")
    async def membership_state(request: Request):
        """Full membership snapshot. Only available with DEBUG enabled."""
        if not config.debug:
            raise HTTPException(status_code=404, detail="Not Found")
        manager: ConnectionManager = request.app.state.manager
        snapshot = await manager.snapshot()
        return {
            **snapshot.to_dict(),
            "consistent": snapshot.is_consistent(),
            "connections": {
                client_id: sorted(c.connection_id for c in connections)
                for client_id, connections in manager.registry.by_client.items()
            },
        }

    # =========================================================================
    # WebSocket Endpoint
    # =========================================================================

    @app.websocket("/ws")
    async def topic_websocket(
        websocket: WebSocket,
        client_id: str | None = Query(default=None, description="Client identity"),
    ):
        """WebSocket endpoint for topic subscribers and publishers."""
        await websocket.accept()
        if not client_id or not client_id.strip():
            await websocket.close(code=WSCloseCode.MISSING_CLIENT_ID, reason="client_id required")
            return

        endpoint = TopicEndpoint(
            websocket,
            websocket.app.state.manager,
            client_id.strip(),
            receive_timeout=config.ws_receive_timeout,
            max_message_size=config.ws_max_message_size,
            publish_requires_membership=config.ws_publish_requires_membership,
        )
        await endpoint.run()

    return app


app = create_app()


# =============================================================================
# Development entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "topic_gateway.main:app",
        host=default_settings.gateway_host,
        port=default_settings.gateway_port,
        reload=True,
    )
