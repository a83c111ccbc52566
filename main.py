#!/usr/bin/env python3
"""
deadci: minimal continuous-integration runner.
Receives commit notifications, queues one build per fingerprint, runs the
configured command on a clean checkout and reports back to the provider.
"""
import asyncio
import logging
import signal
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from deadci.api.builds import router as builds_router
from deadci.api.metrics import router as metrics_router
from deadci.api.webhooks import router as webhooks_router
from deadci.config import DeadCIConfig, get_config
from deadci.core.logging import setup_logging
from deadci.core.request_logging import RequestLoggingMiddleware
from deadci.core.services import build_services

logger = logging.getLogger("deadci")

VERSION = "1.0.0"


def _install_abort_signal(services) -> None:
    """SIGQUIT skips the drain: cancel builds, then let the server stop."""
    loop = asyncio.get_running_loop()

    def _abort() -> None:
        logger.warning("immediate_shutdown_requested")
        services.pool.cancel_all()
        signal.raise_signal(signal.SIGTERM)

    try:
        loop.add_signal_handler(signal.SIGQUIT, _abort)
    except (NotImplementedError, RuntimeError, AttributeError):
        # Not available on this platform or outside the main thread
        pass


def create_app(config: Optional[DeadCIConfig] = None, start_workers: bool = True) -> FastAPI:
    """Create the DeadCI application."""
    config = config or get_config()
    services = build_services(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if start_workers:
            services.pool.start()
            _install_abort_signal(services)
        if config.github_enabled:
            logger.info(f"github_webhook_url url={config.base_url}/postreceive")
        yield
        if services.pool.aborted:
            logger.warning("shutdown_without_drain")
        else:
            await services.pool.drain()
        services.engine.dispose()

    app = FastAPI(
        title="deadci",
        description="Minimal continuous-integration runner",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(builds_router)
    app.include_router(metrics_router)
    if config.github_enabled:
        app.include_router(webhooks_router)

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"status": "ok"}

    return app


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    setup_logging(config.log_level)
    uvicorn.run(create_app(config), host="0.0.0.0", port=config.port, log_config=None)
