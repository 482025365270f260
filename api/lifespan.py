"""
Application lifecycle management
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.logger import setup_logger
from api.dependencies import AppState

logger = setup_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Build the fabric (unless one was injected) and run its worker pools
    for the lifetime of the app
    """
    # Startup
    owned = AppState.get_fabric() is None
    if owned:
        config = AppState.get_config()
        AppState.set_fabric(DataFabric.from_config(config))
        logger.info("[OK] Data fabric initialized from configuration")
    fabric = AppState.get_fabric()
    if app.state.start_pipeline:
        await fabric.start()
        logger.info("[OK] Pipeline workers started")

    yield

    # Shutdown
    if app.state.start_pipeline:
        await fabric.stop()
        logger.info("[OK] Pipeline workers stopped")
    if owned:
        await fabric.close()
        AppState.set_fabric(None)
