"""
Data Fabric API - Main Application
Query federation, health, reconciliation and operator endpoints
"""
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from datafabric import __version__
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.logger import setup_logger
from api.dependencies import AppState
from api.exceptions import register_exception_handlers
from api.lifespan import lifespan
from api.routers import health, operations, query, reconciliation

# Load environment variables
load_dotenv()

logger = setup_logger(__name__)


def create_app(fabric: Optional[DataFabric] = None, start_pipeline: bool = True) -> FastAPI:
    """
    Build the FastAPI application

    Args:
        fabric: an already-built fabric to serve (tests, embedding); built
            from configuration at startup when omitted
        start_pipeline: run the capture/transform/sink workers while the app runs
    """
    if fabric is not None:
        AppState.set_fabric(fabric)

    app = FastAPI(
        title="Data Fabric API",
        description="Keeps a relational source in sync with vector, graph and keyword indexes "
                    "and answers hybrid queries across them",
        version=__version__,
        lifespan=lifespan
    )
    app.state.start_pipeline = start_pipeline

    register_exception_handlers(app)

    allowed_origins_env = os.getenv("ALLOWED_ORIGINS", "*")
    allowed_origins = [origin.strip() for origin in allowed_origins_env.split(",")] if allowed_origins_env != "*" else ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================
    # INCLUDE ROUTERS
    # ============================================
    app.include_router(health.router)           # Component health
    app.include_router(query.router)            # Federated query
    app.include_router(reconciliation.router)   # Drift audit and repair
    app.include_router(operations.router)       # Alerts, dead letters, resync

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    config = AppState.get_config()
    uvicorn.run("api.main:app", host=config.server.host, port=config.server.port, reload=False)
