"""
API Dependencies
Provides shared dependencies for FastAPI routers using dependency injection
"""
from typing import Optional

from fastapi import HTTPException, status

from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.config import Config, load_config
from datafabric.utils.logger import setup_logger

logger = setup_logger(__name__)


# ============================================
# APPLICATION STATE (Singleton Pattern)
# ============================================

class AppState:
    """Application state holder for singleton instances"""
    _config: Optional[Config] = None
    _fabric: Optional[DataFabric] = None

    @classmethod
    def get_config(cls) -> Config:
        """Get or create config singleton"""
        if cls._config is None:
            cls._config = load_config()
            logger.info("[OK] Configuration loaded")
        return cls._config

    @classmethod
    def set_config(cls, config: Config) -> None:
        cls._config = config

    @classmethod
    def get_fabric(cls) -> Optional[DataFabric]:
        return cls._fabric

    @classmethod
    def set_fabric(cls, fabric: Optional[DataFabric]) -> None:
        cls._fabric = fabric
        if fabric is not None:
            cls._config = fabric.config

    @classmethod
    def reset(cls) -> None:
        """Forget all singletons (used between tests)"""
        cls._config = None
        cls._fabric = None


# ============================================
# DEPENDENCY FUNCTIONS
# ============================================

def get_config() -> Config:
    return AppState.get_config()


def get_fabric() -> DataFabric:
    """The running fabric; 503 until the lifespan has built it"""
    fabric = AppState.get_fabric()
    if fabric is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Data fabric is not initialized"
        )
    return fabric
