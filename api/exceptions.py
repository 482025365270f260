"""
API Exceptions and Error Responses
Standardized error handling for consistent API responses
"""
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from datafabric.core.exceptions import ConfigurationError, FabricError, InvalidQuery
from datafabric.utils.logger import setup_logger

logger = setup_logger(__name__)


# ============================================
# ERROR RESPONSE HANDLERS
# ============================================

def create_error_response(
    error_type: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    status_code: int = 400
) -> JSONResponse:
    """
    Create a standardized error response

    Args:
        error_type: Error code/type
        message: Human-readable error message
        details: Optional structured details
        status_code: HTTP status code
    """
    response_data: Dict[str, Any] = {
        "success": False,
        "error": error_type,
        "message": message
    }

    if details:
        response_data["details"] = details

    return JSONResponse(status_code=status_code, content=response_data)


def create_success_response(
    data: Optional[Any] = None,
    message: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Create a standardized success response"""
    response: Dict[str, Any] = {
        "success": True
    }

    if data is not None:
        response["data"] = data

    if message:
        response["message"] = message

    if meta:
        response["meta"] = meta

    return response


async def invalid_query_handler(request: Request, exc: InvalidQuery) -> JSONResponse:
    logger.info(f"Rejected query on {request.url.path}: {exc.message}")
    return create_error_response("invalid_query", exc.message, exc.details, status.HTTP_400_BAD_REQUEST)


async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    return create_error_response("configuration_error", exc.message, exc.details, status.HTTP_400_BAD_REQUEST)


async def fabric_error_handler(request: Request, exc: FabricError) -> JSONResponse:
    logger.error(f"Fabric error on {request.url.path}: {exc.message}", kind=exc.kind.value)
    return create_error_response(exc.kind.value, exc.message, exc.details, status.HTTP_500_INTERNAL_SERVER_ERROR)


def register_exception_handlers(app: FastAPI) -> None:
    """Map fabric errors onto structured HTTP responses"""
    app.add_exception_handler(InvalidQuery, invalid_query_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    app.add_exception_handler(FabricError, fabric_error_handler)

