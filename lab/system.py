"""
System API routes for the pipeline lab.

Health, environment information and the ring of recent server errors
recorded by the application's exception handlers.
"""

import platform
import sys
import traceback
from collections import deque
from datetime import datetime
from importlib import metadata
from typing import Any, Deque, Dict, List, Optional

from fastapi import APIRouter, Request

from . import __version__
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

MAX_RECENT_ERRORS = 100

_recent_errors: Deque[Dict[str, Any]] = deque(maxlen=MAX_RECENT_ERRORS)


def log_error(
    endpoint: str,
    message: str,
    level: str = "error",
    details: Optional[str] = None,
    exc: Optional[BaseException] = None,
) -> Dict[str, Any]:
    """Record a server error and log it.

    Args:
        endpoint: Request path that failed
        message: Error message
        level: "error" or "critical"
        details: Optional extra context
        exc: Optional exception, whose traceback is kept
    """
    entry = {
        "timestamp": datetime.now().isoformat(),
        "endpoint": endpoint,
        "message": message,
        "level": level,
        "details": details,
        "traceback": "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)) if exc else None,
    }
    _recent_errors.append(entry)
    if level == "critical":
        logger.critical("%s: %s (%s)", endpoint, message, details)
    else:
        logger.error("%s: %s (%s)", endpoint, message, details)
    return entry


def get_recent_errors(limit: int = 50) -> List[Dict[str, Any]]:
    """Most recent errors first."""
    return list(reversed(_recent_errors))[:limit]


def clear_errors() -> None:
    _recent_errors.clear()


def _get_package_versions() -> Dict[str, str]:
    """Get versions of key packages."""
    packages = {}
    for name in ("fastapi", "uvicorn", "pydantic", "httpx", "PyYAML", "orjson", "platformdirs"):
        try:
            packages[name] = metadata.version(name)
        except metadata.PackageNotFoundError:
            pass
    return packages


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    manager = getattr(request.app.state, "session_manager", None)
    return {
        "status": "healthy",
        "message": "pipeline lab is running",
        "ready": manager is not None,
        "sessions": len(manager) if manager is not None else 0,
    }


@router.get("/system/info")
async def system_info(request: Request):
    """Get system and environment information."""
    config = getattr(request.app.state, "lab_config", None)
    return {
        "python": {
            "version": sys.version,
            "platform": sys.platform,
            "executable": sys.executable,
        },
        "system": {
            "os": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "lab_version": __version__,
        "config": config.to_dict() if config is not None else None,
        "packages": _get_package_versions(),
    }


@router.get("/system/errors")
async def system_errors(limit: int = 50):
    """Recent server errors, most recent first."""
    errors = get_recent_errors(limit)
    return {"errors": errors, "total": len(errors)}


@router.delete("/system/errors")
async def delete_system_errors():
    clear_errors()
    return {"success": True}
