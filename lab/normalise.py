"""
Normalise service: ``POST /normalise`` turns raw config text into its
canonical form using the built-in engine's catalog.
"""

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from .engine import catalog
from .engine import config as lab_config
from .errors import ConfigError
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["normalise"])


@router.post("/normalise", response_class=PlainTextResponse)
async def normalise_config(request: Request):
    raw = await request.body()
    try:
        text = raw.decode("utf-8")
        normalised = lab_config.normalise(text, catalog)
    except UnicodeDecodeError:
        return PlainTextResponse("config must be UTF-8 text", status_code=400)
    except ConfigError as e:
        logger.debug("Rejected config for normalising: %s", e)
        return PlainTextResponse(str(e), status_code=400)
    return PlainTextResponse(normalised)
