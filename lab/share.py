"""
Share service: saves lab state and serves it back as a prefilled lab page.

``POST /share`` takes ``{"input": ..., "config": ...}``, stores its canonical
JSON under an id derived from its content and answers with that id.
``GET /l/{id}`` returns the client's ``index.html`` with the stored state
written between the ``// LAB START`` and ``// LAB END`` markers. When no
client directory is configured the state is returned as JSON.

Records are write-once and expire after a fixed lifetime.
"""

import base64
import hashlib
import re
import threading
import time
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import orjson
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, PlainTextResponse
from pydantic import BaseModel, ValidationError

from .app_config import DEFAULT_SHARE_TTL
from .shared.logger import get_logger

logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"// LAB START[\s\S]*// LAB END")

# Characters escaped so the state can be inlined in a <script> element
_HTML_ESCAPES = (
    (b"<", b"\\u003c"),
    (b">", b"\\u003e"),
    (b"&", b"\\u0026"),
    ("\u2028".encode("utf-8"), b"\\u2028"),
    ("\u2029".encode("utf-8"), b"\\u2029"),
)


class LabState(BaseModel):
    """The shareable part of a lab session."""

    config: str = ""
    input: str = ""


def encode_state(state: LabState) -> bytes:
    """Canonical JSON of a state, safe to inline in HTML."""
    body = orjson.dumps({"config": state.config, "input": state.input})
    for raw, escaped in _HTML_ESCAPES:
        body = body.replace(raw, escaped)
    return body


def share_id(body: bytes) -> str:
    """URL-safe base64 of the MD5 digest of ``body``."""
    return base64.urlsafe_b64encode(hashlib.md5(body).digest()).decode("ascii")


class ShareStore:
    """In-memory store of share records with a fixed time to live."""

    def __init__(self, ttl: float = DEFAULT_SHARE_TTL, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._records: Dict[str, Tuple[float, bytes]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[bytes]:
        with self._lock:
            record = self._records.get(key)
            if record is None:
                return None
            expires_at, body = record
            if self._clock() >= expires_at:
                del self._records[key]
                return None
            return body

    def set(self, key: str, body: bytes) -> None:
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires_at, _) in self._records.items() if now >= expires_at]
            for k in expired:
                del self._records[k]
            self._records[key] = (now + self.ttl, body)

    def save(self, state: LabState) -> str:
        """Store ``state`` and return its id."""
        body = encode_state(state)
        key = share_id(body)
        self.set(key, body)
        return key

    def __len__(self) -> int:
        return len(self._records)


def render_index(index_html: str, state_body: bytes) -> str:
    """Replace the template region of ``index_html`` with the state."""
    state = state_body.decode("utf-8")
    return TEMPLATE_PATTERN.sub(lambda _: state, index_html)


router = APIRouter(tags=["share"])


def _store(request: Request) -> ShareStore:
    return request.app.state.share_store


@router.post("/share", response_class=PlainTextResponse)
async def create_share(request: Request):
    """Save a lab state and return its id."""
    raw = await request.body()
    try:
        state = LabState.model_validate(orjson.loads(raw))
    except (orjson.JSONDecodeError, ValidationError) as e:
        logger.warning("Failed to parse share request body: %s", e)
        raise HTTPException(status_code=400, detail="Failed to parse body")

    key = _store(request).save(state)
    logger.info("Saved shared state %s", key)
    return PlainTextResponse(key)


@router.get("/l/{state_id}")
async def open_share(state_id: str, request: Request):
    """Serve the lab client prefilled with a shared state."""
    body = _store(request).get(state_id)
    if body is None:
        logger.warning("Shared state %s not found", state_id)
        raise HTTPException(status_code=404, detail="Shared state not found")

    config = getattr(request.app.state, "lab_config", None)
    www_dir: Optional[Path] = config.www_dir if config is not None else None
    index_path = www_dir / "index.html" if www_dir is not None else None
    if index_path is None or not index_path.exists():
        return ORJSONResponse(orjson.loads(body))

    try:
        index_html = index_path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("Failed to read index %s: %s", index_path, e)
        raise HTTPException(status_code=502, detail="Server failed")
    return HTMLResponse(render_index(index_html, body))
