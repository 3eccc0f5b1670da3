"""
Session API endpoints for the pipeline lab.

Drives lab sessions over HTTP:
- Create, list, inspect and delete sessions
- Replace or splice the config and input buffers
- Compile, execute, normalise and share
- Browse the component catalog and insert components
- Read and clear the output log

Actions answer with ``ok`` and either a ``result`` or an ``error``; the
matching output log entries are streamed over ``/ws/session/{id}``. A
session whose engine failed to load answers 503 and a refused request
(engine still loading, execution already running) answers 409.
"""

from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Optional

import httpx
from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from .buffers import BufferName
from .clients import ShareClient
from .engine.base import ComponentKind
from .errors import EngineLoadError, RequestRejected
from .result import Result
from .session import LabSession, SessionManager, View, state_payload
from .shared.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])

# Host name used for in-process calls to this app's own share service
_INTERNAL_ORIGIN = "http://lab.internal"


# ============================================================================
# Pydantic Models
# ============================================================================

class CreateSessionRequest(BaseModel):
    """Initial buffer contents; omitted buffers get the default example."""
    config: Optional[str] = None
    input: Optional[str] = None


class BufferValue(BaseModel):
    value: str


class BufferEdit(BaseModel):
    """Remove ``delete`` characters at ``offset`` and insert ``text`` there."""
    offset: int = Field(ge=0)
    delete: int = Field(default=0, ge=0)
    text: str = ""


class ViewRequest(BaseModel):
    view: View


class InsertComponentRequest(BaseModel):
    kind: ComponentKind
    name: str = ""


# ============================================================================
# Helpers
# ============================================================================

def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _get_session(request: Request, session_id: str) -> LabSession:
    session = _manager(request).get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _share_client(request: Request) -> ShareClient:
    """The configured external share client, or one bound to this app."""
    manager = _manager(request)
    if manager.share_client is not None:
        return manager.share_client
    return ShareClient(
        _INTERNAL_ORIGIN,
        transport=httpx.ASGITransport(app=request.app),
        public_origin=str(request.base_url).rstrip("/"),
    )


def _serialise(value: Any) -> Any:
    if is_dataclass(value):
        return asdict(value)
    return value


def _action_response(session: LabSession, result: Result) -> Dict[str, Any]:
    """Map a session action result onto an HTTP answer."""
    if not result.ok:
        error = result.error
        if isinstance(error, EngineLoadError):
            raise HTTPException(status_code=503, detail=error.message)
        if isinstance(error, RequestRejected):
            raise HTTPException(status_code=409, detail=error.message)
        return {
            "ok": False,
            "error": error.to_dict(),
            "session": state_payload(session),
        }
    return {
        "ok": True,
        "result": _serialise(result.value),
        "session": state_payload(session),
    }


def _buffer(session: LabSession, name: BufferName):
    return session.config if name == BufferName.CONFIG else session.input


# ============================================================================
# Sessions
# ============================================================================

@router.post("")
async def create_session(body: CreateSessionRequest, request: Request):
    """Create a session and load its engine."""
    session = await _manager(request).create_session(
        config=body.config,
        input_text=body.input,
        share_client=_share_client(request),
    )
    return session.to_dict(include_output=True)


@router.get("")
async def list_sessions(request: Request, limit: int = 50):
    sessions = _manager(request).list_sessions(limit)
    return {
        "sessions": [session.to_dict() for session in sessions],
        "total": len(sessions),
    }


@router.get("/{session_id}")
async def get_session(session_id: str, request: Request):
    return _get_session(request, session_id).to_dict(include_output=True)


@router.delete("/{session_id}")
async def delete_session(session_id: str, request: Request):
    if not await _manager(request).delete_session(session_id):
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return {"success": True, "message": f"Session {session_id} deleted"}


# ============================================================================
# Buffers and view
# ============================================================================

@router.get("/{session_id}/buffers/{name}")
async def get_buffer(session_id: str, name: BufferName, request: Request):
    session = _get_session(request, session_id)
    return {"name": name.value, "value": _buffer(session, name).value}


@router.put("/{session_id}/buffers/{name}")
async def set_buffer(session_id: str, name: BufferName, body: BufferValue, request: Request):
    """Replace a buffer's contents."""
    session = _get_session(request, session_id)
    session.touch()
    _buffer(session, name).set_value(body.value)
    return {"name": name.value, "value": _buffer(session, name).value, "session": state_payload(session)}


@router.post("/{session_id}/buffers/{name}/edit")
async def edit_buffer(session_id: str, name: BufferName, body: BufferEdit, request: Request):
    """Splice text into a buffer."""
    session = _get_session(request, session_id)
    session.touch()
    buffer = _buffer(session, name)
    try:
        buffer.apply_edit(body.offset, body.delete, body.text)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"name": name.value, "value": buffer.value, "session": state_payload(session)}


@router.put("/{session_id}/view")
async def set_view(session_id: str, body: ViewRequest, request: Request):
    session = _get_session(request, session_id)
    session.set_view(body.view)
    return state_payload(session)


# ============================================================================
# Actions
# ============================================================================

@router.post("/{session_id}/compile")
async def compile_session(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return _action_response(session, await session.request_compile())


@router.post("/{session_id}/execute")
async def execute_session(session_id: str, request: Request):
    """Execute the input buffer, compiling first if needed."""
    session = _get_session(request, session_id)
    return _action_response(session, await session.request_execute())


@router.post("/{session_id}/normalise")
async def normalise_session(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return _action_response(session, await session.request_normalise())


@router.post("/{session_id}/share")
async def share_session(session_id: str, request: Request):
    session = _get_session(request, session_id)
    return _action_response(session, await session.request_share())


# ============================================================================
# Components
# ============================================================================

@router.get("/{session_id}/components")
async def list_components(session_id: str, request: Request):
    """Component type names by kind, as loaded with the session's engine."""
    session = _get_session(request, session_id)
    if not session.ready:
        raise HTTPException(status_code=503, detail="Engine not available")
    return {kind.value: list(names) for kind, names in session.catalog.items()}


@router.post("/{session_id}/components")
async def insert_component(session_id: str, body: InsertComponentRequest, request: Request):
    """Add a default component to the config buffer."""
    session = _get_session(request, session_id)
    result = session.insert_component(body.kind, body.name)
    response = _action_response(session, result)
    if result.ok:
        response["changed"] = result.value is not None
    return response


# ============================================================================
# Output log
# ============================================================================

@router.get("/{session_id}/output")
async def get_output(session_id: str, request: Request, since: int = 0):
    """Output log entries from index ``since`` onwards."""
    session = _get_session(request, session_id)
    entries = session.output.to_list()
    return {"entries": entries[max(since, 0):], "total": len(entries)}


@router.delete("/{session_id}/output")
async def clear_output(session_id: str, request: Request):
    session = _get_session(request, session_id)
    session.clear_output()
    return {"success": True}
