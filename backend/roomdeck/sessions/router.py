"""Session inspection REST API router.

Endpoints:
    GET    /sessions              - List open sessions
    GET    /sessions/{key}        - Get one session
    POST   /sessions/{key}/open   - Open (or re-open) a session
    DELETE /sessions/{key}        - Close a session
    GET    /presence              - Online users map
"""
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from .manager import RoomManager, get_room_manager
from .schemas import PresenceEntry, SessionRecord

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sessions"])


class SessionResponse(BaseModel):
    """Response model for one session."""
    key: str
    roomType: str
    roomName: str
    roomId: Optional[str] = None
    active: bool = False
    ready: bool = False
    streamAttached: bool = False
    lastSeenAt: float = 0.0
    hasRenderHandle: bool = False


class SessionListResponse(BaseModel):
    """Response model for the session list."""
    capacity: int
    sessions: List[SessionResponse]


def _require_manager() -> RoomManager:
    manager = get_room_manager()
    if manager is None:
        raise HTTPException(status_code=503, detail="Room manager not initialised")
    return manager


def _to_response(record: SessionRecord) -> SessionResponse:
    return SessionResponse(**record.to_dict())


@router.get("/sessions", response_model=SessionListResponse)
async def list_sessions() -> SessionListResponse:
    """List open sessions, most recently seen first."""
    manager = _require_manager()
    records = sorted(manager.registry.records(), key=lambda r: r.last_seen_at, reverse=True)
    return SessionListResponse(
        capacity=manager.registry.capacity,
        sessions=[_to_response(r) for r in records],
    )


@router.get("/sessions/{key}", response_model=SessionResponse)
async def get_session(key: str) -> SessionResponse:
    """Get one session.

    Raises:
        HTTPException: 404 if no session is open for ``key``.
    """
    record = _require_manager().registry.get(key)
    if record is None:
        raise HTTPException(status_code=404, detail=f"Session {key} not open")
    return _to_response(record)


@router.post("/sessions/{key}/open", response_model=SessionResponse)
async def open_session(key: str) -> SessionResponse:
    """Open a session; readiness follows once the reconciler ran."""
    manager = _require_manager()
    manager.open(key)
    logger.info(f"Opened session {key} via API")
    return _to_response(manager.registry.get(key))


@router.delete("/sessions/{key}")
async def close_session(key: str) -> dict:
    """Close a session. Closing an unknown key is not an error."""
    manager = _require_manager()
    existed = key in manager.registry
    manager.close(key)
    return {"key": key, "closed": existed}


@router.get("/presence", response_model=Dict[str, PresenceEntry])
async def get_presence() -> Dict[str, PresenceEntry]:
    """Online users map."""
    return _require_manager().online_users
