from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from .cache import LocalCache
from .codes import build_display_link
from .config import get_settings
from .persistence import PersistenceGateway
from .qrimage import QrImageError, get_qr_client
from .redemption import RedemptionResult
from .session import QrHidden, Session
from .store import GuestGroup
from .supabase import get_supabase_client

logger = logging.getLogger(__name__)

# Session for this device, shared by the organizer and gate screens
_session: Session | None = None


def get_session() -> Session:
    global _session
    if _session is None:
        cache = LocalCache()
        gateway = PersistenceGateway(get_supabase_client(), cache)
        _session = Session(gateway, cache, qr_client=get_qr_client())
    return _session


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=get_settings().log_level)
    try:
        await get_session().resume()
    except ValueError as e:
        logger.warning("Could not resume last session: %s", e)
    yield
    await get_supabase_client().close()
    await get_qr_client().close()


app = FastAPI(title="QR Gate API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173",
        "http://localhost:3000",
        "http://127.0.0.1:5173",
    ],
    allow_origin_regex=r"^https?://192\.168\.\d+\.\d+:\d+$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Models ---


class LoginRequest(BaseModel):
    owner_code: str


class AppendRequest(BaseModel):
    count: int = Field(1, ge=1, le=500)
    quota: int = Field(..., ge=1)
    phone: Optional[str] = None
    name: Optional[str] = None


class RenameRequest(BaseModel):
    name: str


class ScheduleRequest(BaseModel):
    event_time: Optional[datetime] = None


class ScanRequest(BaseModel):
    payload: str


class GroupOut(BaseModel):
    id: str
    name: str
    quota: int
    attended: int
    phone: Optional[str] = None
    token: str
    invite_link: str
    display_link: str


class SessionOut(BaseModel):
    owner_code: Optional[str]
    event_time: Optional[datetime] = None
    qr_visible: bool = True
    total_guests: int = 0
    attended_guests: int = 0
    remaining_guests: int = 0
    attendance_percent: int = 0
    groups: List[GroupOut] = []
    status: str = ""


def _group_out(session: Session, group: GuestGroup) -> GroupOut:
    return GroupOut(
        id=group.id,
        name=group.name,
        quota=group.quota,
        attended=group.attended,
        phone=group.phone,
        token=group.token,
        invite_link=group.invite_link,
        display_link=build_display_link(session.gateway.settings.base_url, group.id),
    )


def _session_out(session: Session) -> SessionOut:
    if not session.logged_in:
        return SessionOut(owner_code=None, status=session.status)
    store = session.store
    totals = store.totals()
    return SessionOut(
        owner_code=session.owner_code,
        event_time=store.event_time,
        qr_visible=store.qr_visible(),
        total_guests=totals.total_guests,
        attended_guests=totals.attended_guests,
        remaining_guests=totals.remaining,
        attendance_percent=totals.percent,
        groups=[_group_out(session, g) for g in store.groups],
        status=session.status,
    )


def _logged_in(session: Session = Depends(get_session)) -> Session:
    if not session.logged_in:
        raise HTTPException(status_code=401, detail="Log in with an owner code first")
    return session


# --- Health ---


@app.get("/health")
async def health():
    return {"status": "ok"}


# --- Session ---


@app.get("/session", response_model=SessionOut)
async def current_session(session: Session = Depends(get_session)):
    return _session_out(session)


@app.post("/session/login", response_model=SessionOut)
async def login(request: LoginRequest, session: Session = Depends(get_session)):
    try:
        await session.login(request.owner_code)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _session_out(session)


@app.post("/session/logout")
async def logout(session: Session = Depends(get_session)):
    session.logout()
    return {"success": True}


# --- Groups ---


@app.post("/groups", response_model=List[GroupOut])
async def append_groups(request: AppendRequest, session: Session = Depends(_logged_in)):
    try:
        groups = await session.append_groups(
            request.count, request.quota, phone=request.phone, name=request.name
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_group_out(session, g) for g in groups]


@app.patch("/groups/{group_id}", response_model=GroupOut)
async def rename_group(group_id: str, request: RenameRequest,
                       session: Session = Depends(_logged_in)):
    if session.store.get(group_id) is None:
        raise HTTPException(status_code=404, detail="Group not found")
    if not await session.rename_group(group_id, request.name):
        raise HTTPException(status_code=400, detail="Name can't be empty")
    return _group_out(session, session.store.get(group_id))


@app.delete("/groups/{group_id}")
async def remove_group(group_id: str, session: Session = Depends(_logged_in)):
    if not await session.remove_group(group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    return {"success": True}


@app.get("/groups/{group_id}/qr.png")
async def group_qr_image(group_id: str, session: Session = Depends(_logged_in)):
    try:
        png = await session.qr_image(group_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    except QrHidden as e:
        raise HTTPException(status_code=403, detail=str(e))
    except QrImageError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return Response(content=png, media_type="image/png")


@app.put("/schedule", response_model=SessionOut)
async def set_schedule(request: ScheduleRequest, session: Session = Depends(_logged_in)):
    await session.set_event_time(request.event_time)
    return _session_out(session)


@app.post("/reset")
async def reset(session: Session = Depends(_logged_in)):
    ok = await session.reset()
    return {"success": ok}


# --- Gate ---


def _scan_out(session: Session, result: RedemptionResult) -> dict:
    return {
        "status": result.status.value,
        "message": result.message,
        "foreign": result.foreign,
        "group": _group_out(session, result.group).model_dump() if result.group else None,
    }


@app.post("/scan")
async def scan(request: ScanRequest, session: Session = Depends(_logged_in)):
    """Redeem a scanned QR payload, either a bare token or an invite URL."""
    result = await session.scan(request.payload)
    return _scan_out(session, result)


@app.get("/invite")
async def invite(qr: str, session: Session = Depends(_logged_in)):
    """Target of invite links opened straight from a phone camera."""
    result = await session.scan(qr)
    return _scan_out(session, result)


@app.get("/qr-display", response_model=GroupOut)
async def qr_display(guest: str, session: Session = Depends(_logged_in)):
    group = session.store.get(guest)
    if group is None:
        raise HTTPException(status_code=404, detail="Group not found")
    if not session.store.qr_visible():
        raise HTTPException(status_code=403, detail="QR codes are not visible yet")
    return _group_out(session, group)

