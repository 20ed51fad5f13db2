"""FastAPI application for OpenReserve."""

from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import events as event_service
from . import reservations as reservation_service
from .auth import (
    Caller,
    authenticate,
    issue_token,
    refresh_token,
    register_participant,
    resolve_caller,
)
from .config import settings
from .crud import get_user
from .database import SessionLocal
from .errors import DomainError, Forbidden
from .models import Event, Reservation, User
from .scheduler import start_scheduler, stop_scheduler
from .stats import dashboard_stats, event_stats, fill_rate
from .storage import init_db, signing_key
from .tickets import generate_ticket, resolve_ticket_download

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")

API_PREFIX = "/api/v1"


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("openreserve")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="OpenReserve", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_caller(request: Request, db: Session = Depends(get_db)) -> Caller:
    token = _get_bearer_token(request)
    return resolve_caller(db, token, secret=signing_key(db))


def get_optional_caller(request: Request, db: Session = Depends(get_db)) -> Caller | None:
    token = _get_bearer_token(request)
    if token is None:
        return None
    return resolve_caller(db, token, secret=signing_key(db))


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise Forbidden("Admin access required")
    return caller


def _error_response(status_code: int, error: str, message: str, **extra) -> JSONResponse:
    return JSONResponse(
        {"error": error, "message": message, **extra}, status_code=status_code
    )


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    logger.info(
        "%s %s rejected with %s: %s",
        request.method,
        request.url.path,
        exc.error,
        exc.message,
    )
    return JSONResponse(exc.as_payload(), status_code=exc.status_code)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail if isinstance(exc.detail, str) else "Request failed"
    return _error_response(exc.status_code, "HTTPError", detail)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return _error_response(
            503,
            "ServiceUnavailable",
            "The database is busy at the moment. Please try again.",
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return _error_response(500, "DatabaseError", "We hit a database issue. Please try again.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return _error_response(
        422,
        "ValidationError",
        "Some of the fields were invalid.",
        detail=jsonable_encoder(exc.errors()),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return _error_response(500, "InternalError", "Internal server error")


class RegisterPayload(BaseModel):
    name: str | None = Field(None, max_length=120)
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=72)


class LoginPayload(BaseModel):
    email: str
    password: str


class EventCreatePayload(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    date: dt.date
    time: str = Field(..., min_length=1, max_length=16)
    location: str = Field(..., min_length=1, max_length=255)
    max_capacity: int = Field(..., ge=1)


class EventUpdatePayload(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=255)
    description: str | None = None
    date: dt.date | None = None
    time: str | None = Field(None, min_length=1, max_length=16)
    location: str | None = Field(None, min_length=1, max_length=255)
    max_capacity: int | None = Field(None, ge=1)


class ReservationCreatePayload(BaseModel):
    event_id: str


class StatusUpdatePayload(BaseModel):
    status: str


def _serialize_user(user: User):
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        "role": user.role,
        "created_at": user.created_at.isoformat(),
    }


def _serialize_event(event: Event):
    return {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "date": event.date.isoformat(),
        "time": event.time,
        "location": event.location,
        "max_capacity": event.max_capacity,
        "confirmed_count": event.confirmed_count,
        "available_spots": event.available_spots,
        "fill_rate": fill_rate(event.confirmed_count, event.max_capacity),
        "status": event.status,
        "creator_id": event.creator_id,
        "created_at": event.created_at.isoformat(),
        "updated_at": event.updated_at.isoformat(),
    }


def _serialize_reservation(
    reservation: Reservation,
    *,
    include_event: bool = False,
    include_participant: bool = False,
):
    payload = {
        "id": reservation.id,
        "event_id": reservation.event_id,
        "participant_id": reservation.participant_id,
        "status": reservation.status,
        "canceled_by": reservation.canceled_by,
        "created_at": reservation.created_at.isoformat(),
        "updated_at": reservation.updated_at.isoformat(),
    }
    if include_event and reservation.event is not None:
        payload["event"] = {
            "id": reservation.event.id,
            "title": reservation.event.title,
            "date": reservation.event.date.isoformat(),
            "time": reservation.event.time,
            "location": reservation.event.location,
            "status": reservation.event.status,
        }
    if include_participant and reservation.participant is not None:
        payload["participant"] = {
            "id": reservation.participant.id,
            "name": reservation.participant.name,
            "email": reservation.participant.email,
        }
    return payload


def _serialize_session(caller: Caller):
    return {
        "auth_time": caller.auth_time.isoformat(),
        "expires_at": caller.expires_at.isoformat(),
    }


@app.get("/health", include_in_schema=False)
def health():
    return {"status": "ok", "version": APP_VERSION}


# Auth


@app.post(f"{API_PREFIX}/auth/register", status_code=201)
def api_register(payload: RegisterPayload, db: Session = Depends(get_db)):
    user = register_participant(
        db, name=payload.name, email=payload.email, password=payload.password
    )
    token = issue_token(user, secret=signing_key(db))
    return {"user": _serialize_user(user), **token.as_payload()}


@app.post(f"{API_PREFIX}/auth/login")
def api_login(payload: LoginPayload, db: Session = Depends(get_db)):
    user = authenticate(db, email=payload.email, password=payload.password)
    token = issue_token(user, secret=signing_key(db))
    logger.info("User %s logged in", user.email)
    return {"user": _serialize_user(user), **token.as_payload()}


@app.post(f"{API_PREFIX}/auth/refresh")
def api_refresh(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    token = refresh_token(db, caller, secret=signing_key(db))
    return token.as_payload()


@app.get(f"{API_PREFIX}/auth/me")
def api_me(caller: Caller = Depends(get_caller), db: Session = Depends(get_db)):
    user = get_user(db, caller.user_id)
    return {"user": _serialize_user(user), "session": _serialize_session(caller)}


# Events


@app.get(f"{API_PREFIX}/events")
def api_list_published_events(
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.events_per_page, ge=1, le=50),
    date_from: dt.date | None = Query(None),
    date_to: dt.date | None = Query(None),
    db: Session = Depends(get_db),
):
    events, pagination = event_service.list_published_events(
        db, page=page, per_page=per_page, date_from=date_from, date_to=date_to
    )
    return {
        "events": [_serialize_event(event) for event in events],
        "pagination": pagination,
        "filters": {
            "date_from": date_from.isoformat() if date_from else None,
            "date_to": date_to.isoformat() if date_to else None,
        },
    }


@app.post(f"{API_PREFIX}/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.create_event(
        db,
        caller=caller,
        title=payload.title,
        description=payload.description,
        date=payload.date,
        time=payload.time,
        location=payload.location,
        max_capacity=payload.max_capacity,
    )
    return {"event": _serialize_event(event)}


# Literal /events/... paths must be declared before /events/{event_id}.
@app.get(f"{API_PREFIX}/events/admin")
def api_list_admin_events(
    page: int = Query(1, ge=1),
    per_page: int = Query(settings.admin_events_per_page, ge=1, le=100),
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    events, pagination = event_service.list_admin_events(
        db, caller, page=page, per_page=per_page
    )
    return {
        "events": [_serialize_event(event) for event in events],
        "pagination": pagination,
    }


@app.get(f"{API_PREFIX}/events/admin/{{event_id}}")
def api_get_admin_event(
    event_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.get_admin_event(db, event_id, caller)
    return {"event": _serialize_event(event), "stats": event_stats(db, event)}


@app.get(f"{API_PREFIX}/events/dashboard/stats")
def api_dashboard_stats(
    caller: Caller = Depends(require_admin), db: Session = Depends(get_db)
):
    stats = dashboard_stats(db)
    stats["recent_events"] = [_serialize_event(e) for e in stats["recent_events"]]
    stats["recent_reservations"] = [
        _serialize_reservation(r, include_event=True, include_participant=True)
        for r in stats["recent_reservations"]
    ]
    return {"stats": stats}


@app.get(f"{API_PREFIX}/events/{{event_id}}")
def api_get_event(
    event_id: str,
    caller: Caller | None = Depends(get_optional_caller),
    db: Session = Depends(get_db),
):
    event = event_service.get_event_for_caller(db, event_id, caller)
    return {"event": _serialize_event(event)}


@app.get(f"{API_PREFIX}/events/{{event_id}}/stats")
def api_event_stats(
    event_id: str,
    caller: Caller | None = Depends(get_optional_caller),
    db: Session = Depends(get_db),
):
    event = event_service.get_event_for_caller(db, event_id, caller)
    return {"stats": event_stats(db, event)}


@app.patch(f"{API_PREFIX}/events/{{event_id}}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.update_event(
        db, event_id, caller, changes=payload.model_dump(exclude_unset=True)
    )
    return {"event": _serialize_event(event)}


@app.patch(f"{API_PREFIX}/events/{{event_id}}/publish")
def api_publish_event(
    event_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.publish_event(db, event_id, caller)
    return {"event": _serialize_event(event)}


@app.patch(f"{API_PREFIX}/events/{{event_id}}/cancel")
def api_cancel_event(
    event_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event = event_service.cancel_event(db, event_id, caller)
    return {"event": _serialize_event(event)}


@app.delete(f"{API_PREFIX}/events/{{event_id}}", status_code=204)
def api_delete_event(
    event_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    event_service.delete_event(db, event_id, caller)
    return Response(status_code=204)


# Reservations


@app.post(f"{API_PREFIX}/reservations", status_code=201)
def api_create_reservation(
    payload: ReservationCreatePayload,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.create_reservation(
        db, event_id=payload.event_id, caller=caller
    )
    return {"reservation": _serialize_reservation(reservation, include_event=True)}


@app.get(f"{API_PREFIX}/reservations")
def api_list_reservations(
    caller: Caller = Depends(require_admin), db: Session = Depends(get_db)
):
    reservations = reservation_service.list_all_reservations(db, caller)
    return {
        "reservations": [
            _serialize_reservation(r, include_event=True, include_participant=True)
            for r in reservations
        ]
    }


@app.get(f"{API_PREFIX}/reservations/my")
def api_my_reservations(
    caller: Caller = Depends(get_caller), db: Session = Depends(get_db)
):
    reservations = reservation_service.list_my_reservations(db, caller)
    return {
        "reservations": [
            _serialize_reservation(r, include_event=True) for r in reservations
        ]
    }


@app.get(f"{API_PREFIX}/reservations/{{reservation_id}}")
def api_get_reservation(
    reservation_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.get_reservation_for_caller(
        db, reservation_id, caller
    )
    return {
        "reservation": _serialize_reservation(
            reservation, include_event=True, include_participant=caller.is_admin
        )
    }


@app.patch(f"{API_PREFIX}/reservations/{{reservation_id}}")
def api_update_reservation_status(
    reservation_id: str,
    payload: StatusUpdatePayload,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.update_status(db, reservation_id, payload.status)
    return {"reservation": _serialize_reservation(reservation)}


@app.patch(f"{API_PREFIX}/reservations/{{reservation_id}}/confirm")
def api_confirm_reservation(
    reservation_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.confirm_reservation(db, reservation_id)
    return {"reservation": _serialize_reservation(reservation)}


@app.patch(f"{API_PREFIX}/reservations/{{reservation_id}}/refuse")
def api_refuse_reservation(
    reservation_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.refuse_reservation(db, reservation_id)
    return {"reservation": _serialize_reservation(reservation)}


@app.patch(f"{API_PREFIX}/reservations/{{reservation_id}}/cancel")
def api_cancel_reservation(
    reservation_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.cancel_by_participant(db, reservation_id, caller)
    return {"reservation": _serialize_reservation(reservation)}


@app.patch(f"{API_PREFIX}/reservations/{{reservation_id}}/cancel-admin")
def api_admin_cancel_reservation(
    reservation_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reservation = reservation_service.cancel_by_admin(db, reservation_id)
    return {"reservation": _serialize_reservation(reservation)}


@app.delete(f"{API_PREFIX}/reservations/{{reservation_id}}", status_code=204)
def api_delete_reservation(
    reservation_id: str,
    caller: Caller = Depends(require_admin),
    db: Session = Depends(get_db),
):
    reservation_service.remove_reservation(db, reservation_id)
    return Response(status_code=204)


# Tickets


@app.post(f"{API_PREFIX}/tickets/generate/{{reservation_id}}", status_code=201)
def api_generate_ticket(
    reservation_id: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    ticket = generate_ticket(db, reservation_id, caller)
    return {
        "ticket": {
            "file_name": ticket.file_name,
            "download_url": ticket.download_url,
            "view_url": ticket.view_url,
        }
    }


def _ticket_response(path: Path, *, inline: bool) -> FileResponse:
    disposition = "inline" if inline else "attachment"
    return FileResponse(
        path,
        media_type="application/pdf",
        filename=path.name,
        content_disposition_type=disposition,
    )


@app.get(f"{API_PREFIX}/tickets/download/{{file_name}}")
def api_download_ticket(
    file_name: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    path = resolve_ticket_download(db, file_name, caller)
    return _ticket_response(path, inline=False)


@app.get(f"{API_PREFIX}/tickets/view/{{file_name}}")
def api_view_ticket(
    file_name: str,
    caller: Caller = Depends(get_caller),
    db: Session = Depends(get_db),
):
    path = resolve_ticket_download(db, file_name, caller)
    return _ticket_response(path, inline=True)

