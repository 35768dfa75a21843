import os
import logging

from fastapi import Body, Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.middleware.sessions import SessionMiddleware

try:
    from dotenv import load_dotenv

    load_dotenv()
except Exception:
    pass

from db.deps import get_asset_db
from schemas.assets import AssetRegistrationDto
from schemas.movements import InspectionApproveRequest, MoveRequest, ReplacementRequest
from services.equipment_service import (
    get_asset,
    get_asset_by_code,
    list_assets,
    normalize_asset_code,
    register_asset,
    serialize_asset,
)
from services.field_policy import LocationType
from services.history_service import find_chain_breaks, serialize_history_event, timeline_by_code
from services.inspection_service import (
    approve_inspection,
    inspection_deadline_status,
    list_awaiting_inspection,
    replace_from_inspection,
    serialize_deadline,
)
from services.lifecycle_errors import AssetNotFound, LifecycleError
from services.lifecycle_service import list_cycles, serialize_cycle
from services.movement_service import apply_transition
from services.replacement_service import find_replacement_links, replace_asset
from services.user_access_service import actor_from_session, get_session, has_right, remove_session

API_LOGGER = logging.getLogger("asset_lifecycle.api")

app = FastAPI()

def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env(
    "CORS_ALLOW_ORIGINS",
    "http://127.0.0.1,http://localhost,http://127.0.0.1:5001,http://localhost:5001",
)
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"]
)
_APP_SESSION_SECRET = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
if len(_APP_SESSION_SECRET) >= 32:
    app.add_middleware(
        SessionMiddleware,
        secret_key=_APP_SESSION_SECRET,
        session_cookie="asset_lifecycle_session",
        same_site="lax",
        https_only=False,
    )

# Outgoing units of a direct replacement go back to inspection unless the caller says otherwise.
DEFAULT_REPLACED_DESTINATION = LocationType.AWAITING_REPORT


def _get_active_session(request: Request, session_token: str | None) -> dict | None:
    session_from_token = get_session(session_token)
    if session_from_token:
        if "session" in request.scope:
            request.session["user"] = dict(session_from_token)
        return dict(session_from_token)
    if "session" in request.scope:
        session_from_cookie = request.session.get("user")
        if isinstance(session_from_cookie, dict):
            return dict(session_from_cookie)
    return None


def _require_session_or_401(request: Request, session_token: str | None) -> dict:
    session = _get_active_session(request, session_token)
    if not session:
        raise HTTPException(status_code=401, detail="Not logged in.")
    return session


def _require_right_or_403(request: Request, session_token: str | None, right: str) -> dict:
    session = _require_session_or_401(request, session_token)
    if not has_right(session, right):
        API_LOGGER.warning("Permission denied employee=%s right=%s", session.get("employeeID"), right)
        raise HTTPException(status_code=403, detail=f"Permission '{right}' required.")
    return session


def _http_error(db: Session, exc: Exception) -> HTTPException:
    db.rollback()
    if isinstance(exc, LifecycleError):
        return HTTPException(status_code=exc.http_status, detail=str(exc))
    API_LOGGER.error("Persistence failure: %s", exc)
    return HTTPException(status_code=503, detail=f"db_unavailable: {exc}")


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_asset_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except SQLAlchemyError as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.post("/api/auth/logout")
def auth_logout(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    if "session" in request.scope:
        request.session.clear()
    remove_session(x_session_token)
    return {"ok": True}


@app.get("/api/auth/me")
def auth_me(request: Request, x_session_token: str | None = Header(None, alias="X-Session-Token")):
    session = _require_session_or_401(request, x_session_token)
    return {"user": session}


@app.get("/api/assets")
def get_assets(
    request: Request,
    location_type: str | None = Query(None, alias="locationType"),
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(request, x_session_token)
    try:
        assets = list_assets(db, location_type)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return [serialize_asset(asset) for asset in assets]


@app.post("/api/assets")
def create_asset(
    request: Request,
    payload: AssetRegistrationDto,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_right_or_403(request, x_session_token, "registerAssets")
    try:
        asset = register_asset(
            db,
            actor_from_session(session),
            equipment_name=payload.equipmentName,
            asset_code=payload.assetCode,
            manufacturer=payload.manufacturer,
            model=payload.model,
            serial_number=payload.serialNumber,
            equipment_observations=payload.equipmentObservations,
            registered_on=payload.registeredOn,
        )
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return serialize_asset(asset)


@app.get("/api/assets/awaiting-inspection")
def get_awaiting_inspection(
    request: Request,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(request, x_session_token)
    try:
        rows = list_awaiting_inspection(db)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return [serialize_deadline(asset, status) for asset, status in rows]


@app.get("/api/assets/by-code/{asset_code}")
def get_asset_by_code_endpoint(
    request: Request,
    asset_code: str,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(request, x_session_token)
    try:
        asset = get_asset_by_code(db, asset_code)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return serialize_asset(asset)


@app.get("/api/assets/{asset_id}")
def get_asset_endpoint(
    request: Request,
    asset_id: int,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(request, x_session_token)
    try:
        asset = get_asset(db, asset_id)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    out = serialize_asset(asset)
    if asset.location_type == LocationType.AWAITING_REPORT.value:
        status = inspection_deadline_status(asset)
        out["inspectionDeadline"] = {
            "daysWaiting": status.days_waiting,
            "deadlineDays": status.deadline_days,
            "dueOn": status.due_on,
            "overdue": status.overdue,
        }
    return out


@app.post("/api/assets/{asset_id}/move")
def move_asset(
    request: Request,
    asset_id: int,
    payload: MoveRequest = Body(...),
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_right_or_403(request, x_session_token, "moveAssets")
    try:
        result = apply_transition(
            db,
            asset_id,
            payload.targetState,
            payload.to_payload(),
            actor_from_session(session),
            expected_version=payload.expectedVersion,
        )
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return {"transition": result.to_dict(), "asset": serialize_asset(result.asset)}


@app.post("/api/assets/{asset_id}/inspection/approve")
def approve_inspection_endpoint(
    request: Request,
    asset_id: int,
    payload: InspectionApproveRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_right_or_403(request, x_session_token, "decideInspection")
    target = payload.destination.targetState if payload.destination else LocationType.WAREHOUSE
    fields = payload.destination.to_payload() if payload.destination else None
    try:
        result = approve_inspection(
            db,
            asset_id,
            actor_from_session(session),
            notes=payload.notes,
            target_state=target,
            payload=fields,
            expected_version=payload.expectedVersion,
        )
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return {"transition": result.to_dict(), "asset": serialize_asset(result.asset)}


@app.post("/api/assets/{asset_id}/inspection/replace")
def replace_from_inspection_endpoint(
    request: Request,
    asset_id: int,
    payload: ReplacementRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_right_or_403(request, x_session_token, "decideInspection")
    try:
        result = replace_from_inspection(
            db,
            asset_id,
            payload.incomingAssetID,
            payload.reason,
            actor_from_session(session),
            payload.outgoing.targetState if payload.outgoing else LocationType.WAREHOUSE,
            outgoing_payload=payload.outgoing.to_payload() if payload.outgoing else None,
            rental_context=payload.rentalContext.to_context() if payload.rentalContext else None,
            substitution_date=payload.substitutionDate,
            expected_version=payload.expectedVersion,
        )
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return {
        "replacement": result.to_dict(),
        "outgoing": serialize_asset(result.outgoing),
        "incoming": serialize_asset(result.incoming),
    }


@app.post("/api/assets/{asset_id}/replace")
def replace_asset_endpoint(
    request: Request,
    asset_id: int,
    payload: ReplacementRequest,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    session = _require_right_or_403(request, x_session_token, "replaceAssets")
    try:
        result = replace_asset(
            db,
            asset_id,
            payload.incomingAssetID,
            payload.reason,
            payload.outgoing.targetState if payload.outgoing else DEFAULT_REPLACED_DESTINATION,
            actor_from_session(session),
            outgoing_payload=payload.outgoing.to_payload() if payload.outgoing else None,
            rental_context=payload.rentalContext.to_context() if payload.rentalContext else None,
            substitution_date=payload.substitutionDate,
            expected_version=payload.expectedVersion,
        )
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return {
        "replacement": result.to_dict(),
        "outgoing": serialize_asset(result.outgoing),
        "incoming": serialize_asset(result.incoming),
    }


@app.get("/api/assets/{asset_id}/replacements")
def get_replacement_links(
    request: Request,
    asset_id: int,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_session_or_401(request, x_session_token)
    try:
        asset = get_asset(db, asset_id)
        links = find_replacement_links(db, asset.id)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    replaced_by = links["replaced_by"]
    return {
        "assetID": asset.id,
        "assetCode": asset.asset_code,
        "replacementReason": asset.replacement_reason,
        "substitutionDate": asset.substitution_date,
        "replacedBy": serialize_asset(replaced_by) if replaced_by else None,
        "replaces": [serialize_asset(item) for item in links["replaces"]],
    }


@app.get("/api/assets/{asset_id}/cycles")
def get_asset_cycles(
    request: Request,
    asset_id: int,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right_or_403(request, x_session_token, "viewHistory")
    try:
        asset = get_asset(db, asset_id)
        cycles = list_cycles(db, asset.id)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    return [serialize_cycle(cycle) for cycle in cycles]


@app.get("/api/history/{asset_code}")
def get_asset_history(
    request: Request,
    asset_code: str,
    db: Session = Depends(get_asset_db),
    x_session_token: str | None = Header(None, alias="X-Session-Token"),
):
    _require_right_or_403(request, x_session_token, "viewHistory")
    code = normalize_asset_code(asset_code)
    try:
        if not code:
            raise AssetNotFound(asset_code)
        events = timeline_by_code(db, code)
        if not events:
            get_asset_by_code(db, code)
    except (LifecycleError, SQLAlchemyError) as exc:
        raise _http_error(db, exc) from exc
    breaks = find_chain_breaks(events)
    if breaks:
        API_LOGGER.warning("History chain breaks asset_code=%s count=%s", code, len(breaks))
    return {
        "assetCode": code,
        "events": [serialize_history_event(event) for event in events],
        "chainBreaks": breaks,
    }
