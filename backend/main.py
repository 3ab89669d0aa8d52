import os
import logging
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Header, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from dotenv import load_dotenv

load_dotenv()

from database import get_db, engine
import barcodes
import checkin
import models
import schemas

# Create tables on startup
models.Base.metadata.create_all(bind=engine)

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

DASHBOARD_KEY      = os.environ.get("DASHBOARD_KEY", "admin321")
SCANNER_KEY        = os.environ.get("SCANNER_KEY",   "scanner123")
VIEWER_KEY         = os.environ.get("VIEWER_KEY",    "viewer123")
SCAN_COOLDOWN_MS   = int(os.environ.get("SCAN_COOLDOWN_MS", "2000"))
DEFAULT_SCAN_LIMIT = int(os.environ.get("DEFAULT_SCAN_LIMIT", "1"))
_raw_origins       = os.environ.get("CORS_ORIGINS", "*")
CORS_ORIGINS       = [o.strip() for o in _raw_origins.split(",")] if _raw_origins != "*" else ["*"]


def _check_default_scan_limit(value: int) -> int:
    if value < 1:
        raise RuntimeError(f"DEFAULT_SCAN_LIMIT must be at least 1, got {value}")
    return value


_check_default_scan_limit(DEFAULT_SCAN_LIMIT)


def _ticket_order():
    """Numeric order for ticket numbers stored as text ("99999" before "100000")."""
    return (func.length(models.Member.ticket_number), models.Member.ticket_number)

# ── Door signals ──────────────────────────────────────────────────────────────
# One distinct colour / icon / sound per outcome so the operator can react
# without reading the screen.
SCAN_SIGNALS = {
    "success":       {"color": "green", "icon": "check",   "sound": "chime"},
    "limit_reached": {"color": "amber", "icon": "warning", "sound": "alert"},
    "invalid":       {"color": "red",   "icon": "cross",   "sound": "buzzer"},
}


def _scan_message(outcome: checkin.ScanOutcome) -> str:
    if outcome.status is checkin.ScanStatus.SUCCESS:
        return f"Welcome, {outcome.member.name}!"
    if outcome.status is checkin.ScanStatus.LIMIT_REACHED:
        return (
            f"{outcome.member.name} has already used "
            f"{outcome.member.scan_count}/{outcome.member.scan_limit} admissions."
        )
    return f"Unknown ticket: {outcome.log.member_id}"


def _scan_response(outcome: checkin.ScanOutcome) -> schemas.ScanResponse:
    return schemas.ScanResponse(
        result      = outcome.status.value,
        message     = _scan_message(outcome),
        member      = outcome.member,
        log         = outcome.log,
        signal      = SCAN_SIGNALS[outcome.status.value],
        cooldown_ms = SCAN_COOLDOWN_MS,
    )


def _not_found(exc: checkin.NotFound) -> HTTPException:
    logger.warning("%s", exc)
    return HTTPException(status_code=404, detail=f"{exc.kind} not found.")


# ── FastAPI app ───────────────────────────────────────────────────────────────

app = FastAPI(title="Invitation Check-in API", version="1.0.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


@app.exception_handler(SQLAlchemyError)
def handle_store_error(request: Request, exc: SQLAlchemyError):
    """Store unreachable or write rejected: nothing was recorded, the client should retry."""
    logger.error("Store error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"detail": "The change could not be saved. Nothing was recorded, please try again."},
    )


# ---------------------------------------------------------------------------
# Auth dependencies
# ---------------------------------------------------------------------------

def verify_dashboard(x_admin_key: str = Header(..., alias="X-Admin-Key")):
    """Full admin access, required for write operations on groups and guests."""
    if x_admin_key != DASHBOARD_KEY:
        raise HTTPException(status_code=401, detail="Invalid dashboard key")

def verify_scanner(x_admin_key: str = Header(..., alias="X-Admin-Key")):
    """Scan and manual check-in. The dashboard key is accepted too."""
    if x_admin_key not in (SCANNER_KEY, DASHBOARD_KEY):
        raise HTTPException(status_code=401, detail="Invalid scanner key")

def verify_any_key(x_admin_key: str = Header(..., alias="X-Admin-Key")):
    """Read-only access, accepts every configured key."""
    if x_admin_key not in (DASHBOARD_KEY, SCANNER_KEY, VIEWER_KEY):
        raise HTTPException(status_code=401, detail="Invalid key")


# ---------------------------------------------------------------------------
# Public routes
# ---------------------------------------------------------------------------

@app.get("/api/health")
def health_check():
    return {"status": "ok"}


@app.get("/api/admin/ping")
def admin_ping(x_admin_key: str = Header(..., alias="X-Admin-Key")):
    """Key verification, returns the role so the frontend knows what access level was granted."""
    if x_admin_key == DASHBOARD_KEY:
        return {"ok": True, "role": "admin"}
    if x_admin_key == SCANNER_KEY:
        return {"ok": True, "role": "scanner"}
    if x_admin_key == VIEWER_KEY:
        return {"ok": True, "role": "viewer"}
    raise HTTPException(status_code=401, detail="Invalid key")


# ---------------------------------------------------------------------------
# Groups
# ---------------------------------------------------------------------------

@app.get(
    "/api/groups",
    response_model=List[schemas.GroupResponse],
    dependencies=[Depends(verify_any_key)],
)
def list_groups(db: Session = Depends(get_db)):
    return db.query(models.Group).order_by(models.Group.created_at).all()


@app.post(
    "/api/groups",
    response_model=schemas.GroupResponse,
    status_code=201,
    dependencies=[Depends(verify_dashboard)],
)
def create_group(group: schemas.GroupCreate, db: Session = Depends(get_db)):
    db_group = models.Group(**group.model_dump())
    db.add(db_group)
    db.commit()
    db.refresh(db_group)
    logger.info("Created group %s (%s)", db_group.name, db_group.id)
    return db_group


@app.get(
    "/api/groups/{group_id}",
    response_model=schemas.GroupResponse,
    dependencies=[Depends(verify_any_key)],
)
def get_group(group_id: str, db: Session = Depends(get_db)):
    try:
        return checkin.get_group(db, group_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)


@app.patch(
    "/api/groups/{group_id}",
    response_model=schemas.GroupResponse,
    dependencies=[Depends(verify_dashboard)],
)
def update_group(
    group_id: str,
    update: schemas.GroupUpdate,
    db: Session = Depends(get_db),
):
    """Edit group configuration. max_members cannot drop below the current guest count."""
    try:
        group = checkin.get_group(db, group_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)

    changes = update.model_dump(exclude_unset=True)
    if changes.get("name") is None:
        changes.pop("name", None)

    new_max = changes.get("max_members")
    if new_max is not None:
        current = checkin.member_count(db, group_id)
        if current > new_max:
            raise HTTPException(
                status_code=409,
                detail=f"Group already has {current} members; max_members cannot be {new_max}.",
            )

    for field, value in changes.items():
        setattr(group, field, value)

    db.commit()
    db.refresh(group)
    return group


@app.delete(
    "/api/groups/{group_id}",
    dependencies=[Depends(verify_dashboard)],
    status_code=204,
)
def delete_group(group_id: str, db: Session = Depends(get_db)):
    """Delete a group and its guests. Their scan log entries are kept."""
    try:
        group = checkin.get_group(db, group_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)

    removed = len(group.members)
    db.delete(group)
    db.commit()
    logger.info("Deleted group %s with %d members", group_id, removed)
    return Response(status_code=204)


@app.get(
    "/api/groups/{group_id}/members",
    response_model=List[schemas.MemberResponse],
    dependencies=[Depends(verify_any_key)],
)
def list_group_members(group_id: str, db: Session = Depends(get_db)):
    try:
        checkin.get_group(db, group_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)
    return (
        db.query(models.Member)
        .filter(models.Member.group_id == group_id)
        .order_by(*_ticket_order())
        .all()
    )


def _scan_counts(db: Session, member_ids: List[str]) -> dict:
    counts = {status: 0 for status in models.SCAN_STATUSES}
    if not member_ids:
        return counts
    rows = (
        db.query(models.ScanLog.status, func.count(models.ScanLog.id))
        .filter(models.ScanLog.member_id.in_(member_ids))
        .group_by(models.ScanLog.status)
        .all()
    )
    for status, count in rows:
        counts[status] = count
    return counts


@app.get(
    "/api/groups/{group_id}/report",
    response_model=schemas.AttendanceReport,
    dependencies=[Depends(verify_any_key)],
)
def attendance_report(group_id: str, db: Session = Depends(get_db)):
    """Attendance for one group: who came, who did not, RSVP answers and scan results."""
    try:
        group = checkin.get_group(db, group_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)

    members = (
        db.query(models.Member)
        .filter(models.Member.group_id == group_id)
        .order_by(*_ticket_order())
        .all()
    )
    attendees = [m for m in members if m.scan_count > 0]
    absentees = [m for m in members if m.scan_count == 0]

    return schemas.AttendanceReport(
        group_id        = group.id,
        group_name      = group.name,
        total_members   = len(members),
        attended        = len(attendees),
        absent          = len(absentees),
        total_admits    = sum(m.scan_count for m in members),
        rsvp            = schemas.RsvpBreakdown(
            confirmed = sum(1 for m in members if m.rsvp_status == "confirmed"),
            declined  = sum(1 for m in members if m.rsvp_status == "declined"),
            pending   = sum(1 for m in members if m.rsvp_status == "pending"),
        ),
        scans_by_status = _scan_counts(db, [m.id for m in members]),
        attendees       = attendees,
        absentees       = absentees,
    )


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------

@app.get(
    "/api/members",
    response_model=List[schemas.MemberResponse],
    dependencies=[Depends(verify_any_key)],
)
def list_members(group_id: Optional[str] = None, db: Session = Depends(get_db)):
    query = db.query(models.Member)
    if group_id is not None:
        query = query.filter(models.Member.group_id == group_id)
    return query.order_by(models.Member.group_id, *_ticket_order()).all()


@app.post(
    "/api/members",
    response_model=schemas.MemberResponse,
    status_code=201,
    dependencies=[Depends(verify_dashboard)],
)
def create_member(member: schemas.MemberCreate, db: Session = Depends(get_db)):
    try:
        return checkin.add_member(
            db,
            group_id           = member.group_id,
            name               = member.name,
            phone              = member.phone,
            scan_limit         = member.scan_limit,
            rsvp_status        = member.rsvp_status,
            default_scan_limit = DEFAULT_SCAN_LIMIT,
        )
    except checkin.NotFound as exc:
        raise _not_found(exc)
    except checkin.GroupFull as exc:
        raise HTTPException(
            status_code=409,
            detail=f"This event has reached its maximum of {exc.max_members} guests.",
        )


@app.get(
    "/api/members/{member_id}",
    response_model=schemas.MemberResponse,
    dependencies=[Depends(verify_any_key)],
)
def get_member(member_id: str, db: Session = Depends(get_db)):
    try:
        return checkin.get_member(db, member_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)


@app.patch(
    "/api/members/{member_id}",
    response_model=schemas.MemberResponse,
    dependencies=[Depends(verify_dashboard)],
)
def update_member(
    member_id: str,
    update: schemas.MemberUpdate,
    db: Session = Depends(get_db),
):
    """Edit name, phone, scan limit or RSVP status of a guest (dashboard key required)."""
    try:
        member = checkin.get_member(db, member_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)

    if update.scan_limit is not None and update.scan_limit < member.scan_count:
        raise HTTPException(
            status_code=422,
            detail=f"Guest has already been admitted {member.scan_count} time(s); "
                   f"scan_limit cannot be lower.",
        )

    if update.name is not None:
        member.name = update.name
    if update.phone is not None:
        member.phone = update.phone
    if update.scan_limit is not None:
        member.scan_limit = update.scan_limit
    if update.rsvp_status is not None:
        member.rsvp_status = update.rsvp_status

    db.commit()
    db.refresh(member)
    return member


@app.delete(
    "/api/members/{member_id}",
    dependencies=[Depends(verify_dashboard)],
    status_code=204,
)
def delete_member(member_id: str, db: Session = Depends(get_db)):
    """Permanently delete a guest. Scan log entries referencing them are kept."""
    try:
        member = checkin.get_member(db, member_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)
    db.delete(member)
    db.commit()
    return Response(status_code=204)


@app.get(
    "/api/members/{member_id}/qr",
    dependencies=[Depends(verify_any_key)],
)
def member_qr_code(member_id: str, db: Session = Depends(get_db)):
    """PNG QR code carrying the guest's ticket number (or id for legacy guests)."""
    try:
        member = checkin.get_member(db, member_id)
    except checkin.NotFound as exc:
        raise _not_found(exc)
    payload = barcodes.barcode_payload(member)
    return Response(
        content=barcodes.qr_png_bytes(payload),
        media_type="image/png",
        headers={"X-Ticket-Payload": payload},
    )


@app.post(
    "/api/members/{member_id}/checkin",
    response_model=schemas.ScanResponse,
    dependencies=[Depends(verify_scanner)],
)
def manual_checkin(
    member_id: str,
    request: schemas.ManualCheckinRequest,
    db: Session = Depends(get_db),
):
    """Mark attendance without scanning; same quota rules as the door scanner."""
    try:
        outcome = checkin.manual_check_in(db, member_id, scanned_by=request.scanned_by)
    except checkin.NotFound as exc:
        raise _not_found(exc)
    return _scan_response(outcome)


# ---------------------------------------------------------------------------
# Scanning
# ---------------------------------------------------------------------------

@app.post(
    "/api/scan",
    response_model=schemas.ScanResponse,
    dependencies=[Depends(verify_scanner)],
)
def scan_ticket(scan: schemas.ScanRequest, db: Session = Depends(get_db)):
    outcome = checkin.record_scan(
        db,
        scan.code,
        scanned_by=scan.scanned_by,
        group_id=scan.group_id,
    )
    return _scan_response(outcome)


@app.get(
    "/api/scan-logs",
    response_model=List[schemas.ScanLogResponse],
    dependencies=[Depends(verify_any_key)],
)
def list_scan_logs(
    scanned_by: Optional[str] = None,
    status: Optional[schemas.ScanStatus] = None,
    limit: Optional[int] = Query(None, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    """Most recent first. Scanner screens pass scanned_by to see their own scans."""
    query = db.query(models.ScanLog)
    if scanned_by is not None:
        query = query.filter(models.ScanLog.scanned_by == scanned_by)
    if status is not None:
        query = query.filter(models.ScanLog.status == status)
    query = query.order_by(models.ScanLog.scanned_at.desc(), models.ScanLog.id.desc())
    if limit is not None:
        query = query.limit(limit)
    return query.all()


@app.post(
    "/api/scan-logs",
    response_model=schemas.ScanLogResponse,
    status_code=201,
    dependencies=[Depends(verify_dashboard)],
)
def create_scan_log(entry: schemas.ScanLogCreate, db: Session = Depends(get_db)):
    """Append a log entry directly, e.g. when importing history from another device."""
    db_entry = models.ScanLog(
        member_id   = entry.member_id,
        member_name = entry.member_name,
        status      = entry.status,
        scanned_at  = entry.scanned_at or datetime.now(timezone.utc),
        scanned_by  = entry.scanned_by,
    )
    db.add(db_entry)
    db.commit()
    db.refresh(db_entry)
    return db_entry
