from pydantic import BaseModel, Field, field_validator
from datetime import datetime
from typing import Optional, List, Literal


RsvpStatus = Literal["pending", "confirmed", "declined"]
ScanStatus = Literal["success", "limit_reached", "invalid"]

# Longest scanned string accepted
MAX_CODE_LENGTH = 512


def _strip_required(v: str) -> str:
    if not v.strip():
        raise ValueError("Field cannot be empty")
    return v.strip()


def _normalise_phone(v: str) -> str:
    v = "".join(v.split())
    if not v:
        raise ValueError("Field cannot be empty")
    return v


# ── Groups ───────────────────────────────────────────────────────────────────

class GroupCreate(BaseModel):
    name: str
    default_scan_limit: Optional[int] = Field(None, ge=1)
    max_members:        Optional[int] = Field(None, ge=1)
    design_template_id: Optional[str] = None
    event_start_date:   Optional[str] = None
    event_end_date:     Optional[str] = None
    location_address:   Optional[str] = None
    location_link:      Optional[str] = None

    @field_validator("name")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        return _strip_required(v)


class GroupUpdate(BaseModel):
    """All fields optional, only supplied fields are updated (PATCH semantics)."""
    name:               Optional[str] = None
    default_scan_limit: Optional[int] = Field(None, ge=1)
    max_members:        Optional[int] = Field(None, ge=1)
    design_template_id: Optional[str] = None
    event_start_date:   Optional[str] = None
    event_end_date:     Optional[str] = None
    location_address:   Optional[str] = None
    location_link:      Optional[str] = None

    @field_validator("name")
    @classmethod
    def must_not_be_blank(cls, v):
        return _strip_required(v) if v is not None else v


class GroupResponse(BaseModel):
    id: str
    name: str
    default_scan_limit: Optional[int] = None
    max_members: Optional[int] = None
    design_template_id: Optional[str] = None
    event_start_date: Optional[str] = None
    event_end_date: Optional[str] = None
    location_address: Optional[str] = None
    location_link: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


# ── Members ──────────────────────────────────────────────────────────────────

class MemberCreate(BaseModel):
    group_id: str
    name: str
    phone: str
    # Falls back to the group's default scan limit when omitted
    scan_limit: Optional[int] = Field(None, ge=1)
    rsvp_status: RsvpStatus = "pending"

    @field_validator("name", "group_id")
    @classmethod
    def must_not_be_empty(cls, v: str) -> str:
        return _strip_required(v)

    @field_validator("phone")
    @classmethod
    def phone_without_spaces(cls, v: str) -> str:
        return _normalise_phone(v)


class MemberUpdate(BaseModel):
    """Editable guest fields. ticket_number and scan_count are never edited here."""
    name:        Optional[str] = None
    phone:       Optional[str] = None
    scan_limit:  Optional[int] = Field(None, ge=1)
    rsvp_status: Optional[RsvpStatus] = None

    @field_validator("name")
    @classmethod
    def must_not_be_blank(cls, v):
        return _strip_required(v) if v is not None else v

    @field_validator("phone")
    @classmethod
    def phone_without_spaces(cls, v):
        return _normalise_phone(v) if v is not None else v


class MemberResponse(BaseModel):
    id: str
    ticket_number: Optional[str] = None
    name: str
    phone: str
    scan_limit: int
    scan_count: int
    group_id: str
    rsvp_status: RsvpStatus = "pending"

    model_config = {"from_attributes": True}


# ── Scan log ─────────────────────────────────────────────────────────────────

class ScanLogCreate(BaseModel):
    member_id: str = Field(..., max_length=MAX_CODE_LENGTH)
    member_name: str = Field(..., max_length=200)
    status: ScanStatus
    scanned_at: Optional[datetime] = None
    scanned_by: Optional[str] = Field(None, max_length=100)


class ScanLogResponse(BaseModel):
    id: int
    member_id: str
    member_name: str
    status: ScanStatus
    scanned_at: datetime
    scanned_by: Optional[str] = None

    model_config = {"from_attributes": True}


# ── Check-in ─────────────────────────────────────────────────────────────────

class ScanRequest(BaseModel):
    code: str = Field(..., max_length=MAX_CODE_LENGTH)
    scanned_by: Optional[str] = Field(None, max_length=100)
    # Restricts resolution to one event when the door serves a single group
    group_id: Optional[str] = None

    @field_validator("code")
    @classmethod
    def code_must_not_be_empty(cls, v: str) -> str:
        return _strip_required(v)


class ManualCheckinRequest(BaseModel):
    scanned_by: Optional[str] = Field(None, max_length=100)


class ScanSignal(BaseModel):
    """What the door device shows and plays for an outcome."""
    color: str
    icon: str
    sound: str


class ScanResponse(BaseModel):
    result: ScanStatus
    message: str
    member: Optional[MemberResponse] = None
    log: ScanLogResponse
    signal: ScanSignal
    cooldown_ms: int


# ── Reporting ────────────────────────────────────────────────────────────────

class RsvpBreakdown(BaseModel):
    confirmed: int
    declined: int
    pending: int


class AttendanceReport(BaseModel):
    group_id: str
    group_name: str
    total_members: int
    attended: int
    absent: int
    total_admits: int
    rsvp: RsvpBreakdown
    scans_by_status: dict
    attendees: List[MemberResponse]
    absentees: List[MemberResponse]
