"""
Ticket issuance and door check-in.

issue_ticket      next per-group ticket number ("00001", "00002", ...)
resolve           scanned code -> guest, ticket number first then legacy id
check_quota       admit while scan_count < scan_limit
record_scan       resolve + quota + conditional increment + scan log entry
manual_check_in   same admit path for a guest picked from the list
"""
import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import models

logger = logging.getLogger(__name__)

TICKET_NUMBER_WIDTH = 5


# ── Errors ───────────────────────────────────────────────────────────────────

class CheckinError(Exception):
    pass


class NotFound(CheckinError):
    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key  = key
        super().__init__(f"{kind} {key!r} not found")


class GroupFull(CheckinError):
    def __init__(self, group_id: str, max_members: int):
        self.group_id    = group_id
        self.max_members = max_members
        super().__init__(
            f"Group {group_id!r} already has the maximum of {max_members} members"
        )


# ── Outcomes ─────────────────────────────────────────────────────────────────

class Quota(enum.Enum):
    ADMIT         = "admit"
    LIMIT_REACHED = "limit_reached"


class ScanStatus(str, enum.Enum):
    SUCCESS       = "success"
    LIMIT_REACHED = "limit_reached"
    INVALID       = "invalid"


@dataclass
class ScanOutcome:
    status: ScanStatus
    log: models.ScanLog
    member: Optional[models.Member] = None

    @property
    def admitted(self) -> bool:
        return self.status is ScanStatus.SUCCESS


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────

def get_group(db: Session, group_id: str) -> models.Group:
    group = db.query(models.Group).filter(models.Group.id == group_id).first()
    if group is None:
        raise NotFound("Group", group_id)
    return group


def get_member(db: Session, member_id: str) -> models.Member:
    member = db.query(models.Member).filter(models.Member.id == member_id).first()
    if member is None:
        raise NotFound("Member", member_id)
    return member


def member_count(db: Session, group_id: str) -> int:
    return (
        db.query(func.count(models.Member.id))
        .filter(models.Member.group_id == group_id)
        .scalar()
    ) or 0


# ── Ticket issuer ────────────────────────────────────────────────────────────

def format_ticket_number(sequence: int) -> str:
    return str(sequence).zfill(TICKET_NUMBER_WIDTH)


def _highest_ticket_number(db: Session, group_id: str) -> int:
    numbers = (
        db.query(models.Member.ticket_number)
        .filter(
            models.Member.group_id == group_id,
            models.Member.ticket_number.isnot(None),
        )
        .all()
    )
    return max((int(n) for (n,) in numbers if n.isdigit()), default=0)


def issue_ticket(db: Session, group_id: str) -> str:
    """
    Advance the group's ticket counter and return the new ticket number.

    The increment is a single UPDATE, so concurrent issuers to the same group
    serialise on the group row until the caller commits. Groups whose guests
    were added before the counter existed start above their current guests.
    Nothing is committed here; the caller persists the guest in the same
    transaction.
    """
    get_group(db, group_id)

    db.query(models.Group).filter(models.Group.id == group_id).update(
        {models.Group.ticket_sequence: models.Group.ticket_sequence + 1},
        synchronize_session=False,
    )
    sequence = (
        db.query(models.Group.ticket_sequence)
        .filter(models.Group.id == group_id)
        .scalar()
    )

    if sequence == 1:
        floor = max(member_count(db, group_id), _highest_ticket_number(db, group_id))
        if floor >= sequence:
            sequence = floor + 1
            db.query(models.Group).filter(models.Group.id == group_id).update(
                {models.Group.ticket_sequence: sequence},
                synchronize_session=False,
            )

    ticket_number = format_ticket_number(sequence)
    logger.info("Issued ticket %s in group %s", ticket_number, group_id)
    return ticket_number


def add_member(
    db: Session,
    group_id: str,
    name: str,
    phone: str,
    scan_limit: Optional[int] = None,
    rsvp_status: str = "pending",
    default_scan_limit: int = 1,
) -> models.Member:
    """Create a guest with a freshly issued ticket number and no scans."""
    group = get_group(db, group_id)
    limit = scan_limit or group.default_scan_limit or default_scan_limit
    if limit < 1:
        raise ValueError(f"scan_limit must be at least 1, got {limit}")

    if group.max_members and member_count(db, group_id) >= group.max_members:
        raise GroupFull(group_id, group.max_members)

    try:
        member = models.Member(
            ticket_number = issue_ticket(db, group_id),
            name          = name,
            phone         = phone,
            scan_limit    = limit,
            scan_count    = 0,
            group_id      = group_id,
            rsvp_status   = rsvp_status,
        )
        db.add(member)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to add member to group %s", group_id)
        raise

    db.refresh(member)
    return member


# ── Scan resolver ────────────────────────────────────────────────────────────

def resolve(db: Session, code: str, group_id: Optional[str] = None) -> Optional[models.Member]:
    """Ticket number first, then the guest id for tickets printed before numbering."""
    for column in (models.Member.ticket_number, models.Member.id):
        query = db.query(models.Member).filter(column == code)
        if group_id is not None:
            query = query.filter(models.Member.group_id == group_id)
        member = query.order_by(models.Member.group_id).first()
        if member is not None:
            return member
    return None


# ── Quota enforcer ───────────────────────────────────────────────────────────

def check_quota(member: models.Member) -> Quota:
    if member.scan_count < member.scan_limit:
        return Quota.ADMIT
    return Quota.LIMIT_REACHED


# ── Check-in recorder ────────────────────────────────────────────────────────

def _append_log(
    db: Session,
    member_id: str,
    member_name: str,
    status: ScanStatus,
    scanned_by: Optional[str],
) -> models.ScanLog:
    entry = models.ScanLog(
        member_id   = member_id,
        member_name = member_name,
        status      = status.value,
        scanned_at  = _now(),
        scanned_by  = scanned_by,
    )
    db.add(entry)
    return entry


def _try_increment(db: Session, member_id: str) -> bool:
    """scan_count += 1 only while below scan_limit. False when no row qualified."""
    rows = (
        db.query(models.Member)
        .filter(
            models.Member.id == member_id,
            models.Member.scan_count < models.Member.scan_limit,
        )
        .update(
            {models.Member.scan_count: models.Member.scan_count + 1},
            synchronize_session=False,
        )
    )
    return rows == 1


def _check_in(db: Session, member: models.Member, scanned_by: Optional[str]) -> ScanOutcome:
    status = ScanStatus.LIMIT_REACHED
    if check_quota(member) is Quota.ADMIT:
        if _try_increment(db, member.id):
            status = ScanStatus.SUCCESS
        else:
            logger.warning(
                "Member %s reached the scan limit between read and update", member.id
            )

    entry = _append_log(db, member.id, member.name, status, scanned_by)
    return ScanOutcome(status=status, log=entry, member=member)


def _commit_outcome(db: Session, outcome: ScanOutcome) -> ScanOutcome:
    # The guest increment and its log entry commit together
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Scan not recorded for %s", outcome.log.member_id)
        raise

    db.refresh(outcome.log)
    if outcome.member is not None:
        db.refresh(outcome.member)

    if outcome.status is ScanStatus.SUCCESS:
        logger.info(
            "Checked in %s (%s) %d/%d by %s",
            outcome.member.name, outcome.member.id,
            outcome.member.scan_count, outcome.member.scan_limit,
            outcome.log.scanned_by or "-",
        )
    else:
        logger.warning(
            "Scan %s for %s by %s",
            outcome.status.value, outcome.log.member_id, outcome.log.scanned_by or "-",
        )
    return outcome


def record_scan(
    db: Session,
    code: str,
    scanned_by: Optional[str] = None,
    group_id: Optional[str] = None,
) -> ScanOutcome:
    """
    Process one scan at the door and write exactly one scan log entry.

    Unknown codes are logged as invalid with the raw code as member_id.
    Persistence errors roll back and propagate; the scan is then not recorded.
    """
    try:
        member = resolve(db, code, group_id=group_id)
        if member is None:
            entry   = _append_log(db, code, models.UNKNOWN_MEMBER, ScanStatus.INVALID, scanned_by)
            outcome = ScanOutcome(status=ScanStatus.INVALID, log=entry)
        else:
            outcome = _check_in(db, member, scanned_by)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Scan lookup failed for code %r", code)
        raise

    return _commit_outcome(db, outcome)


def manual_check_in(db: Session, member_id: str, scanned_by: Optional[str] = None) -> ScanOutcome:
    member = get_member(db, member_id)
    try:
        outcome = _check_in(db, member, scanned_by)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Manual check-in failed for %s", member_id)
        raise
    return _commit_outcome(db, outcome)
