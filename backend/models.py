import uuid

from sqlalchemy import Column, String, DateTime, Integer, Text, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


RSVP_STATUSES   = ("pending", "confirmed", "declined")
SCAN_STATUSES   = ("success", "limit_reached", "invalid")
UNKNOWN_MEMBER  = "unknown"


def _new_id() -> str:
    return str(uuid.uuid4())


# ── Groups (events) ──────────────────────────────────────────────────────────
class Group(Base):
    """
    An event with its own guest list and check-in configuration.
    ticket_sequence is the last ticket number handed out in this group.
    """
    __tablename__ = "groups"

    id                 = Column(String(36),  primary_key=True, default=_new_id)
    name               = Column(String(200), nullable=False)
    default_scan_limit = Column(Integer,     nullable=True)
    max_members        = Column(Integer,     nullable=True)
    design_template_id = Column(String(36),  nullable=True)
    event_start_date   = Column(String(40),  nullable=True)
    event_end_date     = Column(String(40),  nullable=True)
    location_address   = Column(Text,        nullable=True)
    location_link      = Column(Text,        nullable=True)
    ticket_sequence    = Column(Integer,     default=0, nullable=False)
    created_at         = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False
    )

    members = relationship(
        "Member",
        back_populates="group",
        cascade="all, delete-orphan",
    )


# ── Members (guests) ─────────────────────────────────────────────────────────
class Member(Base):
    __tablename__ = "members"
    __table_args__ = (
        UniqueConstraint("group_id", "ticket_number", name="uq_members_group_ticket"),
        CheckConstraint("scan_count >= 0", name="ck_members_scan_count_positive"),
        CheckConstraint("scan_count <= scan_limit", name="ck_members_scan_count_within_limit"),
        CheckConstraint("scan_limit >= 1", name="ck_members_scan_limit_positive"),
    )

    id            = Column(String(64),  primary_key=True, default=_new_id)
    # Null for legacy tickets issued before ticket numbers existed
    ticket_number = Column(String(10),  nullable=True, index=True)
    name          = Column(String(200), nullable=False)
    phone         = Column(String(30),  nullable=False)
    scan_limit    = Column(Integer,     default=1, nullable=False)
    scan_count    = Column(Integer,     default=0, nullable=False)
    group_id      = Column(
        String(36),
        ForeignKey("groups.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    # 'pending' | 'confirmed' | 'declined'
    rsvp_status   = Column(String(20),  default="pending", nullable=False)

    group = relationship("Group", back_populates="members")


# ── Scan log ─────────────────────────────────────────────────────────────────
class ScanLog(Base):
    """
    Append-only record of every scan attempt.
    member_id is deliberately not a foreign key: entries outlive deleted guests,
    and invalid scans store the raw scanned code there.
    """
    __tablename__ = "scan_logs"

    id          = Column(Integer,     primary_key=True, autoincrement=True)
    # Raw scanned code for invalid scans, unbounded
    member_id   = Column(Text,        nullable=False, index=True)
    member_name = Column(String(200), nullable=False)   # snapshot at scan time
    status      = Column(String(20),  nullable=False)   # success | limit_reached | invalid
    scanned_at  = Column(DateTime(timezone=True), nullable=False, index=True)
    scanned_by  = Column(String(100), nullable=True)
