"""Ticket issuance, scan resolution, quota and the check-in recorder."""
import pytest
from sqlalchemy.exc import IntegrityError, OperationalError

import checkin
import models
from checkin import Quota, ScanStatus


def _log_entries(db):
    return db.query(models.ScanLog).order_by(models.ScanLog.id).all()


class TestIssueTicket:
    def test_successive_guests_get_padded_sequence(self, add_guest):
        numbers = [add_guest(name=f"Guest {i}").ticket_number for i in range(3)]
        assert numbers == ["00001", "00002", "00003"]

    def test_names_and_phones_do_not_affect_numbering(self, add_guest):
        # Scenario D
        first = add_guest(name="Zed", phone="+1 555 0100")
        second = add_guest(name="Adam", phone="+1 555 0100")
        assert (first.ticket_number, second.ticket_number) == ("00001", "00002")

    def test_each_group_has_its_own_sequence(self, db, add_guest):
        other = models.Group(name="Gala")
        db.add(other)
        db.commit()

        assert add_guest().ticket_number == "00001"
        assert add_guest(group_id=other.id).ticket_number == "00001"
        assert add_guest().ticket_number == "00002"

    def test_unknown_group_raises_not_found(self, db):
        with pytest.raises(checkin.NotFound) as excinfo:
            checkin.issue_ticket(db, "missing")
        assert excinfo.value.kind == "Group"

    def test_numbers_are_not_reused_after_delete(self, db, add_guest):
        add_guest()
        second = add_guest()
        db.delete(second)
        db.commit()
        assert add_guest().ticket_number == "00003"

    def test_group_with_guests_from_before_the_counter(self, db, group):
        db.add_all([
            models.Member(id="legacy-1", name="A", phone="1", scan_limit=1, group_id=group.id),
            models.Member(id="legacy-2", name="B", phone="2", scan_limit=1, group_id=group.id,
                          ticket_number="00004"),
        ])
        db.commit()
        assert checkin.issue_ticket(db, group.id) == "00005"

    def test_format_ticket_number(self):
        assert checkin.format_ticket_number(7) == "00007"
        assert checkin.format_ticket_number(123456) == "123456"


class TestAddMember:
    def test_new_guest_starts_unscanned_and_pending(self, add_guest):
        guest = add_guest(name="Layla")
        assert guest.scan_count == 0
        assert guest.rsvp_status == "pending"
        assert guest.id

    def test_scan_limit_defaults_to_group_setting(self, db, group, add_guest):
        group.default_scan_limit = 3
        db.commit()
        assert add_guest().scan_limit == 3
        assert add_guest(scan_limit=5).scan_limit == 5

    def test_scan_limit_falls_back_when_group_has_none(self, db, group, add_guest):
        group.default_scan_limit = None
        db.commit()
        assert add_guest().scan_limit == 1

    def test_max_members_is_enforced(self, db, group, add_guest):
        group.max_members = 2
        db.commit()
        add_guest()
        add_guest()
        with pytest.raises(checkin.GroupFull):
            add_guest()
        assert checkin.member_count(db, group.id) == 2

    def test_non_positive_fallback_limit_rejected(self, db, group):
        group.default_scan_limit = None
        db.commit()
        with pytest.raises(ValueError):
            checkin.add_member(db, group.id, "A", "1", default_scan_limit=0)
        assert checkin.member_count(db, group.id) == 0

    def test_store_rejects_zero_scan_limit(self, db, group):
        db.add(models.Member(id="zero", name="Z", phone="1", scan_limit=0, group_id=group.id))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()
        assert checkin.member_count(db, group.id) == 0


class TestResolve:
    def test_matches_ticket_number(self, db, add_guest):
        guest = add_guest(name="Layla")
        assert checkin.resolve(db, "00001").id == guest.id

    def test_falls_back_to_id(self, db, group):
        db.add(models.Member(id="abc-1", name="Old", phone="1", scan_limit=1, group_id=group.id))
        db.commit()
        assert checkin.resolve(db, "abc-1").name == "Old"

    def test_ticket_number_wins_over_id(self, db, group, add_guest):
        db.add(models.Member(id="00001", name="Id match", phone="1", scan_limit=1, group_id=group.id))
        db.commit()
        ticketed = add_guest(name="Ticket match")
        assert ticketed.ticket_number == "00002"
        assert checkin.resolve(db, "00002").name == "Ticket match"
        assert checkin.resolve(db, "00001").name == "Id match"

    def test_unknown_code(self, db, add_guest):
        add_guest()
        assert checkin.resolve(db, "XYZ123") is None

    def test_scoped_to_group(self, db, add_guest):
        other = models.Group(name="Gala")
        db.add(other)
        db.commit()
        add_guest(name="Here")
        there = add_guest(name="There", group_id=other.id)
        assert checkin.resolve(db, "00001", group_id=other.id).id == there.id


class TestCheckQuota:
    @pytest.mark.parametrize("count,limit,expected", [
        (0, 1, Quota.ADMIT),
        (2, 3, Quota.ADMIT),
        (1, 1, Quota.LIMIT_REACHED),
        (4, 3, Quota.LIMIT_REACHED),
    ])
    def test_quota(self, count, limit, expected):
        guest = models.Member(scan_count=count, scan_limit=limit)
        assert checkin.check_quota(guest) is expected


class TestRecordScan:
    def test_admit_then_deny(self, db, add_guest):
        # Scenario A
        layla = add_guest(name="Layla")
        assert layla.ticket_number == "00001"

        first = checkin.record_scan(db, "00001", scanned_by="door-1")
        assert first.status is ScanStatus.SUCCESS
        assert first.admitted
        assert first.member.scan_count == 1
        assert first.log.status == "success"
        assert first.log.member_id == layla.id
        assert first.log.member_name == "Layla"
        assert first.log.scanned_by == "door-1"

        second = checkin.record_scan(db, "00001", scanned_by="door-1")
        assert second.status is ScanStatus.LIMIT_REACHED
        assert second.member.scan_count == 1
        assert second.log.status == "limit_reached"

    def test_unknown_code_is_logged_as_invalid(self, db, add_guest):
        # Scenario B
        guest = add_guest()
        outcome = checkin.record_scan(db, "XYZ123")

        assert outcome.status is ScanStatus.INVALID
        assert outcome.member is None
        assert outcome.log.member_id == "XYZ123"
        assert outcome.log.member_name == "unknown"
        db.refresh(guest)
        assert guest.scan_count == 0

    def test_legacy_ticket_admitted_by_id(self, db, group):
        # Scenario C
        db.add(models.Member(id="abc-1", name="Old", phone="1", scan_limit=1, group_id=group.id))
        db.commit()
        outcome = checkin.record_scan(db, "abc-1")
        assert outcome.status is ScanStatus.SUCCESS
        assert outcome.member.scan_count == 1

    def test_scan_count_never_exceeds_limit(self, db, add_guest):
        guest = add_guest(scan_limit=3)
        statuses = [checkin.record_scan(db, guest.ticket_number).status for _ in range(6)]

        assert statuses.count(ScanStatus.SUCCESS) == 3
        assert statuses.count(ScanStatus.LIMIT_REACHED) == 3
        db.refresh(guest)
        assert guest.scan_count == guest.scan_limit == 3

    def test_every_outcome_writes_one_log_entry(self, db, add_guest):
        add_guest()
        checkin.record_scan(db, "00001")
        checkin.record_scan(db, "00001")
        checkin.record_scan(db, "nope")
        assert [e.status for e in _log_entries(db)] == ["success", "limit_reached", "invalid"]

    def test_lost_race_is_reported_as_limit_reached(self, db, add_guest):
        guest = add_guest(scan_limit=1)
        assert guest.scan_count == 0

        # Another door admits the guest; this session still holds scan_count == 0
        db.query(models.Member).filter(models.Member.id == guest.id).update(
            {models.Member.scan_count: 1}, synchronize_session=False
        )

        outcome = checkin.record_scan(db, guest.ticket_number)
        assert outcome.status is ScanStatus.LIMIT_REACHED
        assert outcome.member.scan_count == 1

    def test_store_failure_records_nothing(self, db, add_guest, monkeypatch):
        guest = add_guest()

        def broken_commit():
            raise OperationalError("COMMIT", {}, Exception("database is locked"))

        monkeypatch.setattr(db, "commit", broken_commit)
        with pytest.raises(OperationalError):
            checkin.record_scan(db, guest.ticket_number)
        monkeypatch.undo()

        assert _log_entries(db) == []
        db.refresh(guest)
        assert guest.scan_count == 0

    def test_log_entry_keeps_name_after_rename(self, db, add_guest):
        guest = add_guest(name="Layla")
        checkin.record_scan(db, guest.ticket_number)
        guest.name = "Layla A."
        db.commit()
        assert _log_entries(db)[0].member_name == "Layla"


class TestManualCheckIn:
    def test_admits_known_guest(self, db, add_guest):
        guest = add_guest(scan_limit=2)
        outcome = checkin.manual_check_in(db, guest.id, scanned_by="admin")
        assert outcome.status is ScanStatus.SUCCESS
        assert outcome.member.scan_count == 1
        assert outcome.log.scanned_by == "admin"

    def test_denied_at_limit(self, db, add_guest):
        guest = add_guest(scan_limit=1)
        checkin.manual_check_in(db, guest.id)
        outcome = checkin.manual_check_in(db, guest.id)
        assert outcome.status is ScanStatus.LIMIT_REACHED
        assert outcome.member.scan_count == 1
        assert len(_log_entries(db)) == 2

    def test_unknown_guest(self, db):
        with pytest.raises(checkin.NotFound):
            checkin.manual_check_in(db, "missing")
