"""
Tests for the optimistic concurrency guard (updated_at compare and the
compare-and-set stamp).
"""
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from services.plan_sync.concurrency import (
    GuardStatus,
    check_and_lock,
    coerce_uuid,
    ensure_utc,
    next_updated_at,
    parse_timestamp,
    read_updated_at,
    stamp_plan,
)


class TestTimestampHelpers:
    def test_parse_accepts_z_suffix(self):
        ts = parse_timestamp("2026-03-01T10:00:00.123456Z")
        assert ts == datetime(2026, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)

    def test_parse_converts_offsets_to_utc(self):
        ts = parse_timestamp("2026-03-01T12:00:00+02:00")
        assert ts == datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)

    def test_parse_empty_is_none(self):
        assert parse_timestamp(None) is None
        assert parse_timestamp("") is None

    def test_naive_datetimes_are_treated_as_utc(self):
        assert ensure_utc(datetime(2026, 1, 1)).tzinfo == timezone.utc

    def test_placeholder_ids_are_not_uuids(self):
        assert coerce_uuid("new-phase-1") is None
        value = uuid4()
        assert coerce_uuid(str(value)) == value

    def test_next_updated_at_always_moves_forward(self):
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        assert next_updated_at(future) == future + timedelta(microseconds=1)
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        assert next_updated_at(past) > past


class TestCheckAndLock:
    def test_missing_plan_needs_creation(self, db_session):
        result = check_and_lock(db_session, str(uuid4()), datetime.now(timezone.utc))
        assert result.status == GuardStatus.NEEDS_CREATION
        assert result.needs_creation
        assert not result.conflict

    def test_no_client_timestamp_skips_the_check(self, db_session, seeded_plan):
        result = check_and_lock(db_session, seeded_plan["plan"], None)
        assert result.ok
        assert result.server_updated_at == seeded_plan["updated_at"]

    def test_matching_timestamp_is_ok(self, db_session, seeded_plan):
        result = check_and_lock(db_session, seeded_plan["plan"], seeded_plan["updated_at"])
        assert result.ok

    def test_client_newer_than_server_is_ok(self, db_session, seeded_plan):
        later = seeded_plan["updated_at"] + timedelta(seconds=1)
        assert check_and_lock(db_session, seeded_plan["plan"], later).ok

    def test_server_newer_is_conflict(self, db_session, seeded_plan):
        stale = seeded_plan["updated_at"] - timedelta(seconds=1)

        result = check_and_lock(db_session, seeded_plan["plan"], stale.isoformat())

        assert result.conflict
        assert result.server_updated_at == seeded_plan["updated_at"]
        assert result.client_updated_at == stale

    def test_equal_timestamps_from_iso_string_are_not_a_conflict(self, db_session, seeded_plan):
        iso = seeded_plan["updated_at"].isoformat().replace("+00:00", "Z")
        assert check_and_lock(db_session, seeded_plan["plan"], iso).ok


class TestStampPlan:
    def test_stamp_moves_token(self, db_session, seeded_plan):
        observed = read_updated_at(db_session, seeded_plan["plan"])
        new = next_updated_at(observed)

        assert stamp_plan(db_session, seeded_plan["plan"], observed, new) is True
        db_session.commit()

        assert read_updated_at(db_session, seeded_plan["plan"]) == new

    def test_stamp_with_stale_observation_fails(self, db_session, seeded_plan):
        stale = seeded_plan["updated_at"] - timedelta(seconds=10)

        assert stamp_plan(db_session, seeded_plan["plan"], stale, next_updated_at()) is False
        db_session.rollback()

        assert read_updated_at(db_session, seeded_plan["plan"]) == seeded_plan["updated_at"]
