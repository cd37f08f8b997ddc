"""
Tests for settings, the sync request queue and the dashboard queries
Run with: pytest tests/test_crud.py -v
"""

import pytest
from sqlalchemy import create_mock_engine
from sqlalchemy.exc import IntegrityError

from farmsync import crud, models
from farmsync.database import Base
from farmsync.ingest import ingest_sync_payload

FARMERS_CSV = (
    "id,phone,created\n"
    "0001,+2348010000001,2024-01-01\n"
    "0002,+2348010000002,2024-01-02\n"
    "0003,+4470000000003,2024-01-03"
)


def datalog(rows):
    return "id,ts,h,t,ec,ph,n,p,k\n" + "\n".join(rows)


@pytest.fixture
def seeded_db(db):
    """Three farmers; 0001 has four readings, 0002 has two, 0003 none"""
    ingest_sync_payload(db, FARMERS_CSV, datalog([
        "0001,2024-01-01 08:00,40,20,1.0,6.0,10,5,8",
        "0001,2024-01-01 09:00,50,22,1.2,6.5,12,6,9",
        "0002,2024-01-01 08:00,60,24,1.4,7.0,14,7,10",
        "0001,2024-01-01 10:00,60,24,1.4,7.0,14,7,10",
        "0002,2024-01-01 09:00,70,26,1.6,7.5,16,8,11",
        "0001,2024-01-01 11:00,70,26,1.6,7.5,16,8,11",
    ]))
    return db


class TestSmsSettings:
    """Get-or-create and validated update of the settings row"""

    def test_first_read_creates_default(self, db):
        settings = crud.get_or_create_settings(db)

        assert settings.id == models.SMS_SETTINGS_ID
        assert settings.sms_enabled is False
        assert settings.message_template == models.DEFAULT_SMS_TEMPLATE
        assert settings.updated_at is not None
        assert db.query(models.SmsSettings).count() == 1

    def test_default_template_placeholders(self):
        for token in ("{farmer_id}", "{humidity}", "{temperature}", "{ph}", "{ec}",
                      "{nitrogen}", "{phosphorus}", "{potassium}", "{timestamp}"):
            assert token in models.DEFAULT_SMS_TEMPLATE

    def test_repeated_reads_keep_single_row(self, db):
        crud.get_or_create_settings(db)
        crud.get_or_create_settings(db)
        assert db.query(models.SmsSettings).count() == 1

    def test_update_replaces_values(self, db):
        crud.update_settings(db, True, "  Hello {farmer_id}  ")

        settings = crud.get_or_create_settings(db)
        assert settings.sms_enabled is True
        assert settings.message_template == "Hello {farmer_id}"

    def test_update_before_any_read(self, db):
        crud.update_settings(db, False, "Report {ph}")
        assert db.query(models.SmsSettings).count() == 1

    @pytest.mark.parametrize("template", ["", "   ", None])
    def test_empty_template_rejected(self, db, template):
        crud.update_settings(db, False, "Original {ph}")

        with pytest.raises(crud.ValidationError):
            crud.update_settings(db, True, template)

        settings = crud.get_or_create_settings(db)
        assert settings.sms_enabled is False
        assert settings.message_template == "Original {ph}"


class TestSyncRequests:
    """Pending-sync handshake between dashboard and device"""

    def test_request_creates_pending(self, db):
        sync_request, created = crud.request_sync(db)

        assert created is True
        assert sync_request.status == models.SYNC_PENDING
        assert sync_request.requested_at is not None
        assert sync_request.completed_at is None

    def test_second_request_is_suppressed(self, db):
        first, _ = crud.request_sync(db)
        second, created = crud.request_sync(db)

        assert created is False
        assert second.id == first.id
        assert db.query(models.SyncRequest).filter_by(status=models.SYNC_PENDING).count() == 1

    def test_many_requests_keep_single_pending(self, db):
        for _ in range(5):
            crud.request_sync(db)
        assert db.query(models.SyncRequest).count() == 1

    def test_poll_without_requests(self, db):
        assert crud.poll_pending(db) == (None, None)

    def test_poll_reports_pending_and_last_settled(self, db):
        first, _ = crud.request_sync(db)
        crud.resolve_pending(db, models.SYNC_FAILED)
        second, _ = crud.request_sync(db)

        pending, last_sync = crud.poll_pending(db)

        assert pending.id == second.id
        assert last_sync.id == first.id
        assert last_sync.status == models.SYNC_FAILED

    def test_resolve_completes_pending(self, db):
        sync_request, _ = crud.request_sync(db)

        assert crud.resolve_pending(db, models.SYNC_COMPLETED) == 1

        settled = db.get(models.SyncRequest, sync_request.id)
        assert settled.status == models.SYNC_COMPLETED
        assert settled.completed_at is not None

    def test_resolve_without_pending(self, db):
        assert crud.resolve_pending(db, models.SYNC_COMPLETED) == 0

    def test_resolve_only_touches_pending_rows(self, db):
        failed = models.SyncRequest(status=models.SYNC_FAILED)
        db.add_all([models.SyncRequest(status=models.SYNC_PENDING), failed])
        db.commit()

        assert crud.resolve_pending(db, models.SYNC_COMPLETED) == 1
        assert crud.get_pending_request(db) is None
        assert db.get(models.SyncRequest, failed.id).status == models.SYNC_FAILED

    def test_settled_rows_are_never_reopened(self, db):
        first, _ = crud.request_sync(db)
        crud.resolve_pending(db, models.SYNC_COMPLETED)

        second, created = crud.request_sync(db)

        assert created is True
        assert second.id != first.id
        assert db.get(models.SyncRequest, first.id).status == models.SYNC_COMPLETED

    def test_invalid_status_rejected(self, db):
        crud.request_sync(db)

        with pytest.raises(crud.ValidationError):
            crud.resolve_pending(db, "cancelled")

        assert crud.get_pending_request(db) is not None

    def test_database_enforces_single_pending(self, db):
        crud.request_sync(db)
        db.add(models.SyncRequest(status=models.SYNC_PENDING))

        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    @pytest.mark.parametrize("url,expected", [
        ("sqlite://", True),
        ("postgresql://", True),
        ("mysql://", False),
    ])
    def test_pending_index_only_on_partial_index_backends(self, url, expected):
        """Without WHERE support the index would turn into UNIQUE(status)"""
        statements = []
        mock_engine = create_mock_engine(
            url, lambda sql, *multiparams, **params: statements.append(str(sql.compile(dialect=mock_engine.dialect)))
        )

        Base.metadata.create_all(mock_engine, checkfirst=False)

        index_ddl = [sql for sql in statements if "uq_sync_requests_single_pending" in sql]
        assert bool(index_ddl) is expected
        for sql in index_ddl:
            assert "WHERE status = 'pending'" in sql

    def test_several_settled_rows_allowed(self, db):
        for sync_status in (models.SYNC_COMPLETED, models.SYNC_FAILED, models.SYNC_COMPLETED):
            crud.request_sync(db)
            crud.resolve_pending(db, sync_status)

        assert db.query(models.SyncRequest).count() == 3
        assert crud.get_pending_request(db) is None


class TestListFarmers:
    """Farmer search with reading counts"""

    def test_all_farmers_ordered_with_counts(self, seeded_db):
        rows = crud.list_farmers(seeded_db)

        assert [farmer.farmer_id for farmer, _, _ in rows] == ["0001", "0002", "0003"]
        counts = {farmer.farmer_id: (count, last) for farmer, count, last in rows}
        assert counts["0001"] == (4, "2024-01-01 11:00")
        assert counts["0002"] == (2, "2024-01-01 09:00")
        assert counts["0003"] == (0, None)

    def test_search_matches_id_or_phone(self, seeded_db):
        by_id = crud.list_farmers(seeded_db, "0002")
        by_phone = crud.list_farmers(seeded_db, "+44")

        assert [farmer.farmer_id for farmer, _, _ in by_id] == ["0002"]
        assert [farmer.farmer_id for farmer, _, _ in by_phone] == ["0003"]

    def test_search_wildcards_are_literal(self, seeded_db):
        assert crud.list_farmers(seeded_db, "%") == []
        assert crud.list_farmers(seeded_db, "_") == []

    def test_total_is_unfiltered(self, seeded_db):
        assert crud.count_farmers(seeded_db) == 3


class TestListReadings:
    """Pagination and aggregate statistics"""

    def test_newest_insert_first(self, seeded_db):
        total, _, rows = crud.list_readings(seeded_db)

        assert total == 6
        timestamps = [(reading.farmer_id, reading.reading_timestamp) for reading, _ in rows]
        assert timestamps[0] == ("0001", "2024-01-01 11:00")
        assert timestamps[-1] == ("0001", "2024-01-01 08:00")
        assert [reading.id for reading, _ in rows] == sorted((reading.id for reading, _ in rows), reverse=True)

    def test_rows_carry_phone_number(self, seeded_db):
        _, _, rows = crud.list_readings(seeded_db, farmer_id="0002")
        assert {phone for _, phone in rows} == {"+2348010000002"}

    @pytest.mark.parametrize("limit,offset", [(2, 0), (4, 4), (10, 0), (3, 6), (5, 100), (0, 0)])
    def test_page_size(self, seeded_db, limit, offset):
        total, stats, rows = crud.list_readings(seeded_db, limit=limit, offset=offset)

        assert len(rows) == min(limit, max(0, total - offset))
        assert stats["total_readings"] == 6

    def test_filtered_stats_cover_whole_set(self, seeded_db):
        total, stats, rows = crud.list_readings(seeded_db, farmer_id="0001", limit=1)

        assert total == 4
        assert len(rows) == 1
        assert stats["total_readings"] == 4
        assert stats["unique_farmers"] == 1
        assert stats["avg_humidity"] == pytest.approx(55.0)
        assert stats["avg_temperature"] == pytest.approx(23.0)
        assert stats["avg_ph"] == pytest.approx(6.75)
        assert stats["avg_potassium"] == pytest.approx(9.5)

    def test_unfiltered_stats(self, seeded_db):
        stats = crud.reading_stats(seeded_db)

        assert stats["total_readings"] == 6
        assert stats["unique_farmers"] == 2
        assert stats["avg_humidity"] == pytest.approx(350 / 6)

    def test_empty_store_stats(self, db):
        total, stats, rows = crud.list_readings(db)

        assert total == 0
        assert rows == []
        assert stats["avg_humidity"] is None
        assert stats["unique_farmers"] == 0

    def test_database_enforces_unique_reading(self, seeded_db):
        """(farmer_id, reading_timestamp) is unique even without the ingest check"""
        seeded_db.add(models.SoilReading(farmer_id="0001", reading_timestamp="2024-01-01 08:00"))

        with pytest.raises(IntegrityError):
            seeded_db.commit()
        seeded_db.rollback()

        _, stats, _ = crud.list_readings(seeded_db, farmer_id="0001")
        assert stats["total_readings"] == 4

    def test_unknown_farmer_filter(self, seeded_db):
        total, _, rows = crud.list_readings(seeded_db, farmer_id="9999")
        assert total == 0
        assert rows == []


class TestClampPage:
    """limit/offset are bounded integers"""

    def test_limit_capped(self):
        assert crud.clamp_page(1000, 0, max_limit=500) == (500, 0)

    def test_negative_values(self):
        assert crud.clamp_page(-5, -10, max_limit=500) == (0, 0)

    def test_in_range_unchanged(self):
        assert crud.clamp_page(20, 40, max_limit=500) == (20, 40)
