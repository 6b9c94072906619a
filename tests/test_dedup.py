from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from app.models import DeduplicationRecord, PipelineAlert, SequenceState
from app.services.dedup_service import (
    check_duplicate,
    cleanup_expired_records,
    compute_content_hash,
    get_dedup_stats,
    minute_bucket_ms,
)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)
SENDER = "15551234567"


def _check(db, tenant, content="Hi, I want to book", message_id="wamid.1", timestamp=NOW, sender=SENDER, now=NOW):
    result = check_duplicate(
        db,
        tenant_id=tenant.id,
        sender=sender,
        message_id=message_id,
        content=content,
        timestamp=timestamp,
        now=now,
    )
    db.commit()
    return result


class TestContentHash:
    def test_normalizes_case_and_whitespace(self):
        assert compute_content_hash("Hello   World ", SENDER, NOW) == compute_content_hash("hello world", SENDER, NOW)

    def test_same_minute_same_hash(self):
        later = NOW + timedelta(seconds=59)
        assert compute_content_hash("hi", SENDER, NOW) == compute_content_hash("hi", SENDER, later)

    def test_next_minute_differs(self):
        later = NOW + timedelta(seconds=60)
        assert compute_content_hash("hi", SENDER, NOW) != compute_content_hash("hi", SENDER, later)

    def test_sender_is_part_of_hash(self):
        assert compute_content_hash("hi", SENDER, NOW) != compute_content_hash("hi", "15550000000", NOW)

    def test_minute_bucket(self):
        assert minute_bucket_ms(NOW + timedelta(seconds=42)) == int(NOW.timestamp() * 1000)


class TestCheckDuplicate:
    def test_first_sighting_is_unique(self, db, tenant):
        result = _check(db, tenant)

        assert result.duplicate is False
        assert result.duplicate_count == 1
        assert db.query(DeduplicationRecord).count() == 1

    def test_redelivery_is_duplicate(self, db, tenant):
        first = _check(db, tenant)
        second = _check(db, tenant, content="  hi, I WANT to book", message_id="wamid.2")

        assert second.duplicate is True
        assert second.duplicate_count == 2
        assert second.record_id == first.record_id
        record = db.query(DeduplicationRecord).one()
        assert record.original_message_id == "wamid.1"

    def test_same_text_in_another_minute_is_new(self, db, tenant):
        _check(db, tenant)
        result = _check(db, tenant, message_id="wamid.2", timestamp=NOW + timedelta(minutes=2))

        assert result.duplicate is False
        assert db.query(DeduplicationRecord).count() == 2

    def test_other_sender_is_new(self, db, tenant):
        _check(db, tenant)
        result = _check(db, tenant, sender="15559999999", message_id="wamid.2")
        assert result.duplicate is False

    @patch("app.services.alert_service.send_alert")
    def test_alert_fires_once_at_threshold(self, mock_send, db, tenant):
        with patch("app.services.dedup_service.settings.dedup_alert_threshold", 3):
            results = [_check(db, tenant, message_id=f"wamid.{n}") for n in range(5)]

        assert [r.duplicate_count for r in results] == [1, 2, 3, 4, 5]
        alerts = db.query(PipelineAlert).filter(PipelineAlert.kind == "excessive_duplicates").all()
        assert len(alerts) == 1
        assert alerts[0].context["duplicate_count"] == "3"

    def test_record_outside_window_starts_over(self, db, tenant):
        old_now = NOW - timedelta(hours=30)
        _check(db, tenant, now=old_now)

        result = _check(db, tenant, message_id="wamid.2")

        assert result.duplicate is False
        assert result.duplicate_count == 1
        db.expire_all()
        record = db.query(DeduplicationRecord).one()
        assert record.original_message_id == "wamid.2"
        assert record.duplicate_count == 1


class TestCleanup:
    def test_deletes_only_expired(self, db, tenant):
        _check(db, tenant, message_id="wamid.old", now=NOW - timedelta(hours=30))
        _check(db, tenant, content="fresh", message_id="wamid.new")

        deleted = cleanup_expired_records(db, now=NOW)

        assert deleted == 1
        remaining = db.query(DeduplicationRecord).one()
        assert remaining.original_message_id == "wamid.new"


class TestDedupStats:
    def test_counts_duplicates_and_sequence_anomalies(self, db, tenant):
        _check(db, tenant)
        _check(db, tenant, message_id="wamid.2")
        _check(db, tenant, content="another", message_id="wamid.3")
        db.add(
            SequenceState(
                tenant_id=tenant.id,
                sender=SENDER,
                sequence_number=4,
                expected_next=5,
                gap_detected=True,
                missing_sequences=[3],
                out_of_order_messages=["wamid.late"],
            )
        )
        db.commit()

        stats = get_dedup_stats(db, tenant_id=tenant.id, now=NOW)

        assert stats["unique_messages"] == 2
        assert stats["duplicates"] == 1
        assert stats["duplicate_rate"] == round(1 / 3, 4)
        assert stats["sequence_gaps"] == 1
        assert stats["out_of_order_messages"] == 1

    def test_empty(self, db, tenant):
        stats = get_dedup_stats(db, tenant_id=tenant.id, now=NOW)
        assert stats["duplicates"] == 0
        assert stats["duplicate_rate"] == 0.0
