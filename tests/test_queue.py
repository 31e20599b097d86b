from datetime import datetime, timedelta

from hie_sync.models.tables import ObservationQueueEntry

T0 = datetime(2025, 1, 10, 8, 0, 0)


def _entry(state_sessions, entry_id):
    with state_sessions() as db:
        return db.get(ObservationQueueEntry, entry_id)


def test_enqueue_lists_parent_and_counts_pending(queue):
    queue.enqueue("P1", [("1", {"id": 1}), ("2", {"id": 2})], now=T0)
    queue.enqueue("P2", [("3", {"id": 3})], now=T0 + timedelta(minutes=1))

    assert queue.list_pending_parents() == ["P1", "P2"]
    stats = queue.stats()
    assert stats["pending"] == 3
    assert stats["total"] == 3


def test_reenqueue_bumps_retry_count_and_keeps_created_at(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1, "v": "a"})], now=T0)
    queue.enqueue("P1", [("1", {"id": 1, "v": "b"})], now=T0 + timedelta(hours=1))

    entry = _entry(state_sessions, "1")
    assert entry.retry_count == 1
    assert entry.last_retry_at == T0 + timedelta(hours=1)
    assert entry.created_at == T0
    assert entry.observation_payload == {"id": 1, "v": "b"}
    assert queue.stats()["total"] == 1


def test_payloads_with_datetimes_are_stored_as_json(queue):
    queue.enqueue("P1", [("1", {"id": 1, "date_time_admission": T0})], now=T0)

    (claimed,) = queue.claim("P1")
    assert claimed == ("1", {"id": 1, "date_time_admission": "2025-01-10T08:00:00"})


def test_claim_release_and_dequeue(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1}), ("2", {"id": 2})], now=T0)

    claimed = queue.claim("P1")
    assert [entry_id for entry_id, _ in claimed] == ["1", "2"]
    assert queue.list_pending_parents() == []
    assert queue.claim("P1") == []
    assert queue.stats()["processing"] == 2

    assert queue.dequeue("1") is True
    assert queue.release(["2"]) == 1
    assert _entry(state_sessions, "1") is None
    assert _entry(state_sessions, "2").status == "pending"
    assert queue.dequeue("missing") is False


def test_mark_failed_removes_entry_from_sweep(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1})], now=T0)
    assert queue.mark_failed("1") is True
    assert _entry(state_sessions, "1").status == "failed"
    assert queue.list_pending_parents() == []


def test_entries_expire_after_ttl(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1})], now=T0)
    queue.enqueue("P2", [("2", {"id": 2})], now=T0 + timedelta(hours=2))
    queue.claim("P2")

    assert queue.mark_expired_batch(now=T0 + timedelta(hours=23)) == 0
    assert queue.mark_expired_batch(now=T0 + timedelta(hours=24, seconds=1)) == 1
    assert _entry(state_sessions, "1").status == "expired"
    assert _entry(state_sessions, "2").status == "processing"

    assert queue.mark_expired_batch(now=T0 + timedelta(hours=27)) == 1
    assert _entry(state_sessions, "2").status == "expired"
    assert queue.stats()["expired"] == 2
    assert queue.list_pending_parents() == []


def test_reset_processing_recovers_stranded_claims(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1})], now=T0)
    queue.claim("P1")

    assert queue.reset_processing() == 1
    assert _entry(state_sessions, "1").status == "pending"
    assert queue.list_pending_parents() == ["P1"]


def test_unparsable_payload_is_marked_failed_on_claim(queue, state_sessions):
    with state_sessions() as db:
        db.add(
            ObservationQueueEntry(
                id="9",
                patient_id="P1",
                observation_payload="{not json",
                created_at=T0,
                retry_count=0,
                status="pending",
            )
        )
        db.commit()
    queue.enqueue("P1", [("10", {"id": 10})], now=T0)

    claimed = queue.claim("P1")
    assert claimed == [("10", {"id": 10})]
    assert _entry(state_sessions, "9").status == "failed"


def test_first_payload_returns_oldest_pending(queue):
    queue.enqueue("P1", [("2", {"id": 2, "phid": "AB12CD34"})], now=T0)
    queue.enqueue("P1", [("1", {"id": 1})], now=T0 + timedelta(minutes=5))

    assert queue.first_payload("P1") == {"id": 2, "phid": "AB12CD34"}
    assert queue.first_payload("P9") is None


def test_reenqueue_does_not_revive_failed_expired_or_claimed_entries(queue, state_sessions):
    queue.enqueue("P1", [("1", {"id": 1}), ("2", {"id": 2}), ("3", {"id": 3})], now=T0)
    queue.mark_failed("1")
    queue.mark_expired_batch(now=T0 + timedelta(hours=25))
    queue.enqueue("P2", [("4", {"id": 4})], now=T0 + timedelta(hours=25))
    queue.claim("P2")

    queue.enqueue(
        "P1", [("1", {"id": 1}), ("2", {"id": 2}), ("3", {"id": 3})], now=T0 + timedelta(hours=26)
    )
    queue.enqueue("P2", [("4", {"id": 4})], now=T0 + timedelta(hours=26))

    assert [_entry(state_sessions, i).status for i in ("1", "2", "3", "4")] == [
        "failed",
        "expired",
        "expired",
        "processing",
    ]
    assert _entry(state_sessions, "4").retry_count == 1
    assert queue.list_pending_parents() == []
    assert queue.claim("P2") == []
