"""Tests for the SQLite asset store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from fieldsync.sync.store import AssetStatus, AssetStore


class TestInsertAndRead:
    def test_insert_creates_pending_asset(self, store, add_asset):
        asset_id = store.insert_asset(
            "photo.jpg",
            "image/jpeg",
            data=b"abc",
            latitude=52.1,
            longitude=4.3,
            category="Damage",
        )

        asset = store.get_asset(asset_id)
        assert asset is not None
        assert asset.status == AssetStatus.pending
        assert asset.retries == 0
        assert asset.server_id is None
        assert asset.data == b"abc"
        assert asset.file_size_bytes == 3
        assert asset.category == "Damage"
        assert asset.latitude == 52.1
        assert asset.captured_at.tzinfo is not None

    def test_client_keys_are_unique(self, store, add_asset):
        first = store.get_asset(add_asset(store))
        second = store.get_asset(add_asset(store))
        assert first.client_key != second.client_key

    def test_ids_increase(self, store, add_asset):
        ids = [add_asset(store, f"p{i}.jpg") for i in range(3)]
        assert ids == sorted(ids)

    def test_get_missing_asset_returns_none(self, store, add_asset):
        assert store.get_asset(999) is None

    def test_stats_count_every_status(self, store, add_asset):
        a = add_asset(store)
        b = add_asset(store)
        add_asset(store)
        store.reserve_pending_or_failed(limit=1)
        store.mark_uploaded(a, "srv-a")
        store.mark_failed(b, "boom")

        stats = store.get_stats()
        assert stats == {"pending": 1, "uploading": 0, "uploaded": 1, "failed": 1, "total": 3}
        assert store.count_queued() == 2

    def test_persists_across_reopen(self, tmp_path, add_asset):
        db_path = tmp_path / "nested" / "assets.db"
        first = AssetStore(db_path)
        asset_id = add_asset(first)
        first.close()

        second = AssetStore(db_path)
        try:
            asset = second.get_asset(asset_id)
            assert asset is not None
            assert asset.status == AssetStatus.pending
        finally:
            second.close()


class TestReservation:
    def test_reserves_oldest_first(self, store, add_asset):
        ids = [add_asset(store, f"p{i}.jpg") for i in range(7)]

        batch = store.reserve_pending_or_failed(limit=5)

        assert [a.id for a in batch] == ids[:5]
        assert all(a.status == AssetStatus.uploading for a in batch)
        assert all(a.last_attempt_at is not None for a in batch)
        assert store.get_asset(ids[5]).status == AssetStatus.pending

    def test_reserved_assets_are_not_reserved_again(self, store, add_asset):
        for i in range(4):
            add_asset(store, f"p{i}.jpg")

        first = store.reserve_pending_or_failed(limit=2)
        second = store.reserve_pending_or_failed(limit=5)

        assert {a.id for a in first}.isdisjoint({a.id for a in second})
        assert store.reserve_pending_or_failed(limit=5) == []

    def test_failed_with_budget_is_eligible(self, store, add_asset):
        asset_id = add_asset(store)
        store.increment_retry_capped(asset_id, 5)
        store.mark_failed(asset_id, "boom")

        batch = store.reserve_pending_or_failed(limit=5, max_retries=5)

        assert [a.id for a in batch] == [asset_id]

    def test_failed_at_cap_is_not_eligible(self, store, add_asset):
        asset_id = add_asset(store)
        for _ in range(5):
            store.increment_retry_capped(asset_id, 5)
        store.mark_failed(asset_id, "boom")

        assert store.reserve_pending_or_failed(limit=5, max_retries=5) == []

    def test_backoff_gates_reservation(self, store, add_asset):
        asset_id = add_asset(store)
        now = datetime.now(timezone.utc)
        store.set_pending(asset_id, next_attempt_at=now + timedelta(seconds=10))

        assert store.reserve_pending_or_failed(limit=5, now=now) == []

        batch = store.reserve_pending_or_failed(limit=5, now=now + timedelta(seconds=11))
        assert [a.id for a in batch] == [asset_id]

    def test_concurrent_reservations_never_overlap(self, tmp_path, add_asset):
        """Separate connections racing on one file never reserve the same asset."""
        db_path = tmp_path / "assets.db"
        seed = AssetStore(db_path)
        for i in range(40):
            add_asset(seed, f"p{i}.jpg")
        seed.close()

        results: list[list[int]] = []
        lock = threading.Lock()

        def worker():
            store = AssetStore(db_path)
            try:
                reserved = []
                while True:
                    batch = store.reserve_pending_or_failed(limit=3)
                    if not batch:
                        break
                    reserved.extend(a.id for a in batch)
                with lock:
                    results.append(reserved)
            finally:
                store.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        all_ids = [asset_id for reserved in results for asset_id in reserved]
        assert len(all_ids) == 40
        assert len(set(all_ids)) == 40


class TestTransitions:
    def test_mark_uploaded_sets_server_id(self, store, add_asset):
        asset_id = add_asset(store)
        store.set_pending(asset_id, error="earlier failure")

        assert store.mark_uploaded(asset_id, "srv-1") is True

        asset = store.get_asset(asset_id)
        assert asset.status == AssetStatus.uploaded
        assert asset.server_id == "srv-1"
        assert asset.last_error is None

    def test_mark_uploaded_is_not_repeated(self, store, add_asset):
        asset_id = add_asset(store)
        store.mark_uploaded(asset_id, "srv-1")

        assert store.mark_uploaded(asset_id, "srv-2") is False
        assert store.get_asset(asset_id).server_id == "srv-1"

    def test_uploaded_asset_is_never_reverted(self, store, add_asset):
        asset_id = add_asset(store)
        store.mark_uploaded(asset_id, "srv-1")

        assert store.mark_failed(asset_id, "late error") is False
        assert store.set_pending(asset_id) is False
        assert store.reset_asset(asset_id) is False
        assert store.get_asset(asset_id).status == AssetStatus.uploaded

    def test_increment_retry_is_capped(self, store, add_asset):
        asset_id = add_asset(store)

        counts = [store.increment_retry_capped(asset_id, 3) for _ in range(5)]

        assert counts == [1, 2, 3, 3, 3]

    def test_set_pending_keeps_previous_error_when_none_given(self, store, add_asset):
        asset_id = add_asset(store)
        store.set_pending(asset_id, error="first")
        store.set_pending(asset_id)

        assert store.get_asset(asset_id).last_error == "first"

    def test_updates_on_deleted_asset_report_missing(self, store, add_asset):
        asset_id = add_asset(store)
        assert store.delete_asset(asset_id) is True

        assert store.mark_uploaded(asset_id, "srv") is False
        assert store.mark_failed(asset_id, "err") is False
        assert store.set_pending(asset_id) is False
        assert store.increment_retry_capped(asset_id, 5) is None
        assert store.delete_asset(asset_id) is False


class TestRecovery:
    def test_reset_stuck_uploading(self, store, add_asset):
        ids = [add_asset(store, f"p{i}.jpg") for i in range(3)]
        store.reserve_pending_or_failed(limit=3)

        assert store.reset_stuck_uploading(exclude=[ids[0]]) == 2

        assert store.get_asset(ids[0]).status == AssetStatus.uploading
        assert store.get_asset(ids[1]).status == AssetStatus.pending
        assert store.get_asset(ids[2]).status == AssetStatus.pending

    def test_reset_stale_uploading_only_touches_old_rows(self, store, add_asset):
        old = add_asset(store, "old.jpg")
        recent = add_asset(store, "recent.jpg")
        now = datetime.now(timezone.utc)
        store.reserve_pending_or_failed(limit=1, now=now - timedelta(minutes=10))
        store.reserve_pending_or_failed(limit=1, now=now - timedelta(minutes=1))

        reset = store.reset_stale_uploading(older_than=timedelta(minutes=5), now=now)

        assert reset == 1
        assert store.get_asset(old).status == AssetStatus.pending
        assert store.get_asset(recent).status == AssetStatus.uploading

    def test_reset_asset_restores_retry_budget(self, store, add_asset):
        asset_id = add_asset(store)
        for _ in range(5):
            store.increment_retry_capped(asset_id, 5)
        store.mark_failed(asset_id, "boom")

        assert store.reset_asset(asset_id) is True

        asset = store.get_asset(asset_id)
        assert asset.status == AssetStatus.pending
        assert asset.retries == 0
        assert asset.next_attempt_at is None

    def test_reset_asset_leaves_upload_in_flight(self, store, add_asset):
        asset_id = add_asset(store)
        store.reserve_pending_or_failed(limit=1)

        assert store.reset_asset(asset_id) is False
        assert store.get_asset(asset_id).status == AssetStatus.uploading

    def test_release_reserved_only_touches_uploading_rows(self, store, add_asset):
        reserved = add_asset(store, "reserved.jpg")
        done = add_asset(store, "done.jpg")
        store.reserve_pending_or_failed(limit=2)
        store.mark_uploaded(done, "srv-done")

        assert store.release_reserved([reserved, done]) == 1
        assert store.release_reserved([]) == 0

        assert store.get_asset(reserved).status == AssetStatus.pending
        assert store.get_asset(done).status == AssetStatus.uploaded

    def test_reset_failed_assets(self, store, add_asset):
        failed = [add_asset(store, f"f{i}.jpg") for i in range(2)]
        pending = add_asset(store, "p.jpg")
        for asset_id in failed:
            store.mark_failed(asset_id, "boom")

        assert store.reset_failed_assets() == 2
        assert store.list_assets(status=AssetStatus.failed) == []
        assert store.get_asset(pending).status == AssetStatus.pending

    def test_cleanup_uploaded_keeps_recent(self, store, add_asset):
        asset_id = add_asset(store)
        store.mark_uploaded(asset_id, "srv")

        assert store.cleanup_uploaded(days=7) == 0
        assert store.cleanup_uploaded(days=-1) == 1
        assert store.get_asset(asset_id) is None


@pytest.mark.parametrize("status", [None, AssetStatus.pending])
def test_list_assets_orders_by_id(store, status, add_asset):
    ids = [add_asset(store, f"p{i}.jpg") for i in range(3)]

    assets = store.list_assets(status=status, limit=2)

    assert [a.id for a in assets] == ids[:2]
