"""SQLite-backed durable asset store for the upload queue."""

import sqlite3
import threading
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path

from fieldsync.sync.exceptions import StoreError

DEFAULT_BATCH_SIZE = 5
DEFAULT_MAX_RETRIES = 5
STALE_UPLOADING_THRESHOLD = timedelta(minutes=5)


class AssetStatus(str, Enum):
    """Delivery lifecycle of one captured asset."""

    pending = "pending"
    uploading = "uploading"
    uploaded = "uploaded"
    failed = "failed"


@dataclass
class AssetRecord:
    """A captured item tracked through the upload lifecycle."""

    id: int
    client_key: str
    filename: str
    mime_type: str
    captured_at: datetime
    status: AssetStatus
    retries: int = 0
    server_id: str | None = None
    last_attempt_at: datetime | None = None
    next_attempt_at: datetime | None = None
    last_error: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    data: bytes | None = None
    uri: str | None = None
    file_size_bytes: int | None = None
    user_id: int | None = None
    username: str | None = None
    category: str = "Site"
    created_at: datetime | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    """Serialize a datetime as fixed-width UTC ISO text so stored values sort correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


class AssetStore:
    """SQLite-backed persistent store of asset records.

    The store is the single source of truth for asset status. Every status
    transition is one statement, and batch reservation flips rows to
    'uploading' in the same statement that selects them, so two callers can
    never reserve the same asset, even from separate connections.

    Updates on a row that no longer exists (deleted while an upload was in
    flight) affect nothing and report that through their return value.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the asset store.

        Args:
            db_path: Path to the SQLite database file, or ":memory:"
        """
        self.db_path = db_path
        if str(db_path) != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False, timeout=10.0)
        self._conn.row_factory = sqlite3.Row
        self._create_table()

    def _create_table(self) -> None:
        """Create the assets table if it doesn't exist."""
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS assets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    client_key TEXT NOT NULL UNIQUE,
                    filename TEXT NOT NULL,
                    mime_type TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    retries INTEGER NOT NULL DEFAULT 0,
                    server_id TEXT,
                    last_attempt_at TEXT,
                    next_attempt_at TEXT,
                    last_error TEXT,
                    latitude REAL,
                    longitude REAL,
                    data BLOB,
                    uri TEXT,
                    file_size_bytes INTEGER,
                    user_id INTEGER,
                    username TEXT,
                    category TEXT DEFAULT 'Site',
                    created_at TEXT NOT NULL
                )
            """)
            # Index for reservation and status counts
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_assets_status_id
                ON assets (status, id)
            """)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._conn.rollback()
                raise StoreError(f"Asset store operation failed: {e}") from e

    def insert_asset(
        self,
        filename: str,
        mime_type: str,
        captured_at: datetime | None = None,
        *,
        data: bytes | None = None,
        uri: str | None = None,
        latitude: float | None = None,
        longitude: float | None = None,
        user_id: int | None = None,
        username: str | None = None,
        category: str = "Site",
        client_key: str | None = None,
    ) -> int:
        """Persist a newly captured asset in 'pending' state.

        Args:
            filename: Original file name
            mime_type: MIME type of the payload
            captured_at: Capture time (defaults to now)
            data: Raw payload bytes, when not referenced by uri
            uri: Location of the payload on the device
            client_key: Idempotency token; a UUID4 is generated when omitted

        Returns:
            The new asset ID
        """
        now = _utcnow()
        file_size = len(data) if data is not None else None
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO assets (
                    client_key, filename, mime_type, captured_at, status, retries,
                    latitude, longitude, data, uri, file_size_bytes,
                    user_id, username, category, created_at
                )
                VALUES (?, ?, ?, ?, 'pending', 0, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    client_key or str(uuid.uuid4()),
                    filename,
                    mime_type,
                    _to_iso(captured_at or now),
                    latitude,
                    longitude,
                    data,
                    uri,
                    file_size,
                    user_id,
                    username,
                    category,
                    _to_iso(now),
                ),
            )
            return int(cursor.lastrowid)

    def get_asset(self, asset_id: int) -> AssetRecord | None:
        """Return one asset, or None when it does not exist."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM assets WHERE id = ?", (asset_id,)).fetchone()
        return _row_to_asset(row) if row else None

    def list_assets(
        self,
        status: AssetStatus | None = None,
        limit: int | None = None,
    ) -> list[AssetRecord]:
        """Return assets ordered by ID, optionally filtered by status."""
        query = "SELECT * FROM assets"
        params: list = []
        if status is not None:
            query += " WHERE status = ?"
            params.append(status.value)
        query += " ORDER BY id ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with self._transaction() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_asset(row) for row in rows]

    def get_stats(self) -> dict[str, int]:
        """Get counts by status.

        Returns:
            Dictionary with one count per status plus 'total'
        """
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT status, COUNT(*) AS count FROM assets GROUP BY status"
            ).fetchall()

        stats = {status.value: 0 for status in AssetStatus}
        stats["total"] = 0
        for row in rows:
            stats[row["status"]] = row["count"]
            stats["total"] += row["count"]
        return stats

    def count_queued(self) -> int:
        """Count assets waiting for an upload attempt (pending or failed)."""
        with self._transaction() as conn:
            val = conn.execute(
                "SELECT COUNT(*) FROM assets WHERE status IN ('pending', 'failed')"
            ).fetchone()[0]
        return int(val)

    def reserve_pending_or_failed(
        self,
        limit: int = DEFAULT_BATCH_SIZE,
        max_retries: int = DEFAULT_MAX_RETRIES,
        now: datetime | None = None,
    ) -> list[AssetRecord]:
        """Atomically reserve a batch of eligible assets for upload.

        Eligible rows are 'pending' ones whose backoff has elapsed, plus
        'failed' ones that still have retry budget left. Rows at the retry
        cap stay 'failed' until explicitly reset. Selection and the flip to
        'uploading' happen in one statement, oldest ID first.

        Args:
            limit: Maximum number of assets to reserve
            max_retries: Retry cap; failed rows at the cap are not reserved
            now: Reference time for backoff eligibility (defaults to now)

        Returns:
            Reserved assets ordered by ascending ID
        """
        ts = _to_iso(now or _utcnow())
        with self._transaction() as conn:
            rows = conn.execute(
                """
                UPDATE assets
                SET status = 'uploading', last_attempt_at = ?
                WHERE id IN (
                    SELECT id FROM assets
                    WHERE (status = 'pending' OR (status = 'failed' AND retries < ?))
                      AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
                    ORDER BY id ASC
                    LIMIT ?
                )
                RETURNING *
                """,
                (ts, max_retries, ts, limit),
            ).fetchall()
        assets = [_row_to_asset(row) for row in rows]
        assets.sort(key=lambda a: a.id)
        return assets

    def mark_uploaded(self, asset_id: int, server_id: str) -> bool:
        """Record a successful upload. Returns False if the row is gone or already uploaded."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets
                SET status = 'uploaded', server_id = ?, next_attempt_at = NULL, last_error = NULL
                WHERE id = ? AND server_id IS NULL
                """,
                (server_id, asset_id),
            )
            return cursor.rowcount > 0

    def mark_failed(self, asset_id: int, error: str | None = None) -> bool:
        """Mark an asset as terminally failed. Returns False if the row is gone."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets
                SET status = 'failed', next_attempt_at = NULL, last_error = ?
                WHERE id = ? AND status != 'uploaded'
                """,
                (error, asset_id),
            )
            return cursor.rowcount > 0

    def set_pending(
        self,
        asset_id: int,
        next_attempt_at: datetime | None = None,
        error: str | None = None,
    ) -> bool:
        """Return an asset to the eligible pool, optionally not before next_attempt_at."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets
                SET status = 'pending', next_attempt_at = ?, last_error = COALESCE(?, last_error)
                WHERE id = ? AND status != 'uploaded'
                """,
                (_to_iso(next_attempt_at), error, asset_id),
            )
            return cursor.rowcount > 0

    def increment_retry_capped(self, asset_id: int, max_retries: int) -> int | None:
        """Increment the retry counter without exceeding max_retries.

        Returns:
            The new retry count (unchanged when already at the cap), or
            None when the asset no longer exists
        """
        with self._transaction() as conn:
            conn.execute(
                "UPDATE assets SET retries = retries + 1 WHERE id = ? AND retries < ?",
                (asset_id, max_retries),
            )
            row = conn.execute("SELECT retries FROM assets WHERE id = ?", (asset_id,)).fetchone()
        return int(row["retries"]) if row else None

    def reset_stuck_uploading(self, exclude: Iterable[int] = ()) -> int:
        """Return 'uploading' assets to 'pending'.

        Args:
            exclude: IDs of uploads known to be in flight, left untouched

        Returns:
            Number of rows reset
        """
        excluded = list(exclude)
        query = "UPDATE assets SET status = 'pending' WHERE status = 'uploading'"
        if excluded:
            placeholders = ",".join("?" for _ in excluded)
            query += f" AND id NOT IN ({placeholders})"
        with self._transaction() as conn:
            cursor = conn.execute(query, excluded)
            return cursor.rowcount

    def release_reserved(self, asset_ids: Iterable[int]) -> int:
        """Return reserved assets that never finished an attempt to 'pending'.

        Only rows still in 'uploading' are touched, so a result recorded in
        the meantime is kept. Returns the number of rows released.
        """
        ids = list(asset_ids)
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE assets SET status = 'pending' WHERE status = 'uploading' AND id IN ({placeholders})",
                ids,
            )
            return cursor.rowcount

    def reset_stale_uploading(
        self,
        older_than: timedelta = STALE_UPLOADING_THRESHOLD,
        now: datetime | None = None,
    ) -> int:
        """Return assets stuck in 'uploading' for longer than older_than to 'pending'.

        Run at startup to recover uploads interrupted by a crash.

        Returns:
            Number of rows reset
        """
        cutoff = _to_iso((now or _utcnow()) - older_than)
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets SET status = 'pending'
                WHERE status = 'uploading'
                  AND (last_attempt_at IS NULL OR last_attempt_at < ?)
                """,
                (cutoff,),
            )
            return cursor.rowcount

    def reset_asset(self, asset_id: int) -> bool:
        """Explicitly reset one asset to 'pending' with a fresh retry budget.

        Uploaded assets and uploads in flight are left untouched. Returns True
        if a row was reset.
        """
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets
                SET status = 'pending', retries = 0, next_attempt_at = NULL
                WHERE id = ? AND status IN ('pending', 'failed')
                """,
                (asset_id,),
            )
            return cursor.rowcount > 0

    def reset_failed_assets(self) -> int:
        """Reset every failed asset to 'pending' with a fresh retry budget."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE assets
                SET status = 'pending', retries = 0, next_attempt_at = NULL
                WHERE status = 'failed'
                """
            )
            return cursor.rowcount

    def delete_asset(self, asset_id: int) -> bool:
        """Delete an asset regardless of its status."""
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM assets WHERE id = ?", (asset_id,))
            return cursor.rowcount > 0

    def cleanup_uploaded(self, days: int = 7) -> int:
        """Remove uploaded assets created more than N days ago.

        Returns:
            Number of assets removed
        """
        cutoff = _to_iso(_utcnow() - timedelta(days=days))
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM assets WHERE status = 'uploaded' AND created_at < ?",
                (cutoff,),
            )
            return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()


def _row_to_asset(row: sqlite3.Row) -> AssetRecord:
    return AssetRecord(
        id=row["id"],
        client_key=row["client_key"],
        filename=row["filename"],
        mime_type=row["mime_type"],
        captured_at=_from_iso(row["captured_at"]),
        status=AssetStatus(row["status"]),
        retries=row["retries"],
        server_id=row["server_id"],
        last_attempt_at=_from_iso(row["last_attempt_at"]),
        next_attempt_at=_from_iso(row["next_attempt_at"]),
        last_error=row["last_error"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        data=row["data"],
        uri=row["uri"],
        file_size_bytes=row["file_size_bytes"],
        user_id=row["user_id"],
        username=row["username"],
        category=row["category"] or "Site",
        created_at=_from_iso(row["created_at"]),
    )
