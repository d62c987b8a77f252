"""
Repository: SQL operations for `events`, `devices`, `users` and
`sync_records`.

This file contains only DB interaction code. It maps Pydantic models
to SQL parameters and converts DB rows back to models or plain dicts.
Keep business rules (validation, conflict partitioning) out of this module.

Important notes:
- SQL uses positional `%s` parameters for psycopg.
- Event timestamps are stored as BIGINT epoch milliseconds, which is the
  row version compared by the upsert.
- `apply_upload` runs the event upsert and the audit/last-sync updates on
  one connection, i.e. in one transaction: either all of it commits or
  none of it does.
- The upsert carries its own `WHERE events.timestamp < EXCLUDED.timestamp`
  guard, so under concurrent writers the database decides the winner.
"""

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from db import get_conn
from models import Device, Event

EVENT_COLUMNS = (
    "id", "user_id", "device_id", "event_type", "timestamp", "duration",
    "encrypted_data", "nonce", "tag", "app_name", "category", "domain",
)

UPSERT_TAIL = """
ON CONFLICT (id) DO UPDATE SET
    device_id = EXCLUDED.device_id,
    event_type = EXCLUDED.event_type,
    timestamp = EXCLUDED.timestamp,
    duration = EXCLUDED.duration,
    encrypted_data = EXCLUDED.encrypted_data,
    nonce = EXCLUDED.nonce,
    tag = EXCLUDED.tag,
    app_name = EXCLUDED.app_name,
    category = EXCLUDED.category,
    domain = EXCLUDED.domain,
    synced_at = CURRENT_TIMESTAMP
WHERE events.timestamp < EXCLUDED.timestamp
  AND events.user_id = EXCLUDED.user_id
RETURNING id
"""


def build_upsert(row_count: int) -> str:
    """Build a single multi-row INSERT ... ON CONFLICT statement."""

    placeholders = "(" + ", ".join(["%s"] * len(EVENT_COLUMNS)) + ")"
    values = ", ".join([placeholders] * row_count)
    return (
        "INSERT INTO events (" + ", ".join(EVENT_COLUMNS) + ") VALUES "
        + values + UPSERT_TAIL
    )


class EventRepo:
    """DB access only. No business logic here.

    Responsibilities:
    - Map `Event` -> SQL parameters
    - Execute queries and return models or plain dict objects
    - Keep transaction/commit boundaries local and explicit
    """

    def get_device(self, device_id: str) -> Optional[Device]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, user_id, is_active, last_seen_at FROM devices WHERE id = %s",
                    (device_id,),
                )
                row = cur.fetchone()
        if row is None:
            return None
        return Device(id=row[0], owner_id=row[1], active=row[2], last_seen_at=row[3])

    def fetch_existing(self, user_id: str, event_ids: List[str]) -> Dict[str, Dict[str, Any]]:
        """Return stored versions of `event_ids` owned by `user_id`, keyed by id."""

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, timestamp, encrypted_data FROM events "
                    "WHERE id = ANY(%s) AND user_id = %s",
                    (list(event_ids), user_id),
                )
                rows = cur.fetchall()
        return {
            r[0]: {"id": r[0], "timestamp": int(r[1]), "encrypted_data": r[2]}
            for r in rows
        }

    def apply_upload(
        self,
        user_id: str,
        device_id: str,
        events: List[Event],
        received_count: int,
        started_at: datetime,
    ) -> int:
        """Upsert `events` and record the sync in one transaction.

        Returns the number of rows the database actually inserted or
        updated; rows whose stored version is not older are left alone
        and not counted.
        """

        written = 0
        with get_conn() as conn:
            with conn.cursor() as cur:
                if events:
                    params: List[Any] = []
                    for e in events:
                        params.extend((
                            e.id, user_id, device_id, e.event_type, e.timestamp,
                            e.duration, e.encrypted_data, e.nonce, e.tag,
                            e.app_name, e.category, e.domain,
                        ))
                    cur.execute(build_upsert(len(events)), params)
                    written = len(cur.fetchall())
                self._record_sync(cur, user_id, device_id, "upload", received_count, started_at)
            conn.commit()
        return written

    def fetch_since(self, user_id: str, since: Optional[int], limit: int) -> List[Event]:
        """Fetch up to `limit` events newer than `since`, oldest first."""

        query = (
            "SELECT id, event_type, timestamp, duration, encrypted_data, nonce, tag, "
            "app_name, category, domain FROM events WHERE user_id = %s"
        )
        params: List[Any] = [user_id]
        # 0 is the initial cursor handed out for an empty store; it matches every row
        if since:
            query += " AND timestamp > %s"
            params.append(since)
        query += " ORDER BY timestamp ASC LIMIT %s"
        params.append(limit)

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                rows = cur.fetchall()
        return [
            Event(
                id=r[0],
                event_type=r[1],
                timestamp=int(r[2]),
                duration=r[3],
                encrypted_data=r[4],
                nonce=r[5],
                tag=r[6] or "",
                app_name=r[7],
                category=r[8],
                domain=r[9],
            )
            for r in rows
        ]

    def record_download(
        self, user_id: str, device_id: str, sent_count: int, started_at: datetime
    ) -> None:
        with get_conn() as conn:
            with conn.cursor() as cur:
                self._record_sync(cur, user_id, device_id, "download", sent_count, started_at)
            conn.commit()

    def fetch_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT id, last_sync_at FROM users WHERE id = %s", (user_id,))
                row = cur.fetchone()
        if row is None:
            return None
        return {"id": row[0], "last_sync_at": row[1]}

    def count_events(self, user_id: str) -> int:
        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM events WHERE user_id = %s", (user_id,))
                return int(cur.fetchone()[0])

    def ping(self) -> None:
        """Lightweight DB health check. Raises on error."""

        with get_conn() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")

    @staticmethod
    def _record_sync(cur, user_id, device_id, sync_type, count, started_at) -> None:
        cur.execute(
            "INSERT INTO sync_records "
            "(id, user_id, device_id, sync_type, events_count, status, start_time, end_time) "
            "VALUES (%s, %s, %s, %s, %s, 'success', %s, %s)",
            (
                str(uuid.uuid4()), user_id, device_id, sync_type, count,
                started_at, datetime.now(timezone.utc),
            ),
        )
        cur.execute(
            "UPDATE users SET last_sync_at = CURRENT_TIMESTAMP WHERE id = %s", (user_id,)
        )
        cur.execute(
            "UPDATE devices SET last_seen_at = CURRENT_TIMESTAMP WHERE id = %s", (device_id,)
        )
