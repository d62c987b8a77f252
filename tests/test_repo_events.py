"""
Tests for repo_events.EventRepo against a mocked psycopg connection.

These check the SQL contract (single conditional upsert, one commit per
upload, cursor clause) without a running PostgreSQL.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

import repo_events
from fakes import DEVICE, NOW, USER, make_event
from repo_events import EVENT_COLUMNS, EventRepo, build_upsert


@pytest.fixture
def conn(monkeypatch):
    conn = MagicMock()
    conn.__enter__.return_value = conn
    cur = MagicMock()
    cur.__enter__.return_value = cur
    conn.cursor.return_value = cur
    conn.cur = cur
    monkeypatch.setattr(repo_events, "get_conn", lambda: conn)
    return conn


def executed_sql(cur):
    return [c.args[0] for c in cur.execute.call_args_list]


class TestBuildUpsert:
    def test_placeholder_count(self):
        sql = build_upsert(3)
        assert sql.count("%s") == 3 * len(EVENT_COLUMNS)

    def test_database_arbitrates_version(self):
        sql = build_upsert(1)
        assert "ON CONFLICT (id) DO UPDATE" in sql
        assert "WHERE events.timestamp < EXCLUDED.timestamp" in sql
        assert "events.user_id = EXCLUDED.user_id" in sql
        assert sql.rstrip().endswith("RETURNING id")


class TestApplyUpload:
    def test_counts_rows_returned_by_upsert(self, conn):
        conn.cur.fetchall.return_value = [("a",)]
        events = [make_event(), make_event(timestamp=NOW - 1)]
        written = EventRepo().apply_upload(
            USER, DEVICE, events, 2, datetime.now(timezone.utc)
        )
        assert written == 1

        sql = executed_sql(conn.cur)
        assert sql[0].startswith("INSERT INTO events")
        assert "INSERT INTO sync_records" in sql[1]
        assert "UPDATE users" in sql[2]
        assert "UPDATE devices" in sql[3]
        conn.commit.assert_called_once()

        params = conn.cur.execute.call_args_list[0].args[1]
        assert len(params) == 2 * len(EVENT_COLUMNS)
        assert params[1] == USER and params[2] == DEVICE

    def test_nothing_to_write_still_records_sync(self, conn):
        written = EventRepo().apply_upload(USER, DEVICE, [], 1, datetime.now(timezone.utc))
        assert written == 0
        sql = executed_sql(conn.cur)
        assert not any(s.startswith("INSERT INTO events") for s in sql)
        assert "INSERT INTO sync_records" in sql[0]


class TestReads:
    def test_fetch_existing_maps_by_id(self, conn):
        conn.cur.fetchall.return_value = [("e1", NOW, "ciphertext")]
        existing = EventRepo().fetch_existing(USER, ["e1", "e2"])
        assert existing == {"e1": {"id": "e1", "timestamp": NOW, "encrypted_data": "ciphertext"}}
        assert conn.cur.execute.call_args.args[1] == (["e1", "e2"], USER)

    def test_fetch_since_with_cursor(self, conn):
        conn.cur.fetchall.return_value = [
            ("e1", "app_usage", NOW, 10, "data", "n" * 24, None, None, "work", None),
        ]
        events = EventRepo().fetch_since(USER, 100, 11)
        sql, params = conn.cur.execute.call_args.args
        assert "timestamp > %s" in sql
        assert "ORDER BY timestamp ASC LIMIT %s" in sql
        assert params == [USER, 100, 11]
        assert events[0].tag == ""
        assert events[0].category == "work"

    def test_fetch_since_without_cursor(self, conn):
        conn.cur.fetchall.return_value = []
        EventRepo().fetch_since(USER, None, 101)
        sql, params = conn.cur.execute.call_args.args
        assert "timestamp >" not in sql
        assert params == [USER, 101]

    def test_fetch_since_zero_cursor_scans_everything(self, conn):
        conn.cur.fetchall.return_value = []
        EventRepo().fetch_since(USER, 0, 101)
        sql, params = conn.cur.execute.call_args.args
        assert "timestamp >" not in sql
        assert params == [USER, 101]

    def test_get_device(self, conn):
        conn.cur.fetchone.return_value = (DEVICE, USER, True, None)
        device = EventRepo().get_device(DEVICE)
        assert device.owner_id == USER and device.active is True

    def test_get_device_missing(self, conn):
        conn.cur.fetchone.return_value = None
        assert EventRepo().get_device("ghost") is None

    def test_fetch_user_and_count(self, conn):
        conn.cur.fetchone.side_effect = [(USER, None), (7,)]
        repo = EventRepo()
        assert repo.fetch_user(USER) == {"id": USER, "last_sync_at": None}
        assert repo.count_events(USER) == 7
