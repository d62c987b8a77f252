"""In-memory stand-ins used by the test suite."""

from __future__ import annotations

import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import psycopg

from models import Device, Event

NOW = 1_700_000_000_000
NONCE = "a1b2c3d4e5f6a1b2c3d4e5f6"
TAG = "dGFnLXRhZy10YWctdGFnLQ=="

USER = "user-1"
DEVICE = "device-1"
OTHER_USER = "user-2"
OTHER_DEVICE = "device-2"


def auth_headers(user_id: str = USER, device_id: str = DEVICE) -> dict:
    return {"X-User-Id": user_id, "X-Device-Id": device_id}


def make_event(event_id: Optional[str] = None, timestamp: int = NOW, **overrides: Any) -> Event:
    fields = {
        "id": event_id or str(uuid.uuid4()),
        "event_type": "app_usage",
        "timestamp": timestamp,
        "duration": 300,
        "encrypted_data": "ZW5jcnlwdGVkLWRhdGE=",
        "nonce": NONCE,
        "tag": TAG,
        "app_name": "VSCode",
        "category": "work",
    }
    fields.update(overrides)
    return Event(**fields)


def event_json(event_id: Optional[str] = None, timestamp: int = NOW, **overrides: Any) -> dict:
    return make_event(event_id, timestamp, **overrides).model_dump(exclude_none=True)


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRepo:
    """Mirrors `EventRepo`, including the conditional upsert semantics."""

    def __init__(self) -> None:
        self.users: Dict[str, Dict[str, Any]] = {}
        self.devices: Dict[str, Device] = {}
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.sync_records: List[Dict[str, Any]] = []
        self.device_lookups = 0
        self.fail_with: Optional[Exception] = None
        self._lock = threading.Lock()

    def add_user(self, user_id: str, last_sync_at: Optional[datetime] = None) -> None:
        self.users[user_id] = {"id": user_id, "last_sync_at": last_sync_at}

    def add_device(self, device_id: str, owner_id: str, active: bool = True) -> None:
        self.devices[device_id] = Device(id=device_id, owner_id=owner_id, active=active)

    def stored(self, event_id: str) -> Event:
        return self.rows[event_id]["event"]

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def get_device(self, device_id: str) -> Optional[Device]:
        self._maybe_fail()
        self.device_lookups += 1
        device = self.devices.get(device_id)
        return device.model_copy() if device is not None else None

    def fetch_existing(self, user_id: str, event_ids: List[str]) -> Dict[str, dict]:
        self._maybe_fail()
        out = {}
        for event_id in event_ids:
            row = self.rows.get(event_id)
            if row is not None and row["user_id"] == user_id:
                e = row["event"]
                out[event_id] = {
                    "id": e.id, "timestamp": e.timestamp, "encrypted_data": e.encrypted_data,
                }
        return out

    def apply_upload(self, user_id, device_id, events, received_count, started_at) -> int:
        self._maybe_fail()
        written = 0
        with self._lock:
            for e in events:
                row = self.rows.get(e.id)
                if row is None or (
                    row["user_id"] == user_id and row["event"].timestamp < e.timestamp
                ):
                    self.rows[e.id] = {"user_id": user_id, "device_id": device_id, "event": e}
                    written += 1
            self._record(user_id, device_id, "upload", received_count, started_at)
        return written

    def fetch_since(self, user_id: str, since: Optional[int], limit: int) -> List[Event]:
        self._maybe_fail()
        events = [
            r["event"] for r in self.rows.values()
            if r["user_id"] == user_id and (not since or r["event"].timestamp > since)
        ]
        events.sort(key=lambda e: e.timestamp)
        return events[:limit]

    def record_download(self, user_id, device_id, sent_count, started_at) -> None:
        self._maybe_fail()
        with self._lock:
            self._record(user_id, device_id, "download", sent_count, started_at)

    def fetch_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        self._maybe_fail()
        user = self.users.get(user_id)
        return dict(user) if user is not None else None

    def count_events(self, user_id: str) -> int:
        self._maybe_fail()
        return sum(1 for r in self.rows.values() if r["user_id"] == user_id)

    def ping(self) -> None:
        if self.fail_with is not None:
            raise psycopg.OperationalError("database unreachable")

    def _record(self, user_id, device_id, sync_type, count, started_at) -> None:
        now = datetime.now(timezone.utc)
        self.sync_records.append({
            "user_id": user_id, "device_id": device_id, "sync_type": sync_type,
            "events_count": count, "start_time": started_at, "end_time": now,
        })
        if user_id in self.users:
            self.users[user_id]["last_sync_at"] = now
        if device_id in self.devices:
            self.devices[device_id].last_seen_at = now
