"""
Pydantic models used across the backend.

`Event` is the wire shape of one encrypted activity record. It is used
both for upload bodies and download responses; field-level rules
(ranges, enums, payload sizes) live in `SyncService` so a bad event
fails the whole batch with one consistent `ValidationError`.

The remaining models are service results. Routes serialize them with
`model_dump()`, so field names here are the JSON keys clients see.
"""

from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class Event(BaseModel):
        """One encrypted activity record.

        Fields:
        - `id`: caller-supplied UUID, stable across devices and retries.
        - `event_type`: one of `EVENT_TYPES` (validated by `SyncService`).
        - `timestamp`: event time in epoch milliseconds; also the row version.
        - `duration`: seconds, 0..86400.
        - `encrypted_data`, `nonce`, `tag`: opaque ciphertext, never decrypted.
        - `app_name`, `category`, `domain`: optional plaintext index fields.
        """

        id: str
        event_type: str
        timestamp: int
        duration: int
        encrypted_data: str
        nonce: str
        tag: str
        app_name: Optional[str] = None
        category: Optional[str] = None
        domain: Optional[str] = None


class UploadRequest(BaseModel):
    events: List[Event]
    last_sync_at: Optional[int] = None


class Device(BaseModel):
    """Ownership view of a device as cached by `OwnershipCache`."""

    id: str
    owner_id: str
    active: bool = True
    last_seen_at: Optional[datetime] = None


class ServerVersion(BaseModel):
    id: str
    timestamp: int
    encrypted_data: str


class ConflictRecord(BaseModel):
    """An upload rejected because the server holds a newer version."""

    event_id: str
    server_version: ServerVersion


class UploadResult(BaseModel):
    processed_count: int
    conflicts: List[ConflictRecord] = Field(default_factory=list)
    synced_at: int


class DownloadResult(BaseModel):
    events: List[Event] = Field(default_factory=list)
    has_more: bool
    latest_timestamp: int


class SyncStatus(BaseModel):
    device_id: str
    last_sync_at: Optional[int] = None
    pending_count: int = 0
    synced_count: int
