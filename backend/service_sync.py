"""
Service / facade layer for device sync.

This module implements the sync rules before and around any DB
interaction. It is free of SQL: it calls `EventRepo` for persistence and
`OwnershipCache` for the device admission check. Every route goes
through this service so validation, ownership and conflict handling
happen in one place.

Key responsibilities:
- protect the system (batch size, download page size)
- validate event semantics (type/category enums, ranges, payload sizes)
- confirm device ownership before touching any event
- partition an upload into writes and conflicts (last-write-wins)
- translate store failures into `DatabaseError`
- invalidate the device cache entry after each successful write

The conflict partition is advisory for the current request. The upsert
in `EventRepo.apply_upload` re-checks the version inside the database,
so `processed_count` always reports what was really written.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import psycopg

from cache_devices import OwnershipCache
from errors import DatabaseError, NotFoundError, ValidationError
from models import (
    ConflictRecord,
    DownloadResult,
    Event,
    ServerVersion,
    SyncStatus,
    UploadResult,
)
from repo_events import EventRepo
from settings import settings

logger = logging.getLogger(__name__)


EVENT_TYPES = {
    "app_usage",
    "web_activity",
    "file_activity",
    "communication",
}

CATEGORIES = {
    "work",
    "communication",
    "entertainment",
    "learning",
    "utility",
    "other",
}

MAX_DURATION_SECONDS = 86400
MAX_ENCRYPTED_BYTES = 1024 * 1024
NONCE_LENGTH = 24
TAG_LENGTH = 24
MAX_TEXT_FIELD = 255


def now_ms() -> int:
    return int(time.time() * 1000)


def to_ms(value: Optional[datetime]) -> Optional[int]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except (ValueError, AttributeError, TypeError):
        return False
    return True


def validate_event(e: Event, now: int, prefix: str = "") -> Dict[str, str]:
    """Return a field -> message map of everything wrong with `e`."""

    errors: Dict[str, str] = {}
    if not _is_uuid(e.id):
        errors[prefix + "id"] = "Invalid event ID format"
    if e.event_type not in EVENT_TYPES:
        errors[prefix + "event_type"] = "Invalid event type"
    if e.timestamp < 0:
        errors[prefix + "timestamp"] = "Timestamp cannot be negative"
    elif e.timestamp > now + settings.clock_skew_ms:
        errors[prefix + "timestamp"] = "Timestamp cannot be in the future (more than 1 minute)"
    if e.duration < 0:
        errors[prefix + "duration"] = "Duration cannot be negative"
    elif e.duration > MAX_DURATION_SECONDS:
        errors[prefix + "duration"] = "Duration cannot exceed 24 hours (86400 seconds)"
    if len(e.encrypted_data) > MAX_ENCRYPTED_BYTES:
        errors[prefix + "encrypted_data"] = "Encrypted data cannot exceed 1MB"
    if len(e.nonce) != NONCE_LENGTH:
        errors[prefix + "nonce"] = f"Nonce must be {NONCE_LENGTH} characters"
    if len(e.tag) != TAG_LENGTH:
        errors[prefix + "tag"] = f"Auth tag must be {TAG_LENGTH} characters"
    if e.category is not None and e.category not in CATEGORIES:
        errors[prefix + "category"] = "Invalid category"
    if e.app_name is not None and len(e.app_name) > MAX_TEXT_FIELD:
        errors[prefix + "app_name"] = f"App name cannot exceed {MAX_TEXT_FIELD} characters"
    if e.domain is not None and len(e.domain) > MAX_TEXT_FIELD:
        errors[prefix + "domain"] = f"Domain cannot exceed {MAX_TEXT_FIELD} characters"
    return errors


def partition_batch(
    events: List[Event], existing: Dict[str, dict]
) -> Tuple[List[Event], List[ConflictRecord]]:
    """Split a batch against the stored versions.

    - no stored row: write (insert)
    - stored timestamp smaller: write (update)
    - stored timestamp larger: conflict, carrying the server snapshot
    - equal timestamps: skipped, neither written nor reported
    """

    writes: List[Event] = []
    conflicts: List[ConflictRecord] = []
    for e in events:
        stored = existing.get(e.id)
        if stored is None or stored["timestamp"] < e.timestamp:
            writes.append(e)
        elif stored["timestamp"] > e.timestamp:
            conflicts.append(ConflictRecord(
                event_id=e.id,
                server_version=ServerVersion(
                    id=stored["id"],
                    timestamp=stored["timestamp"],
                    encrypted_data=stored["encrypted_data"],
                ),
            ))
    return writes, conflicts


class SyncService:
    """Upload, download and status for one (owner, device) pair per call.

    Example usage:
        repo = EventRepo()
        cache = OwnershipCache(InMemoryCache(), repo, ttl=300)
        svc = SyncService(repo, cache)
        svc.upload_events(owner_id, device_id, events)
    """

    def __init__(self, repo: EventRepo, cache: OwnershipCache, clock=now_ms):
        self.repo = repo
        self.cache = cache
        self.clock = clock

    def upload_events(
        self,
        user_id: str,
        device_id: str,
        events: List[Event],
        last_sync_at: Optional[int] = None,
    ) -> UploadResult:
        """Validate and persist a batch of events with last-write-wins.

        Raises:
        - `ValidationError` if the batch or any event is invalid (nothing written)
        - `NotFoundError` if the device is unknown, inactive or foreign
        - `DatabaseError` if the store fails (the whole call may be retried)
        """

        started_at = datetime.now(timezone.utc)
        t0 = time.monotonic()

        # 1) protect the system, fail the whole batch before any write
        self._validate_upload(events, last_sync_at)

        logger.info(
            "Processing event upload user=%s device=%s events=%d last_sync_at=%s",
            user_id, device_id, len(events), last_sync_at,
        )

        try:
            # 2) ownership gate
            self.cache.verify_ownership(device_id, user_id)

            # 3) conflict detection against stored versions
            existing = self.repo.fetch_existing(user_id, [e.id for e in events])
            writes, conflicts = partition_batch(events, existing)

            # 4) one atomic upsert + audit, the database picks the winner
            processed = self.repo.apply_upload(
                user_id, device_id, writes, len(events), started_at
            )
        except psycopg.Error as exc:
            logger.error(
                "Event upload failed user=%s device=%s: %s", user_id, device_id, exc
            )
            raise DatabaseError("Failed to upload events") from exc

        # 5) next ownership lookup observes the refreshed last_seen_at
        self.cache.invalidate(device_id)

        logger.info(
            "Event upload completed user=%s device=%s processed=%d conflicts=%d duration_ms=%d",
            user_id, device_id, processed, len(conflicts),
            int((time.monotonic() - t0) * 1000),
        )
        return UploadResult(
            processed_count=processed, conflicts=conflicts, synced_at=self.clock()
        )

    def download_events(
        self,
        user_id: str,
        device_id: str,
        since: Optional[int] = None,
        limit: Optional[int] = None,
    ) -> DownloadResult:
        """Return the next page of events newer than `since`.

        `latest_timestamp` of the result is the cursor for the next call.
        """

        started_at = datetime.now(timezone.utc)
        if limit is None:
            limit = settings.default_download_limit
        self._validate_download(since, limit)

        logger.info(
            "Processing event download user=%s device=%s since=%s limit=%d",
            user_id, device_id, since, limit,
        )

        try:
            self.cache.verify_ownership(device_id, user_id)

            # one extra row tells us whether another page exists
            rows = self.repo.fetch_since(user_id, since, limit + 1)
            has_more = len(rows) > limit
            events = rows[:limit]

            self.repo.record_download(user_id, device_id, len(events), started_at)
        except psycopg.Error as exc:
            logger.error(
                "Event download failed user=%s device=%s: %s", user_id, device_id, exc
            )
            raise DatabaseError("Failed to download events") from exc

        self.cache.invalidate(device_id)

        latest = events[-1].timestamp if events else (since or 0)
        logger.info(
            "Event download completed user=%s device=%s events=%d has_more=%s",
            user_id, device_id, len(events), has_more,
        )
        return DownloadResult(events=events, has_more=has_more, latest_timestamp=latest)

    def get_sync_status(self, user_id: str, device_id: str) -> SyncStatus:
        """Report the account's last sync time and stored event count.

        `pending_count` is always 0: the server cannot see events a client
        has not uploaded yet.
        """

        try:
            self.cache.verify_ownership(device_id, user_id)

            user = self.repo.fetch_user(user_id)
            if user is None:
                raise NotFoundError("User not found")

            synced_count = self.repo.count_events(user_id)
        except psycopg.Error as exc:
            logger.error(
                "Failed to get sync status user=%s device=%s: %s", user_id, device_id, exc
            )
            raise DatabaseError("Failed to get sync status") from exc

        status = SyncStatus(
            device_id=device_id,
            last_sync_at=to_ms(user["last_sync_at"]),
            pending_count=0,
            synced_count=synced_count,
        )
        logger.debug(
            "Sync status retrieved user=%s device=%s last_sync_at=%s synced=%d",
            user_id, device_id, status.last_sync_at, synced_count,
        )
        return status

    def health_check(self) -> None:
        """Perform a lightweight DB ping via the repository."""

        self.repo.ping()

    # ── Validation ───────────────────────────────────────────────

    def _validate_upload(self, events: List[Event], last_sync_at: Optional[int]) -> None:
        if len(events) == 0:
            raise ValidationError(
                "At least one event is required", {"events": "At least one event is required"}
            )
        if len(events) > settings.max_upload_batch:
            message = f"Cannot upload more than {settings.max_upload_batch} events at once"
            raise ValidationError(message, {"events": message})

        fields: Dict[str, str] = {}
        if last_sync_at is not None and last_sync_at < 0:
            fields["last_sync_at"] = "Last sync timestamp cannot be negative"

        now = self.clock()
        seen = set()
        for i, e in enumerate(events):
            fields.update(validate_event(e, now, prefix=f"events.{i}."))
            if e.id in seen:
                fields[f"events.{i}.id"] = "Duplicate event ID in batch"
            seen.add(e.id)

        if fields:
            raise ValidationError("Request validation failed", fields)

    def _validate_download(self, since: Optional[int], limit: int) -> None:
        fields: Dict[str, str] = {}
        if since is not None and since < 0:
            fields["since"] = "Since timestamp cannot be negative"
        if limit < 1:
            fields["limit"] = "Limit must be at least 1"
        elif limit > settings.max_download_limit:
            fields["limit"] = f"Limit cannot exceed {settings.max_download_limit}"
        if fields:
            raise ValidationError("Query validation failed", fields)
