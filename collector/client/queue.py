"""
Persisted offline queue of sample submissions.

A submission lands here when the live attempt fails for connectivity
reasons. The queue is the single source of truth for work that has not
reached the booking API yet, and must survive a restart.

Stored as a JSON array under a versioned name so the record shape can
change later by rotating the name.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, ContextManager, Dict, List, Optional, Protocol, Sequence

from filelock import FileLock, Timeout
from pydantic import ValidationError

from collector.config import settings
from collector.models.schemas import BookingPatientUpdate, QueuedSampleSubmission, SyncState

logger = logging.getLogger(__name__)

STORAGE_KEY = "sample-submission-queue.v1"

_REQUIRED_STRINGS = ("id", "bookingId", "eventId", "collectedAt", "createdAt")


class QueueStore(Protocol):
    """
    Raw persistence for the queue: a list of JSON-compatible records.

    lock() guards a read-modify-write against every other writer of the
    same store, including other processes. try_acquire_pass() claims the
    single reconciliation slot without blocking.
    """

    def read(self) -> List[Any]:
        ...

    def write(self, items: List[Dict[str, Any]]) -> None:
        ...

    def lock(self) -> ContextManager[Any]:
        ...

    def try_acquire_pass(self) -> bool:
        ...

    def release_pass(self) -> None:
        ...


class InMemoryQueueStore:
    """Non-durable store, for tests and previews."""

    def __init__(self, items: Optional[List[Any]] = None):
        self._raw = json.dumps(items or [])
        self._lock = threading.RLock()
        self._pass_lock = threading.Lock()

    def read(self) -> List[Any]:
        return json.loads(self._raw)

    def write(self, items: List[Dict[str, Any]]) -> None:
        self._raw = json.dumps(items)

    def lock(self) -> ContextManager[Any]:
        return self._lock

    def try_acquire_pass(self) -> bool:
        return self._pass_lock.acquire(blocking=False)

    def release_pass(self) -> None:
        self._pass_lock.release()


class JsonFileQueueStore:
    """
    JSON file store shared by every process on the device.

    Writes go through a temp file and an atomic replace. Mutations and
    reconciliation passes are serialized through lock files next to the
    queue file.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path or settings.queue_path)
        self._lock = FileLock(f"{self.path}.lock")
        self._pass_lock = FileLock(f"{self.path}.sync.lock")

    @contextmanager
    def lock(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            yield

    def try_acquire_pass(self) -> bool:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._pass_lock.acquire(timeout=0)
        except Timeout:
            return False
        return True

    def release_pass(self) -> None:
        self._pass_lock.release()

    def read(self) -> List[Any]:
        if not self.path.exists():
            return []
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Unreadable queue file {self.path}, starting empty: {e}")
            return []
        return data if isinstance(data, list) else []

    def write(self, items: List[Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(items, f, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            Path(tmp_path).unlink(missing_ok=True)
            raise


def _is_valid_record(item: Any) -> bool:
    if not isinstance(item, dict):
        return False
    if not all(isinstance(item.get(key), str) for key in _REQUIRED_STRINGS):
        return False
    api_booking_id = item.get("apiBookingId")
    if isinstance(api_booking_id, bool) or not isinstance(api_booking_id, (int, float)):
        return False
    if not isinstance(item.get("updates"), list):
        return False
    if not isinstance(item.get("retryCount"), int) or isinstance(item.get("retryCount"), bool):
        return False
    images = item.get("croppedDocumentImageBase64List")
    if images is not None and not (
        isinstance(images, list) and all(isinstance(entry, str) for entry in images)
    ):
        return False
    return item.get("state") in {state.value for state in SyncState}


def parse_stored_queue(raw: Any) -> List[QueuedSampleSubmission]:
    """Decode stored records, dropping anything malformed instead of failing."""
    if not isinstance(raw, list):
        return []

    items = []
    for record in raw:
        if not _is_valid_record(record):
            logger.warning("Dropping malformed queued submission")
            continue
        try:
            items.append(QueuedSampleSubmission.model_validate(record))
        except ValidationError as e:
            logger.warning(f"Dropping malformed queued submission: {e}")
    return items


def get_sync_summary(items: Sequence[QueuedSampleSubmission]) -> Dict[str, int]:
    summary = {"total": len(items), "pending": 0, "syncing": 0, "failed": 0, "synced": 0}
    for item in items:
        summary[item.state.value.lower()] += 1
    return summary


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def _parse_iso(value: str) -> Optional[datetime]:
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class SampleSubmissionQueue:
    """
    Read-modify-write access to the persisted queue.

    Every mutation re-reads the store under the store lock, so writers in
    other threads or processes never overwrite each other.
    """

    def __init__(self, store: Optional[QueueStore] = None):
        self.store = store or JsonFileQueueStore()
        self._lock = threading.RLock()

    def get_all(self) -> List[QueuedSampleSubmission]:
        with self._lock:
            return parse_stored_queue(self.store.read())

    @contextmanager
    def _locked(self):
        with self._lock, self.store.lock():
            yield

    def _save(self, items: Sequence[QueuedSampleSubmission]) -> None:
        self.store.write([item.to_wire() for item in items])

    def push(
        self,
        booking_id: str,
        api_booking_id: int,
        updates: Sequence[BookingPatientUpdate],
        event_id: str,
        collected_at: str,
        cropped_document_image_base64_list: Optional[List[str]] = None,
    ) -> QueuedSampleSubmission:
        """Enqueue a new PENDING submission at the head of the queue."""
        item = QueuedSampleSubmission(
            id=str(uuid.uuid4()),
            booking_id=booking_id,
            api_booking_id=api_booking_id,
            updates=list(updates),
            cropped_document_image_base64_list=cropped_document_image_base64_list,
            event_id=event_id,
            collected_at=collected_at,
            created_at=_iso(_utc_now()),
            retry_count=0,
            state=SyncState.PENDING,
        )
        with self._locked():
            items = self.get_all()
            self._save([item] + items)
        logger.info(f"Queued sample submission {item.id} for booking {booking_id}")
        return item

    def update(self, item_id: str, **changes) -> Optional[QueuedSampleSubmission]:
        """Apply field changes to one item by id. Returns the updated item."""
        with self._locked():
            items = self.get_all()
            updated = None
            for index, item in enumerate(items):
                if item.id == item_id:
                    updated = item.model_copy(update=changes)
                    items[index] = updated
                    break
            if updated is not None:
                self._save(items)
            return updated

    def get(self, item_id: str) -> Optional[QueuedSampleSubmission]:
        return next((item for item in self.get_all() if item.id == item_id), None)

    def pending_items(self) -> List[QueuedSampleSubmission]:
        """Items a reconciliation pass should attempt, oldest first."""
        items = [
            item for item in self.get_all()
            if item.state in (SyncState.PENDING, SyncState.FAILED)
        ]
        return list(reversed(items))

    def remove_synced(self) -> int:
        with self._locked():
            items = self.get_all()
            kept = [item for item in items if item.state != SyncState.SYNCED]
            self._save(kept)
            return len(items) - len(kept)

    def prune_synced(self, retention_s: Optional[float] = None, now: Optional[datetime] = None) -> int:
        """Drop SYNCED items created longer ago than the retention window."""
        retention = timedelta(
            seconds=settings.queue_synced_retention_s if retention_s is None else retention_s
        )
        now = now or _utc_now()

        def expired(item: QueuedSampleSubmission) -> bool:
            if item.state != SyncState.SYNCED:
                return False
            created_at = _parse_iso(item.created_at)
            return created_at is None or now - created_at > retention

        with self._locked():
            items = self.get_all()
            kept = [item for item in items if not expired(item)]
            if len(kept) != len(items):
                self._save(kept)
            return len(items) - len(kept)

    def retry_failed(self) -> int:
        """Move FAILED items back to PENDING for a manual retry."""
        with self._locked():
            items = self.get_all()
            count = 0
            for index, item in enumerate(items):
                if item.state == SyncState.FAILED:
                    items[index] = item.model_copy(update={"state": SyncState.PENDING})
                    count += 1
            if count:
                self._save(items)
            return count

    def summary(self) -> Dict[str, int]:
        return get_sync_summary(self.get_all())

    def try_acquire_pass(self) -> bool:
        """Claim the reconciliation slot shared by every process on this queue."""
        return self.store.try_acquire_pass()

    def release_pass(self) -> None:
        self.store.release_pass()
