"""
Background reconciliation of the offline sample submission queue.

A pass prunes expired SYNCED items, then walks PENDING and FAILED items
one at a time, oldest first:

    PENDING/FAILED -> SYNCING -> SYNCED
                              -> FAILED (retry_count + 1)

Only one pass runs at a time across every process sharing the queue; a
pass requested while another is in flight does nothing. Passes run on a fixed interval and whenever
connectivity comes back (notify_online).
"""

import logging
import threading
from contextlib import contextmanager
from typing import Dict, Optional

from collector.client.booking_api import BookingApiClient
from collector.client.errors import ApiRequestError, get_api_error_message
from collector.client.queue import SampleSubmissionQueue
from collector.config import settings
from collector.models.schemas import QueuedSampleSubmission, SyncState
from collector.observability.telemetry import capture_observed_error

logger = logging.getLogger(__name__)


class SampleSubmissionSyncer:
    """
    Drains the submission queue into the booking API.

    Usage:
        syncer = SampleSubmissionSyncer(queue, booking_client)
        syncer.start()          # interval passes in a daemon thread
        syncer.notify_online()  # connectivity is back, sync now
    """

    def __init__(
        self,
        queue: SampleSubmissionQueue,
        booking_client: BookingApiClient,
        interval_s: Optional[float] = None,
        retention_s: Optional[float] = None,
    ):
        self.queue = queue
        self.booking_client = booking_client
        self.interval_s = settings.queue_sync_interval_s if interval_s is None else interval_s
        self.retention_s = settings.queue_synced_retention_s if retention_s is None else retention_s

        # In-process half of the single-slot guard; the queue holds the cross-process half
        self._pass_lock = threading.Lock()
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_syncing(self) -> bool:
        return self._pass_lock.locked()

    @contextmanager
    def _exclusive_pass(self):
        """Yields True when this caller owns the reconciliation slot."""
        if not self._pass_lock.acquire(blocking=False):
            yield False
            return
        try:
            if not self.queue.try_acquire_pass():
                yield False
                return
            try:
                yield True
            finally:
                self.queue.release_pass()
        finally:
            self._pass_lock.release()

    def recover_interrupted(self) -> int:
        """
        Items left SYNCING by a crashed process go back to PENDING.

        Skipped while another pass owns the queue, since its SYNCING items
        are still in flight.
        """
        with self._exclusive_pass() as owned:
            if not owned:
                return 0
            recovered = 0
            for item in self.queue.get_all():
                if item.state == SyncState.SYNCING:
                    self.queue.update(item.id, state=SyncState.PENDING)
                    recovered += 1
        if recovered:
            logger.info(f"Recovered {recovered} interrupted submission(s)")
        return recovered

    def reconcile(self) -> Optional[Dict[str, int]]:
        """
        Run one reconciliation pass.

        Returns the queue summary afterwards, or None when another pass
        was already in flight, here or in another process.
        """
        with self._exclusive_pass() as owned:
            if not owned:
                logger.debug("Reconciliation already in progress, skipping")
                return None

            pruned = self.queue.prune_synced(self.retention_s)
            if pruned:
                logger.info(f"Pruned {pruned} synced submission(s)")

            for item in self.queue.pending_items():
                if self._stop.is_set():
                    break
                self._sync_item(item)

            return self.queue.summary()

    def retry_item(self, item_id: str) -> Optional[QueuedSampleSubmission]:
        """
        Manually retry one queued item under the same single-pass guard.

        Returns the item as stored afterwards, or None when the item is
        unknown or a pass is already in flight.
        """
        with self._exclusive_pass() as owned:
            if not owned:
                logger.debug("Reconciliation in progress, manual retry skipped")
                return None

            item = self.queue.get(item_id)
            if item is None or item.state == SyncState.SYNCED:
                return item
            self._sync_item(item)
            return self.queue.get(item_id)

    def _sync_item(self, item: QueuedSampleSubmission) -> bool:
        self.queue.update(item.id, state=SyncState.SYNCING)
        logger.info(
            f"Syncing submission {item.id} (booking {item.booking_id}, attempt {item.retry_count + 1})"
        )

        try:
            self.booking_client.submit_sample_collection(
                item.api_booking_id,
                item.updates,
                event_id=item.event_id,
                collected_at=item.collected_at,
            )
        except ApiRequestError as e:
            message = get_api_error_message(e)
            self.queue.update(
                item.id,
                state=SyncState.FAILED,
                retry_count=item.retry_count + 1,
                last_error_message=message,
            )
            logger.warning(f"Submission {item.id} failed to sync: {message}")
            return False

        self.queue.update(item.id, state=SyncState.SYNCED, last_error_message=None)
        logger.info(f"Submission {item.id} synced")
        return True

    # =========================================================================
    # Scheduling
    # =========================================================================

    def notify_online(self) -> Optional[Dict[str, int]]:
        """Connectivity is back. Wakes the worker, or syncs inline when there is none."""
        if self.is_running:
            self._wake.set()
            return None
        return self.reconcile()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self.recover_interrupted()
        self._thread = threading.Thread(
            target=self._run, name="sample-submission-sync", daemon=True
        )
        self._thread.start()
        logger.info(f"Submission sync started (interval={self.interval_s}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Submission sync stopped")

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.reconcile()
            except Exception as e:
                capture_observed_error(e, area="sample_submission_sync")
            self._wake.wait(self.interval_s)
            self._wake.clear()


# =============================================================================
# Run
# =============================================================================

def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    syncer = SampleSubmissionSyncer(SampleSubmissionQueue(), BookingApiClient())
    syncer.start()
    try:
        while syncer.is_running:
            syncer._thread.join(1.0)
    except KeyboardInterrupt:
        syncer.stop()


if __name__ == "__main__":
    main()
