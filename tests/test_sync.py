"""
Tests for background reconciliation of queued submissions.
"""

import threading
from unittest.mock import MagicMock

import pytest

from collector.client.booking_api import BookingApiClient
from collector.client.errors import NETWORK_ERROR_MESSAGE, ApiRequestError
from collector.client.queue import JsonFileQueueStore, SampleSubmissionQueue
from collector.client.sync import SampleSubmissionSyncer
from collector.models.schemas import BookingPatientUpdate, SyncState


def push(queue, booking_id="BH-1"):
    return queue.push(
        booking_id=booking_id,
        api_booking_id=1,
        updates=[BookingPatientUpdate(current_patient_id="PT-1", national_id="784199012345671")],
        event_id=f"evt_sample_{booking_id}_1700000000000",
        collected_at="2024-05-01T08:30:00.000Z",
    )


@pytest.fixture
def booking_client():
    return MagicMock(spec=BookingApiClient)


@pytest.fixture
def syncer(memory_queue, booking_client):
    return SampleSubmissionSyncer(memory_queue, booking_client, interval_s=0.05, retention_s=300)


class TestReconcile:
    def test_pending_item_synced(self, syncer, memory_queue, booking_client):
        """Test a PENDING item passes through SYNCING to SYNCED."""
        item = push(memory_queue)
        seen_states = []
        booking_client.submit_sample_collection.side_effect = (
            lambda *args, **kwargs: seen_states.append(memory_queue.get(item.id).state)
        )

        summary = syncer.reconcile()

        assert seen_states == [SyncState.SYNCING]
        assert memory_queue.get(item.id).state == SyncState.SYNCED
        assert summary["synced"] == 1

    def test_same_event_id_sent(self, syncer, memory_queue, booking_client):
        """Test the stored event id is sent."""
        item = push(memory_queue)

        syncer.reconcile()

        args, kwargs = booking_client.submit_sample_collection.call_args
        assert args[0] == 1
        assert args[1] == item.updates
        assert kwargs["event_id"] == item.event_id
        assert kwargs["collected_at"] == item.collected_at

    def test_failure_increments_retry(self, syncer, memory_queue, booking_client):
        """Test each failure increments the retry count."""
        item = push(memory_queue)
        booking_client.submit_sample_collection.side_effect = ApiRequestError("offline", is_network_error=True)

        syncer.reconcile()
        syncer.reconcile()

        failed = memory_queue.get(item.id)
        assert failed.state == SyncState.FAILED
        assert failed.retry_count == 2
        assert failed.last_error_message == NETWORK_ERROR_MESSAGE

    def test_failed_item_recovers(self, syncer, memory_queue, booking_client):
        """Test a FAILED item syncs on a later pass."""
        item = push(memory_queue)
        booking_client.submit_sample_collection.side_effect = [ApiRequestError("offline", is_network_error=True), None]

        syncer.reconcile()
        syncer.reconcile()

        synced = memory_queue.get(item.id)
        assert synced.state == SyncState.SYNCED
        assert synced.last_error_message is None
        assert synced.retry_count == 1

    def test_items_processed_oldest_first(self, syncer, memory_queue, booking_client):
        """Test items are sent oldest first."""
        push(memory_queue, "BH-1")
        push(memory_queue, "BH-2")
        order = []
        booking_client.submit_sample_collection.side_effect = (
            lambda *args, **kwargs: order.append(kwargs["event_id"])
        )

        syncer.reconcile()

        assert order == ["evt_sample_BH-1_1700000000000", "evt_sample_BH-2_1700000000000"]

    def test_synced_items_not_resent(self, syncer, memory_queue, booking_client):
        """Test SYNCED items are not sent again."""
        push(memory_queue)

        syncer.reconcile()
        syncer.reconcile()

        assert booking_client.submit_sample_collection.call_count == 1

    def test_concurrent_pass_is_noop(self, syncer, memory_queue, booking_client):
        """Test a pass requested during another pass does nothing."""
        push(memory_queue)
        entered, release = threading.Event(), threading.Event()

        def slow_submit(*args, **kwargs):
            entered.set()
            release.wait(2)

        booking_client.submit_sample_collection.side_effect = slow_submit
        worker = threading.Thread(target=syncer.reconcile)
        worker.start()
        entered.wait(2)

        assert syncer.is_syncing
        assert syncer.reconcile() is None

        release.set()
        worker.join(2)
        assert booking_client.submit_sample_collection.call_count == 1


class TestRecovery:
    def test_interrupted_items_reset(self, syncer, memory_queue):
        """Test SYNCING items left by a crash go back to PENDING."""
        item = push(memory_queue)
        memory_queue.update(item.id, state=SyncState.SYNCING)

        assert syncer.recover_interrupted() == 1
        assert memory_queue.get(item.id).state == SyncState.PENDING

    def test_manual_retry(self, syncer, memory_queue, booking_client):
        """Test a manual retry of one item."""
        item = push(memory_queue)
        memory_queue.update(item.id, state=SyncState.FAILED, retry_count=3)

        retried = syncer.retry_item(item.id)

        assert retried.state == SyncState.SYNCED
        assert syncer.retry_item("unknown") is None


class TestScheduling:
    def test_notify_online_without_worker_syncs_inline(self, syncer, memory_queue):
        """Test coming online without a worker syncs inline."""
        item = push(memory_queue)

        summary = syncer.notify_online()

        assert summary["synced"] == 1
        assert memory_queue.get(item.id).state == SyncState.SYNCED

    def test_background_worker(self, memory_queue, booking_client):
        """Test the background worker syncs when woken."""
        syncer = SampleSubmissionSyncer(memory_queue, booking_client, interval_s=60)
        synced = threading.Event()
        booking_client.submit_sample_collection.side_effect = lambda *a, **k: synced.set()

        syncer.start()
        try:
            assert syncer.is_running
            push(memory_queue)
            syncer.notify_online()
            assert synced.wait(2)
        finally:
            syncer.stop(timeout=2)

        assert not syncer.is_running


class TestSharedQueueFile:
    """Tests for a sync worker sharing the queue file with another process."""

    def test_pass_skipped_while_other_instance_owns_slot(self, tmp_path, booking_client):
        """Test no item is sent while another queue instance holds the reconciliation slot."""
        path = tmp_path / "queue.json"
        other = SampleSubmissionQueue(JsonFileQueueStore(path))
        queue = SampleSubmissionQueue(JsonFileQueueStore(path))
        item = push(queue)
        queue.update(item.id, state=SyncState.SYNCING)
        syncer = SampleSubmissionSyncer(queue, booking_client)

        assert other.try_acquire_pass()
        try:
            assert syncer.reconcile() is None
            assert syncer.recover_interrupted() == 0
        finally:
            other.release_pass()

        booking_client.submit_sample_collection.assert_not_called()
        assert syncer.recover_interrupted() == 1
        assert syncer.reconcile()["synced"] == 1
