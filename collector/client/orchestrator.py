"""
LangGraph workflow for submitting a sample collection.

validate -> submit -> END                 (synced, or business error surfaced)
                   -> enqueue -> END      (connectivity lost: saved offline)

Validation failures and backend business errors never reach the queue;
they are raised to the caller as SampleSubmissionError. Only network
failures of the live attempt are persisted for background sync.
"""

import asyncio
import logging
from datetime import datetime, timezone
from functools import partial
from typing import List, Literal, Optional, Sequence

from langgraph.graph import StateGraph, END

from collector.client.booking_api import BookingApiClient
from collector.client.errors import (
    ApiRequestError,
    build_issue_report_link,
    get_api_error_code,
    get_api_error_id,
    get_api_error_message,
    get_missing_patient_ids,
    get_sample_submission_error,
)
from collector.client.mappers import map_collector_booking_to_row
from collector.client.queue import SampleSubmissionQueue
from collector.client.reconciler import (
    build_patient_updates,
    merge_missing_national_ids_from_document,
    missing_national_id_patient_ids,
)
from collector.client.state import SubmissionState
from collector.client.sync import SampleSubmissionSyncer
from collector.models.schemas import (
    BookingPatientForm,
    BookingRow,
    DocumentMode,
    ErrorReason,
    ProcessedDocumentPayload,
    SubmissionSyncState,
    SubmitSampleCollectionResult,
    SyncState,
    UpdateBookingPatientsResponse,
)

logger = logging.getLogger(__name__)

SUBMITTED_MESSAGE = "Sample collection submitted successfully."
SAVED_OFFLINE_MESSAGE = (
    "Sample submission saved offline. It will sync automatically when your connection is back."
)
SYNC_FAILED_MESSAGE = (
    "Sample submission saved with sync failure state. Please retry sync from bookings page."
)
PATIENTS_UPDATED_MESSAGE = "Patient details updated successfully."
MISSING_API_BOOKING_ID_MESSAGE = "Unable to submit. Booking API id is missing."


class SampleSubmissionError(Exception):
    """A submission the collector must fix before it can go through."""

    def __init__(
        self,
        message: str,
        reason: Optional[str] = None,
        retryable: bool = True,
        error_id: Optional[str] = None,
        status: Optional[int] = None,
        missing_patient_ids: Optional[List[str]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.retryable = retryable
        self.error_id = error_id
        self.status = status
        self.missing_patient_ids = missing_patient_ids or []

    @classmethod
    def from_api_error(cls, error: ApiRequestError) -> "SampleSubmissionError":
        return cls(
            get_sample_submission_error(error),
            reason=get_api_error_code(error),
            retryable=True,
            error_id=get_api_error_id(error),
            status=error.status,
            missing_patient_ids=get_missing_patient_ids(error),
        )

    def issue_report_link(self, booking_ref: Optional[str]) -> str:
        return build_issue_report_link(booking_ref, self.message, self.reason, self.error_id)


def create_sample_event_id(booking: BookingRow, now: Optional[datetime] = None) -> str:
    """Idempotency key for one logical submission: evt_sample_<ref>_<epoch ms>."""
    now = now or datetime.now(timezone.utc)
    return f"evt_sample_{booking.order_id or booking.booking_id}_{int(now.timestamp() * 1000)}"


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _validation_error(message: str) -> SampleSubmissionError:
    return SampleSubmissionError(message, reason=ErrorReason.VALIDATION_FAILED.value, retryable=True)


def collect_cropped_images(
    document_mode: DocumentMode,
    passport_front: Optional[ProcessedDocumentPayload],
    eid_front: Optional[ProcessedDocumentPayload],
    eid_back: Optional[ProcessedDocumentPayload],
) -> List[str]:
    documents = [passport_front] if document_mode == DocumentMode.PASSPORT else [eid_front, eid_back]
    return [
        document.cropped_document_image_base64
        for document in documents
        if document is not None and document.cropped_document_image_base64.strip()
    ]


def check_submission_readiness(state: SubmissionState) -> Optional[SampleSubmissionError]:
    """
    Local checks before any network call.

    Document proof is only needed when some patient still lacks a
    national id. Passport mode needs a passport front; EID mode needs
    both EID sides, and the front must carry a 784 number.
    """
    booking = state["booking"]
    if booking.api_booking_id is None:
        return SampleSubmissionError(MISSING_API_BOOKING_ID_MESSAGE, retryable=False)

    if not missing_national_id_patient_ids(state.get("forms", [])):
        return None

    mode = state.get("document_mode", DocumentMode.EID)
    verb = "Capture" if state.get("capture_device") else "Upload"
    passport_front = state.get("passport_front")
    eid_front = state.get("eid_front")
    eid_back = state.get("eid_back")

    if mode == DocumentMode.PASSPORT:
        if passport_front is None:
            return SampleSubmissionError(f"{verb} passport front side before submitting.")
        if not passport_front.extracted_data.document_number.strip():
            return _validation_error(
                "Passport Document No. not detected. Please recapture or re-upload."
            )
    else:
        if eid_front is None or eid_back is None:
            return SampleSubmissionError(f"{verb} EID front and back side before submitting.")
        if not eid_front.extracted_data.document_number.strip():
            return _validation_error(
                "EID number not detected. Please recapture or re-upload EID front."
            )

    if not collect_cropped_images(mode, passport_front, eid_front, eid_back):
        return _validation_error(
            "Cropped document preview is not ready. Please recapture or re-upload."
        )

    if mode == DocumentMode.EID and not eid_front.validation.starts_with_784:
        return _validation_error("Invalid EID number. EID number must start with 784.")

    return None


class BookingsOrchestrator:
    """
    Coordinates the booking API, the offline queue and the sync worker
    for the collector's bookings screen.

    Usage:
        orchestrator = BookingsOrchestrator(BookingApiClient(), SampleSubmissionQueue())
        result = await orchestrator.submit_sample_collection(booking, forms, ...)
    """

    def __init__(
        self,
        booking_client: BookingApiClient,
        queue: SampleSubmissionQueue,
        syncer: Optional[SampleSubmissionSyncer] = None,
    ):
        self.booking_client = booking_client
        self.queue = queue
        self.syncer = syncer or SampleSubmissionSyncer(queue, booking_client)
        self.graph = self._build_graph()

    async def _run_blocking(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    # =========================================================================
    # Graph nodes
    # =========================================================================

    async def node_validate(self, state: SubmissionState) -> SubmissionState:
        """Readiness checks, then build the patient updates to send."""
        error = check_submission_readiness(state)
        if error is not None:
            logger.info(f"Submission blocked before sending: {error.message}")
            return {**state, "error": error}

        booking = state["booking"]
        forms = state.get("forms", [])
        mode = state.get("document_mode", DocumentMode.EID)
        updates = build_patient_updates(forms, booking.patients)
        missing_ids = missing_national_id_patient_ids(forms)

        if missing_ids:
            document = state.get("passport_front") if mode == DocumentMode.PASSPORT else state.get("eid_front")
            document_number = document.extracted_data.document_number.strip()
            updates = merge_missing_national_ids_from_document(updates, missing_ids, document_number)
            logger.info(f"Filled national id for {len(missing_ids)} patient(s) from {mode.value} scan")

        return {
            **state,
            "updates": updates,
            "cropped_images": collect_cropped_images(
                mode, state.get("passport_front"), state.get("eid_front"), state.get("eid_back")
            ),
            "event_id": create_sample_event_id(booking),
            "collected_at": _iso_now(),
            "error": None,
            "network_error": None,
        }

    async def node_submit(self, state: SubmissionState) -> SubmissionState:
        """Live attempt: patient updates, then mark collected."""
        booking = state["booking"]
        try:
            await self._run_blocking(
                self.booking_client.submit_sample_collection,
                booking.api_booking_id,
                state["updates"],
                event_id=state["event_id"],
                collected_at=state["collected_at"],
            )
        except ApiRequestError as e:
            if e.is_network_error:
                logger.warning(f"Booking {booking.booking_id}: connectivity lost during submission")
                return {**state, "network_error": e.message}
            logger.warning(f"Booking {booking.booking_id}: submission rejected ({e.code or e.status})")
            return {**state, "error": SampleSubmissionError.from_api_error(e)}

        logger.info(f"Booking {booking.booking_id}: sample collection submitted")
        return {**state, "sync_state": SubmissionSyncState.SYNCED}

    async def node_enqueue(self, state: SubmissionState) -> SubmissionState:
        """Persist the attempt for background sync, keeping its event id."""
        booking = state["booking"]
        item = await self._run_blocking(
            self.queue.push,
            booking_id=booking.booking_id,
            api_booking_id=booking.api_booking_id,
            updates=state["updates"],
            event_id=state["event_id"],
            collected_at=state["collected_at"],
            cropped_document_image_base64_list=state.get("cropped_images") or None,
        )
        return {**state, "sync_state": SubmissionSyncState.PENDING, "queue_id": item.id}

    @staticmethod
    def route_after_validate(state: SubmissionState) -> Literal["submit", "__end__"]:
        if state.get("error") is not None:
            return END
        return "submit"

    @staticmethod
    def route_after_submit(state: SubmissionState) -> Literal["enqueue", "__end__"]:
        if state.get("network_error"):
            return "enqueue"
        return END

    def _build_graph(self):
        workflow = StateGraph(SubmissionState)

        workflow.add_node("validate", self.node_validate)
        workflow.add_node("submit", self.node_submit)
        workflow.add_node("enqueue", self.node_enqueue)

        workflow.set_entry_point("validate")

        workflow.add_conditional_edges(
            "validate",
            self.route_after_validate,
            {"submit": "submit", END: END},
        )
        workflow.add_conditional_edges(
            "submit",
            self.route_after_submit,
            {"enqueue": "enqueue", END: END},
        )
        workflow.add_edge("enqueue", END)

        return workflow.compile()

    # =========================================================================
    # Operations
    # =========================================================================

    async def submit_sample_collection(
        self,
        booking: BookingRow,
        forms: Sequence[BookingPatientForm],
        document_mode: DocumentMode = DocumentMode.EID,
        passport_front: Optional[ProcessedDocumentPayload] = None,
        eid_front: Optional[ProcessedDocumentPayload] = None,
        eid_back: Optional[ProcessedDocumentPayload] = None,
        capture_device: bool = False,
    ) -> SubmitSampleCollectionResult:
        """
        Submit a sample collection for one booking.

        Returns synced, or pending when the attempt was saved offline.
        Raises SampleSubmissionError for anything the collector must fix.
        """
        final_state = await self.graph.ainvoke({
            "booking": booking,
            "forms": list(forms),
            "document_mode": document_mode,
            "passport_front": passport_front,
            "eid_front": eid_front,
            "eid_back": eid_back,
            "capture_device": capture_device,
        })

        error = final_state.get("error")
        if error is not None:
            raise error

        sync_state = final_state["sync_state"]
        message = SUBMITTED_MESSAGE if sync_state == SubmissionSyncState.SYNCED else SAVED_OFFLINE_MESSAGE
        return SubmitSampleCollectionResult(
            sync_state=sync_state,
            queue_id=final_state.get("queue_id"),
            event_id=final_state.get("event_id"),
            message=message,
        )

    async def retry_queued_submission(self, queue_id: str) -> SubmitSampleCollectionResult:
        """Manual retry of one queued submission (same event id as the original attempt)."""
        item = await self._run_blocking(self.syncer.retry_item, queue_id)
        if item is None:
            return SubmitSampleCollectionResult(
                sync_state=SubmissionSyncState.PENDING,
                queue_id=queue_id,
                message=SAVED_OFFLINE_MESSAGE,
            )
        if item.state == SyncState.SYNCED:
            return SubmitSampleCollectionResult(
                sync_state=SubmissionSyncState.SYNCED,
                queue_id=item.id,
                event_id=item.event_id,
                message=SUBMITTED_MESSAGE,
            )
        return SubmitSampleCollectionResult(
            sync_state=SubmissionSyncState.FAILED,
            queue_id=item.id,
            event_id=item.event_id,
            message=item.last_error_message or SYNC_FAILED_MESSAGE,
        )

    async def save_patient_updates(
        self,
        booking: BookingRow,
        forms: Sequence[BookingPatientForm],
    ) -> Optional[UpdateBookingPatientsResponse]:
        """Save edited patient details without marking the sample collected."""
        if booking.api_booking_id is None:
            raise SampleSubmissionError(MISSING_API_BOOKING_ID_MESSAGE, retryable=False)

        updates = build_patient_updates(forms, booking.patients)
        if not updates:
            return None

        try:
            return await self._run_blocking(
                self.booking_client.update_booking_patients, booking.api_booking_id, updates
            )
        except ApiRequestError as e:
            raise SampleSubmissionError(
                get_api_error_message(e),
                reason=get_api_error_code(e),
                error_id=get_api_error_id(e),
                status=e.status,
                missing_patient_ids=get_missing_patient_ids(e),
            ) from e

    async def load_bookings(self, bucket: str = "current", limit: int = 200) -> List[BookingRow]:
        fetch = (
            self.booking_client.get_current_bookings if bucket == "current"
            else self.booking_client.get_past_bookings
        )
        response = await self._run_blocking(fetch, limit=limit)
        return [map_collector_booking_to_row(item) for item in response.items]

    def sync_summary(self):
        return self.queue.summary()
