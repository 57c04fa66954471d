"""
State definition for the sample submission graph.
"""

from typing import List, Optional
from typing_extensions import TypedDict

from collector.models.schemas import (
    BookingPatientForm,
    BookingPatientUpdate,
    BookingRow,
    DocumentMode,
    ProcessedDocumentPayload,
    SubmissionSyncState,
)


class SubmissionState(TypedDict, total=False):
    """State passed between nodes in the submission graph."""

    # Input
    booking: BookingRow
    forms: List[BookingPatientForm]
    document_mode: DocumentMode
    passport_front: Optional[ProcessedDocumentPayload]
    eid_front: Optional[ProcessedDocumentPayload]
    eid_back: Optional[ProcessedDocumentPayload]
    capture_device: bool

    # Prepared submission
    updates: List[BookingPatientUpdate]
    cropped_images: List[str]
    event_id: str
    collected_at: str

    # Outcome
    error: Optional[Exception]  # SampleSubmissionError, surfaced to the caller
    network_error: Optional[str]  # Live attempt failed on connectivity
    sync_state: SubmissionSyncState
    queue_id: Optional[str]
