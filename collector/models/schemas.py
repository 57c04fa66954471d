"""
Pydantic schemas for document processing and sample collection.

These models define the structure of:
- Identity documents scanned by the vision model (passport, Emirates ID)
- Error payloads returned by the document processing endpoint
- Booking patients and the sparse updates sent to the booking API
- Sample submissions persisted in the offline queue
"""

from enum import Enum
from typing import List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field


class DocumentType(str, Enum):
    PASSPORT = "PASSPORT"
    EID_FRONT = "EID_FRONT"
    EID_BACK = "EID_BACK"


DOCUMENT_TYPES = [t.value for t in DocumentType]


class ErrorReason(str, Enum):
    """Closed set of document processing failure reasons."""

    INVALID_DOCUMENT_TYPE = "invalid_document_type"
    FILE_REQUIRED = "file_required"
    UNSUPPORTED_FILE_TYPE = "unsupported_file_type"
    FILE_TOO_LARGE = "file_too_large"
    DOCUMENT_NOT_CONFIGURED = "document_not_configured"
    OPENAI_REQUEST_FAILED = "openai_request_failed"
    INVALID_OPENAI_RESPONSE = "invalid_openai_response"
    VALIDATION_FAILED = "validation_failed"
    TIMEOUT = "timeout"
    DOCUMENT_NOT_CLEAR = "document_not_clear"

    @property
    def retryable(self) -> bool:
        """Input-shape and configuration failures never succeed on retry."""
        return self not in _NON_RETRYABLE_REASONS

    @property
    def requires_recapture(self) -> bool:
        """Business-rule rejections need a new image, not the same bytes."""
        return self in (ErrorReason.VALIDATION_FAILED, ErrorReason.DOCUMENT_NOT_CLEAR)

    @property
    def label(self) -> str:
        return _REASON_LABELS[self]


_NON_RETRYABLE_REASONS = frozenset({
    ErrorReason.INVALID_DOCUMENT_TYPE,
    ErrorReason.FILE_REQUIRED,
    ErrorReason.UNSUPPORTED_FILE_TYPE,
    ErrorReason.FILE_TOO_LARGE,
    ErrorReason.DOCUMENT_NOT_CONFIGURED,
})

_REASON_LABELS = {
    ErrorReason.INVALID_DOCUMENT_TYPE: "Invalid document type selected",
    ErrorReason.FILE_REQUIRED: "Image file is required",
    ErrorReason.UNSUPPORTED_FILE_TYPE: "Unsupported file type",
    ErrorReason.FILE_TOO_LARGE: "File size exceeds limit",
    ErrorReason.DOCUMENT_NOT_CONFIGURED: "Scanner service is not configured",
    ErrorReason.OPENAI_REQUEST_FAILED: "Scanner service request failed",
    ErrorReason.INVALID_OPENAI_RESPONSE: "Scanner returned invalid output",
    ErrorReason.VALIDATION_FAILED: "Document validation failed",
    ErrorReason.TIMEOUT: "Scanner timed out",
    ErrorReason.DOCUMENT_NOT_CLEAR: "Document was unclear",
}


def parse_error_reason(value: Optional[str]) -> Optional[ErrorReason]:
    """Map a wire value to an ErrorReason, ignoring unknown strings."""
    if not value:
        return None
    try:
        return ErrorReason(value)
    except ValueError:
        return None


# =============================================================================
# Document processing payloads
# =============================================================================

class _WireModel(BaseModel):
    """Base for models exchanged as camelCase JSON."""

    model_config = ConfigDict(populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ExtractedDocumentData(_WireModel):
    """Identity fields read from the document. Never inferred."""

    full_name: str = Field(default="", alias="fullName")
    gender: str = Field(default="", alias="gender")
    document_number: str = Field(default="", alias="documentNumber")
    nationality: str = Field(default="", alias="nationality")


class DocumentValidation(_WireModel):
    is_valid_eid: bool = Field(default=False, alias="isValidEID")
    starts_with_784: bool = Field(default=False, alias="startsWith784")


class ProcessedDocumentPayload(_WireModel):
    """Normalized result of a successful document scan."""

    document_type: DocumentType = Field(..., alias="documentType")
    extracted_data: ExtractedDocumentData = Field(
        default_factory=ExtractedDocumentData, alias="extractedData"
    )
    validation: DocumentValidation = Field(
        default_factory=DocumentValidation, alias="validation"
    )
    cropped_document_image_base64: str = Field(..., alias="croppedDocumentImageBase64")
    confidence_score: float = Field(default=0.0, ge=0.0, le=1.0, alias="confidenceScore")

    # Set when the scan passed validation but sits below its type floor
    warning: Optional[str] = Field(default=None, alias="warning")


class ProcessedDocumentErrorPayload(_WireModel):
    error: bool = Field(default=True, alias="error")
    message: str = Field(..., alias="message")
    confidence_score: float = Field(default=0.45, alias="confidenceScore")
    reason: Optional[ErrorReason] = Field(default=None, alias="reason")
    retryable: Optional[bool] = Field(default=None, alias="retryable")
    error_id: Optional[str] = Field(default=None, alias="errorId")


# =============================================================================
# Bookings and patients
# =============================================================================

class BookingPatient(BaseModel):
    """Patient snapshot owned by a booking."""

    patient_id: str
    name: str = ""
    age: Optional[Union[int, float]] = None
    gender: Optional[str] = None
    national_id: Optional[str] = None
    tests_count: Optional[int] = None


class BookingPatientForm(BaseModel):
    """Editable form state for one patient (all values as typed)."""

    current_patient_id: str
    new_patient_id: str = ""
    name: str = ""
    age: str = ""
    gender: str = ""
    national_id: str = ""
    tests_count: Optional[int] = None


class BookingPatientUpdate(_WireModel):
    """Sparse diff for one patient. Only changed fields are set."""

    current_patient_id: str = Field(..., alias="currentPatientId")
    new_patient_id: Optional[str] = Field(default=None, alias="newPatientId")
    name: Optional[str] = Field(default=None, alias="name")
    age: Optional[Union[int, float]] = Field(default=None, alias="age")
    gender: Optional[str] = Field(default=None, alias="gender")
    national_id: Optional[str] = Field(default=None, alias="nationalId")

    def changed_fields(self) -> List[str]:
        return [
            name for name in ("new_patient_id", "name", "age", "gender", "national_id")
            if getattr(self, name) is not None
        ]

    def to_api_payload(self) -> dict:
        """Snake-case body entry for the booking API."""
        payload = {"current_patient_id": self.current_patient_id}
        for name in self.changed_fields():
            payload[name] = getattr(self, name)
        return payload


class BookingStatus(str, Enum):
    PENDING = "Pending"
    CONFIRMED = "Confirmed"
    RESULT_READY = "Result Ready"
    CANCELLED = "Cancelled"
    UNKNOWN = "Unknown"


class BookingRow(BaseModel):
    """Booking as seen by the collector."""

    booking_id: str
    api_booking_id: Optional[int] = None
    order_id: Optional[str] = None
    status: BookingStatus = BookingStatus.UNKNOWN
    booking_status_raw: Optional[str] = None
    start_at: Optional[str] = None
    end_at: Optional[str] = None
    patient_name: str = "Patient"
    patients: List[BookingPatient] = Field(default_factory=list)


# =============================================================================
# Booking API wire types
# =============================================================================

class CollectorReference(BaseModel):
    party_id: str
    display_name: str = ""


class CollectorBookingPatient(BaseModel):
    patient_id: str
    name: str = ""
    age: Optional[Union[int, float]] = None
    gender: Optional[str] = None
    national_id: Optional[str] = None
    tests_count: Optional[int] = None


class CollectorBookingItem(BaseModel):
    booking_id: int
    order_id: Optional[str] = None
    booking_status: str
    start_at: str
    end_at: Optional[str] = None
    created_at: Optional[str] = None
    order_status: Optional[str] = None
    patients: List[CollectorBookingPatient] = Field(default_factory=list)
    patient_count: Optional[int] = None


class CollectorBookingsResponse(BaseModel):
    collector: CollectorReference
    bucket: str
    items: List[CollectorBookingItem] = Field(default_factory=list)
    next_before_start_at: Optional[str] = None


class PatientRemap(BaseModel):
    from_patient_id: str
    to_patient_id: str


class UpdateBookingPatientsResponse(BaseModel):
    status: str
    booking_id: int
    order_id: Optional[str] = None
    collector: Optional[CollectorReference] = None
    patients: List[CollectorBookingPatient] = Field(default_factory=list)
    remap: List[PatientRemap] = Field(default_factory=list)


class MarkSampleCollectedResponse(BaseModel):
    status: str
    event: Optional[str] = None
    booking_id: int
    order_id: Optional[str] = None
    booking_status: Optional[str] = None
    workflow_run_id: Optional[str] = None


# =============================================================================
# Offline submission queue
# =============================================================================

class SyncState(str, Enum):
    PENDING = "PENDING"
    SYNCING = "SYNCING"
    FAILED = "FAILED"
    SYNCED = "SYNCED"


class QueuedSampleSubmission(_WireModel):
    """A mark-collected attempt waiting to reach the booking API."""

    id: str = Field(..., alias="id")
    booking_id: str = Field(..., alias="bookingId")
    api_booking_id: int = Field(..., alias="apiBookingId")
    updates: List[BookingPatientUpdate] = Field(default_factory=list, alias="updates")
    cropped_document_image_base64_list: Optional[List[str]] = Field(
        default=None, alias="croppedDocumentImageBase64List"
    )
    event_id: str = Field(..., alias="eventId")
    collected_at: str = Field(..., alias="collectedAt")
    created_at: str = Field(..., alias="createdAt")
    retry_count: int = Field(default=0, alias="retryCount")
    state: SyncState = Field(default=SyncState.PENDING, alias="state")
    last_error_message: Optional[str] = Field(default=None, alias="lastErrorMessage")


# =============================================================================
# Sample submission
# =============================================================================

class DocumentMode(str, Enum):
    """Which identity proof the collector is using for a submission."""
    PASSPORT = "passport"
    EID = "eid"


class SubmissionSyncState(str, Enum):
    SYNCED = "synced"
    PENDING = "pending"
    FAILED = "failed"


class SubmitSampleCollectionResult(BaseModel):
    sync_state: SubmissionSyncState
    queue_id: Optional[str] = None
    event_id: Optional[str] = None
    message: str = ""
