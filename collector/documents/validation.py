"""
Document-type business rules applied after a successful extraction.

Two outcomes are distinguished:
- a rejection (the scan is discarded and the user must recapture)
- a clarity warning (the scan is kept but flagged as unclear)
"""

from typing import Optional

from collector.documents.normalize import normalize_document_number
from collector.models.schemas import DocumentType, ProcessedDocumentPayload

MIN_CONFIDENCE_UNSUPPORTED = 0.35
MIN_CONFIDENCE_PASSPORT = 0.5
MIN_CONFIDENCE_EID_FRONT = 0.5
MIN_CONFIDENCE_EID_BACK = 0.45

MIN_PASSPORT_NUMBER_LENGTH = 5
MIN_PASSPORT_NAME_LENGTH = 3
EID_PREFIX = "784"

TYPE_CONFIDENCE_FLOORS = {
    DocumentType.PASSPORT: MIN_CONFIDENCE_PASSPORT,
    DocumentType.EID_FRONT: MIN_CONFIDENCE_EID_FRONT,
    DocumentType.EID_BACK: MIN_CONFIDENCE_EID_BACK,
}

UNSUPPORTED_DOCUMENT_MESSAGE = (
    "Unsupported document. Please upload or capture a valid Passport or Emirates ID."
)
INVALID_PASSPORT_MESSAGE = (
    "This is not a valid passport front page. "
    "Please upload or capture the passport details page."
)
INVALID_EID_FRONT_MESSAGE = (
    "This is not a valid Emirates ID front. "
    "Please upload or capture an EID front where the ID number starts with 784."
)

UNCLEAR_MESSAGES = {
    DocumentType.PASSPORT: "Passport image is unclear. Please recapture the passport front page.",
    DocumentType.EID_FRONT: "Emirates ID front image is unclear. Please recapture the document.",
    DocumentType.EID_BACK: "Emirates ID back image is unclear. Please recapture the EID back side.",
}


def starts_with_eid_prefix(document_number: str) -> bool:
    return normalize_document_number(document_number).startswith(EID_PREFIX)


def get_document_validation_error(
    payload: ProcessedDocumentPayload,
    expected_type: DocumentType,
) -> Optional[str]:
    """Return the rejection message for a payload, or None when it is acceptable."""
    if payload.confidence_score < MIN_CONFIDENCE_UNSUPPORTED:
        return UNSUPPORTED_DOCUMENT_MESSAGE

    data = payload.extracted_data

    if expected_type == DocumentType.PASSPORT:
        has_number = len(normalize_document_number(data.document_number)) >= MIN_PASSPORT_NUMBER_LENGTH
        has_name = len(data.full_name.strip()) >= MIN_PASSPORT_NAME_LENGTH
        if not has_number or not has_name:
            return INVALID_PASSPORT_MESSAGE

    if expected_type == DocumentType.EID_FRONT:
        number = normalize_document_number(data.document_number)
        if not number or not number.startswith(EID_PREFIX):
            return INVALID_EID_FRONT_MESSAGE

    # EID_BACK needs no fields
    return None


def get_document_clarity_warning(
    payload: ProcessedDocumentPayload,
    expected_type: DocumentType,
) -> Optional[str]:
    """Warn when an accepted payload is below its document-type floor."""
    floor = TYPE_CONFIDENCE_FLOORS[expected_type]
    if payload.confidence_score < floor:
        return UNCLEAR_MESSAGES[expected_type]
    return None
