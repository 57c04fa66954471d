"""
Document processing proxy.

Flow:
1. Validate the upload (document type, presence, MIME type, size)
2. Check the vision model credential and the image signature
3. Call the vision model with a strict JSON schema
4. Decode and normalize the untrusted output
5. Apply document-type business rules

Every failure is raised as a DocumentProxyError carrying a stable
(reason, retryable, message) triple plus the HTTP status to answer with.
"""

import base64
import logging
from dataclasses import dataclass
from typing import Optional

from collector.documents.normalize import (
    extract_output_text,
    has_supported_image_signature,
    parse_json_response,
    to_normalized_payload,
)
from collector.documents.validation import (
    get_document_clarity_warning,
    get_document_validation_error,
)
from collector.documents.vision import (
    VisionRequestError,
    VisionTimeoutError,
    call_vision_model,
    get_api_key,
)
from collector.models.schemas import (
    DocumentType,
    ErrorReason,
    ProcessedDocumentErrorPayload,
    ProcessedDocumentPayload,
)

logger = logging.getLogger(__name__)

MAX_FILE_SIZE_BYTES = 8 * 1024 * 1024
ALLOWED_IMAGE_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/webp",
    "image/heic",
    "image/heif",
}

NOT_CLEAR_MESSAGE = "Document not clear. Please recapture."
TIMEOUT_MESSAGE = "Document processing timed out. Please try again."
DEFAULT_ERROR_CONFIDENCE = 0.45


@dataclass
class UploadedImage:
    """An uploaded file as received by the endpoint."""
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


class DocumentProxyError(Exception):
    """A processing failure mapped to an HTTP status and error reason."""

    def __init__(
        self,
        message: str,
        status_code: int,
        reason: ErrorReason,
        retryable: Optional[bool] = None,
        confidence_score: float = DEFAULT_ERROR_CONFIDENCE,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.retryable = reason.retryable if retryable is None else retryable
        self.confidence_score = confidence_score

    def to_payload(self, error_id: str) -> ProcessedDocumentErrorPayload:
        return ProcessedDocumentErrorPayload(
            message=self.message,
            confidence_score=self.confidence_score,
            reason=self.reason,
            retryable=self.retryable,
            error_id=error_id,
        )


def parse_document_type(value: Optional[str]) -> DocumentType:
    try:
        return DocumentType((value or "").strip())
    except ValueError:
        raise DocumentProxyError(
            "Invalid document type.", 400, ErrorReason.INVALID_DOCUMENT_TYPE
        )


def is_supported_image_mime_type(mime_type: str) -> bool:
    return (mime_type or "").strip().lower() in ALLOWED_IMAGE_MIME_TYPES


def validate_upload(document_type_value: Optional[str], file: Optional[UploadedImage]) -> DocumentType:
    """Input-shape checks. First failure wins; none of them is retryable."""
    document_type = parse_document_type(document_type_value)

    if file is None:
        raise DocumentProxyError(
            "Image file is required.", 400, ErrorReason.FILE_REQUIRED
        )

    mime_type = (file.content_type or "").strip().lower()
    if not mime_type.startswith("image/") or not is_supported_image_mime_type(mime_type):
        raise DocumentProxyError(
            "Only JPG, PNG, WEBP, HEIC, and HEIF images are supported.",
            415,
            ErrorReason.UNSUPPORTED_FILE_TYPE,
        )

    if file.size > MAX_FILE_SIZE_BYTES:
        raise DocumentProxyError(
            "Image is too large. Maximum allowed size is 8MB.",
            413,
            ErrorReason.FILE_TOO_LARGE,
        )

    return document_type


def process_document(
    document_type_value: Optional[str],
    file: Optional[UploadedImage],
) -> ProcessedDocumentPayload:
    """Run one upload through validation, the vision model and the business rules."""
    document_type = validate_upload(document_type_value, file)

    if not get_api_key():
        raise DocumentProxyError(
            "Document processing is not configured.",
            500,
            ErrorReason.DOCUMENT_NOT_CONFIGURED,
        )

    if not has_supported_image_signature(file.data):
        raise DocumentProxyError(
            "Uploaded file is not a valid supported image.",
            415,
            ErrorReason.UNSUPPORTED_FILE_TYPE,
        )

    image_data_url = f"data:{file.content_type};base64,{base64.b64encode(file.data).decode('ascii')}"

    try:
        response_payload = call_vision_model(document_type, image_data_url)
    except VisionTimeoutError:
        raise DocumentProxyError(TIMEOUT_MESSAGE, 500, ErrorReason.TIMEOUT)
    except VisionRequestError as e:
        # Opaque upstream failures get the soft recapture message
        message = (
            f"Document processing failed ({e.status_code})." if e.body
            else NOT_CLEAR_MESSAGE
        )
        raise DocumentProxyError(
            message,
            e.status_code,
            ErrorReason.OPENAI_REQUEST_FAILED,
            retryable=e.status_code >= 500 or e.status_code == 429,
        )

    output_text = extract_output_text(response_payload)
    if not output_text:
        raise DocumentProxyError(
            NOT_CLEAR_MESSAGE, 422, ErrorReason.INVALID_OPENAI_RESPONSE, confidence_score=0.5
        )

    parsed = parse_json_response(output_text)
    if parsed is None:
        raise DocumentProxyError(
            "Invalid AI response. Please retry scanning.",
            422,
            ErrorReason.INVALID_OPENAI_RESPONSE,
        )

    payload = to_normalized_payload(parsed, document_type)
    if payload is None:
        raise DocumentProxyError(NOT_CLEAR_MESSAGE, 422, ErrorReason.DOCUMENT_NOT_CLEAR)

    validation_error = get_document_validation_error(payload, document_type)
    if validation_error:
        raise DocumentProxyError(
            validation_error,
            422,
            ErrorReason.VALIDATION_FAILED,
            confidence_score=payload.confidence_score,
        )

    payload.warning = get_document_clarity_warning(payload, document_type)
    if payload.warning:
        logger.warning(
            f"{document_type.value} accepted below type floor "
            f"(confidence={payload.confidence_score:.2f})"
        )

    logger.info(
        f"Processed {document_type.value}: confidence={payload.confidence_score:.2f}"
    )
    return payload
