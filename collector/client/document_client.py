"""
Device-side client for the document processing endpoint.

Pipeline per scan:
1. Pre-validate MIME type and size (no network call on violation)
2. Optimize the image
3. Upload under a wall-clock deadline, up to MAX_PROCESS_ATTEMPTS times
4. Keep the highest-confidence result; stop early once it is clear enough
5. Review the result against client-side document rules
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence

import requests
from pydantic import ValidationError

from collector.client.image_optimizer import ImageFile, ImageOptimizer, get_optimizer
from collector.config import settings
from collector.deadline import DeadlineExceeded, call_with_deadline
from collector.documents.validation import starts_with_eid_prefix
from collector.models.schemas import (
    DocumentType,
    ErrorReason,
    ProcessedDocumentPayload,
    parse_error_reason,
)
from collector.observability.telemetry import track_api_telemetry

logger = logging.getLogger(__name__)

PROCESS_ENDPOINT = "/api/document/process"
CONFIDENCE_RETRY_THRESHOLD = 0.6
MAX_PROCESS_ATTEMPTS = 2
REQUEST_TIMEOUT_S = 16.0
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
EID_PREFIX_MESSAGE = "Emirates ID must start with 784. Please recapture or upload a valid EID front."
LOW_CONFIDENCE_MESSAGE = "Document processed with low confidence. Please recapture for better clarity."


class DocumentProcessingError(Exception):
    """A scan failure the UI can present and, if retryable, offer to retry."""

    def __init__(
        self,
        message: str,
        reason: Optional[ErrorReason] = None,
        retryable: bool = False,
        error_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.retryable = bool(retryable)
        self.error_id = error_id


def get_document_processing_error_details(error: BaseException) -> Dict[str, Any]:
    """Flatten any exception into message/reason/retryable/errorId."""
    if isinstance(error, DocumentProcessingError):
        return {
            "message": error.message,
            "reason": error.reason.value if error.reason else None,
            "retryable": error.retryable,
            "errorId": error.error_id,
        }
    if isinstance(error, Exception) and str(error):
        return {"message": str(error), "reason": None, "retryable": False, "errorId": None}
    return {"message": NOT_CLEAR_MESSAGE, "reason": None, "retryable": False, "errorId": None}


def select_best_attempt(
    attempts: Sequence[ProcessedDocumentPayload],
) -> Optional[ProcessedDocumentPayload]:
    """Highest confidence wins; the earlier attempt wins a tie."""
    best = None
    for attempt in attempts:
        if best is None or attempt.confidence_score > best.confidence_score:
            best = attempt
    return best


def is_confident(payload: ProcessedDocumentPayload, threshold: float = CONFIDENCE_RETRY_THRESHOLD) -> bool:
    return payload.confidence_score >= threshold


def is_supported_image_mime_type(mime_type: str) -> bool:
    return (mime_type or "").strip().lower() in ALLOWED_IMAGE_MIME_TYPES


def _is_error_payload(value: Any) -> bool:
    return isinstance(value, dict) and value.get("error") is True and isinstance(value.get("message"), str)


@dataclass
class ScanReview:
    """Client-side verdict on a processed scan."""
    accepted: bool
    payload: Optional[ProcessedDocumentPayload]
    message: Optional[str] = None
    reason: Optional[ErrorReason] = None


def accept_scan(payload: ProcessedDocumentPayload, document_type: DocumentType) -> ScanReview:
    """
    Apply the client-side document rules to a successful scan.

    An EID front whose number does not start with 784 is discarded.
    A low-confidence scan is kept, with a recapture warning.
    """
    if document_type == DocumentType.EID_FRONT:
        number_ok = starts_with_eid_prefix(payload.extracted_data.document_number)
        if not payload.validation.starts_with_784 or not number_ok:
            return ScanReview(
                accepted=False,
                payload=None,
                message=EID_PREFIX_MESSAGE,
                reason=ErrorReason.VALIDATION_FAILED,
            )

    if not is_confident(payload):
        return ScanReview(
            accepted=True,
            payload=payload,
            message=payload.warning or LOW_CONFIDENCE_MESSAGE,
            reason=ErrorReason.DOCUMENT_NOT_CLEAR,
        )

    return ScanReview(accepted=True, payload=payload)


class DocumentProcessingClient:
    """
    Uploads identity document images to the processing endpoint.

    Usage:
        client = DocumentProcessingClient()
        payload = client.process_document_image(image_file, DocumentType.PASSPORT)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        optimizer: Optional[ImageOptimizer] = None,
        max_attempts: int = MAX_PROCESS_ATTEMPTS,
        confidence_threshold: float = CONFIDENCE_RETRY_THRESHOLD,
        timeout_s: float = REQUEST_TIMEOUT_S,
    ):
        self.base_url = (base_url or settings.document_service_url).rstrip("/")
        self.session = session or requests.Session()
        self.optimizer = optimizer or get_optimizer()
        self.max_attempts = max(1, max_attempts)
        self.confidence_threshold = confidence_threshold
        self.timeout_s = timeout_s

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}{PROCESS_ENDPOINT}"

    def process_document_image(self, file: ImageFile, document_type: DocumentType) -> ProcessedDocumentPayload:
        """
        Scan one image and return the best payload seen.

        Raises DocumentProcessingError when no attempt produced a usable
        payload. A successful scan below the confidence threshold is still
        returned once the attempt budget is spent.
        """
        if not is_supported_image_mime_type(file.content_type):
            raise DocumentProcessingError(
                "Only JPG, PNG, WEBP, HEIC, and HEIF images are supported.",
                reason=ErrorReason.UNSUPPORTED_FILE_TYPE,
                retryable=False,
            )

        if file.size > MAX_FILE_SIZE_BYTES:
            raise DocumentProcessingError(
                "Image is too large. Maximum allowed size is 8MB.",
                reason=ErrorReason.FILE_TOO_LARGE,
                retryable=False,
            )

        upload = self.optimizer.optimize(file)
        attempts = []

        for attempt in range(1, self.max_attempts + 1):
            try:
                payload = self._attempt(upload, document_type)
            except DocumentProcessingError:
                if attempts:
                    logger.warning(f"Scan attempt {attempt} failed; keeping best earlier result")
                    break
                raise

            attempts.append(payload)
            logger.info(
                f"Scan attempt {attempt}/{self.max_attempts} for {document_type.value}: "
                f"confidence={payload.confidence_score:.2f}"
            )

            if is_confident(payload, self.confidence_threshold):
                return payload

        best = select_best_attempt(attempts)
        if best is None:
            raise DocumentProcessingError(
                NOT_CLEAR_MESSAGE, reason=ErrorReason.DOCUMENT_NOT_CLEAR, retryable=True
            )

        logger.info(
            f"No {document_type.value} scan reached {self.confidence_threshold}; "
            f"returning best of {len(attempts)} (confidence={best.confidence_score:.2f})"
        )
        return best

    def _attempt(self, upload: ImageFile, document_type: DocumentType) -> ProcessedDocumentPayload:
        started_at = time.monotonic()

        def record(success: bool, status_code: Optional[int] = None, error_code: Optional[str] = None):
            track_api_telemetry(
                name=PROCESS_ENDPOINT,
                duration_ms=(time.monotonic() - started_at) * 1000,
                success=success,
                status_code=status_code,
                error_code=error_code,
                metadata={"documentType": document_type.value},
            )

        try:
            response = call_with_deadline(
                self.session.post,
                self.timeout_s,
                self.endpoint,
                data={"documentType": document_type.value},
                files={"file": (upload.name, upload.data, upload.content_type)},
                timeout=self.timeout_s,
            )
        except (requests.Timeout, DeadlineExceeded):
            record(False, error_code="timeout")
            raise DocumentProcessingError(
                "Document scan timed out. Please retry with a clearer image.",
                reason=ErrorReason.TIMEOUT,
                retryable=True,
            )
        except requests.RequestException:
            record(False, error_code="network_error")
            raise DocumentProcessingError(
                "Unable to reach document scanner. Please check your connection and retry.",
                reason=ErrorReason.OPENAI_REQUEST_FAILED,
                retryable=True,
            )

        try:
            body = response.json()
        except ValueError:
            body = None

        if not response.ok:
            if _is_error_payload(body):
                reason = parse_error_reason(body.get("reason"))
                record(False, response.status_code, reason.value if reason else "scan_failed")
                raise DocumentProcessingError(
                    body["message"],
                    reason=reason,
                    retryable=bool(body.get("retryable")),
                    error_id=body.get("errorId"),
                )
            record(False, response.status_code, "scan_failed")
            raise DocumentProcessingError(
                NOT_CLEAR_MESSAGE, reason=ErrorReason.DOCUMENT_NOT_CLEAR, retryable=True
            )

        if not isinstance(body, dict):
            record(False, response.status_code, ErrorReason.INVALID_OPENAI_RESPONSE.value)
            raise DocumentProcessingError(
                "Invalid document processing response.",
                reason=ErrorReason.INVALID_OPENAI_RESPONSE,
                retryable=True,
            )

        if not body.get("croppedDocumentImageBase64"):
            record(False, response.status_code, "missing_preview")
            raise DocumentProcessingError(
                "Document processing did not return a preview.",
                reason=ErrorReason.INVALID_OPENAI_RESPONSE,
                retryable=True,
            )

        try:
            payload = ProcessedDocumentPayload.model_validate(body)
        except ValidationError as e:
            logger.warning(f"Malformed document payload: {e}")
            record(False, response.status_code, ErrorReason.INVALID_OPENAI_RESPONSE.value)
            raise DocumentProcessingError(
                "Invalid document processing response.",
                reason=ErrorReason.INVALID_OPENAI_RESPONSE,
                retryable=True,
            )

        record(True, response.status_code)
        return payload
