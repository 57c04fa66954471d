"""
Booking API error classification.

Every failure coming out of the booking API client is an ApiRequestError.
The orchestrator only needs two questions answered about it: is this a
connectivity problem (queue and retry later) and, if not, what should
the collector be told.
"""

import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

NETWORK_PATTERNS = [
    "network error",
    "failed to fetch",
    "fetch failed",
    "network request failed",
    "internet",
    "offline",
    "timed out",
    "timeout",
    "enotfound",
    "econnreset",
    "econnaborted",
    "err_network",
    "invalid url",
]

API_ERROR_MESSAGES = {
    "invalid_collector_party_id": "Collector party ID is invalid.",
    "collector_not_found": "Collector not found.",
    "party_type_mismatch": "Configured party is not a COLLECTOR.",
    "collector_inactive": "Collector is inactive.",
    "invalid_booking_id": "Booking ID is invalid.",
    "booking_not_found": "Booking was not found.",
    "invalid_booking_state": "Booking is in a locked state and cannot be updated.",
    "booking_patients_not_found": "Patients could not be found for this booking snapshot.",
    "missing_patient_national_id": "National ID is required for all patients before sample collection.",
    "validation_error": "Provided booking details failed validation.",
    "patient_not_in_booking": "One or more patients do not belong to this booking.",
    "duplicate_patient_id_after_update": "Updated patient IDs would create duplicates in the booking.",
}

NETWORK_ERROR_MESSAGE = "Network error. Please check your internet connection and retry."
SERVER_UNAVAILABLE_MESSAGE = "Server is currently unavailable. Please try again in a moment."
MISSING_NATIONAL_ID_SUBMISSION_MESSAGE = (
    "Patient document number is required. For EID use EID number. For Passport use Document No."
)

SUPPORT_EMAIL = "support@dardoc.com"


class ApiRequestError(Exception):
    """A booking API failure with its HTTP status and backend error code."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Any = None,
        is_network_error: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
        self.details = details
        self.is_network_error = is_network_error

    def __repr__(self) -> str:
        return (
            f"ApiRequestError(message={self.message!r}, status={self.status}, "
            f"code={self.code!r}, is_network_error={self.is_network_error})"
        )


def is_likely_network_error_message(message: Optional[str]) -> bool:
    if not message:
        return False
    normalized = message.lower()
    return any(pattern in normalized for pattern in NETWORK_PATTERNS)


def _response_payload(response: Optional[requests.Response]) -> Optional[Dict[str, Any]]:
    if response is None:
        return None
    try:
        payload = response.json()
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def to_api_request_error(error: BaseException) -> ApiRequestError:
    """Convert anything raised around a booking API call into an ApiRequestError."""
    if isinstance(error, ApiRequestError):
        return error

    if isinstance(error, requests.RequestException):
        response = error.response
        status = response.status_code if response is not None else None
        payload = _response_payload(response)
        code = payload.get("error") if payload else None

        if status is None:
            is_network = True
        else:
            is_network = isinstance(error, (requests.ConnectionError, requests.Timeout))

        message = (
            (payload or {}).get("message")
            or code
            or str(error)
            or "Failed to connect to booking API"
        )
        return ApiRequestError(
            message,
            status=status,
            code=code,
            details=payload,
            is_network_error=is_network,
        )

    if isinstance(error, Exception):
        message = str(error) or "Unexpected error while calling booking API"
        return ApiRequestError(message, is_network_error=is_likely_network_error_message(message))

    return ApiRequestError("Unexpected error while calling booking API")


def _user_facing_message(error: ApiRequestError) -> str:
    if error.is_network_error:
        return NETWORK_ERROR_MESSAGE
    if error.code and error.code in API_ERROR_MESSAGES:
        return API_ERROR_MESSAGES[error.code]
    if error.status and error.status >= 500:
        return SERVER_UNAVAILABLE_MESSAGE
    return error.message


def get_api_error_message(error: BaseException) -> str:
    return _user_facing_message(to_api_request_error(error))


def is_network_api_error(error: BaseException) -> bool:
    return bool(to_api_request_error(error).is_network_error)


def get_api_error_code(error: BaseException) -> Optional[str]:
    return to_api_request_error(error).code or None


def get_api_error_id(error: BaseException) -> Optional[str]:
    details = to_api_request_error(error).details
    if not isinstance(details, dict):
        return None
    for key in ("error_id", "errorId", "request_id"):
        value = details.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def get_missing_patient_ids(error: BaseException) -> List[str]:
    details = to_api_request_error(error).details
    if not isinstance(details, dict):
        return []
    ids = details.get("missing_patient_ids") or []
    return [str(patient_id) for patient_id in ids]


def get_sample_submission_error(error: BaseException) -> str:
    """Message shown when a sample submission is rejected by the backend."""
    if get_api_error_code(error) == "missing_patient_national_id":
        return MISSING_NATIONAL_ID_SUBMISSION_MESSAGE
    return get_api_error_message(error)


def build_issue_report_link(
    booking_ref: Optional[str],
    message: str,
    reason: Optional[str] = None,
    error_id: Optional[str] = None,
) -> str:
    """mailto: link the collector can use to report a failed submission."""
    booking_ref = booking_ref or "Unknown Booking"
    subject = f"DarDoc Sample Collection Issue - {booking_ref}"
    body = "\n".join([
        f"Booking: {booking_ref}",
        f"Error ID: {error_id or 'NA'}",
        f"Reason: {reason or 'unknown'}",
        f"Message: {message}",
        "",
        "Please investigate this issue.",
    ])
    return f"mailto:{SUPPORT_EMAIL}?subject={quote(subject, safe='')}&body={quote(body, safe='')}"
