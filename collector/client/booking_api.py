"""
Booking API client for the collector dashboard.

Endpoints (all under /collectors/{party_id}):
- GET   /bookings/current
- GET   /bookings/past
- PATCH /bookings/{booking_id}/patients
- PATCH /bookings/{booking_id}/sample-collected
"""

import logging
import time
from typing import Any, Dict, Iterable, List, Optional, Union
from urllib.parse import quote

import requests

from collector.client.errors import ApiRequestError, to_api_request_error
from collector.config import settings
from collector.models.schemas import (
    BookingPatientUpdate,
    CollectorBookingsResponse,
    MarkSampleCollectedResponse,
    UpdateBookingPatientsResponse,
)
from collector.observability.telemetry import capture_observed_error, track_api_telemetry

logger = logging.getLogger(__name__)

MAX_PAGE_LIMIT = 200
SAMPLE_EVENT_SOURCE = "collector_dashboard_web"


def clamp_limit(limit: Optional[int]) -> Optional[int]:
    if not limit:
        return None
    return min(max(limit, 1), MAX_PAGE_LIMIT)


def build_bookings_params(
    limit: Optional[int] = None,
    before_start_at: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> Dict[str, Any]:
    params: Dict[str, Any] = {}
    clamped = clamp_limit(limit)
    if clamped:
        params["limit"] = clamped
    if before_start_at:
        params["before_start_at"] = before_start_at
    statuses = list(statuses or [])
    if statuses:
        params["status"] = ",".join(statuses)
    return params


def _segment(value: Union[str, int]) -> str:
    return quote(str(value), safe="")


class BookingApiClient:
    """
    Thin wrapper over the booking API.

    Every request is timed and reported through telemetry. Every failure
    is raised as an ApiRequestError.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        collector_party_id: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout_s: Optional[float] = None,
    ):
        self.base_url = (base_url or settings.api_base_url).rstrip("/")
        self.collector_party_id = collector_party_id or settings.collector_party_id
        self.timeout_s = timeout_s or settings.api_timeout_s
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Content-Type": "application/json",
        })

    # =========================================================================
    # Endpoints
    # =========================================================================

    def _collector_path(self, party_id: Optional[str] = None) -> str:
        return f"/collectors/{_segment(party_id or self.collector_party_id)}"

    def bookings_path(self, bucket: str, party_id: Optional[str] = None) -> str:
        return f"{self._collector_path(party_id)}/bookings/{bucket}"

    def patients_path(self, booking_id: Union[str, int], party_id: Optional[str] = None) -> str:
        return f"{self._collector_path(party_id)}/bookings/{_segment(booking_id)}/patients"

    def sample_collected_path(self, booking_id: Union[str, int], party_id: Optional[str] = None) -> str:
        return f"{self._collector_path(party_id)}/bookings/{_segment(booking_id)}/sample-collected"

    # =========================================================================
    # Transport
    # =========================================================================

    def _request(self, method: str, path: str, **kwargs) -> Any:
        started_at = time.monotonic()
        try:
            response = self.session.request(
                method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs
            )
            response.raise_for_status()
        except requests.RequestException as e:
            api_error = to_api_request_error(e)
            track_api_telemetry(
                name=path,
                duration_ms=(time.monotonic() - started_at) * 1000,
                success=False,
                status_code=api_error.status,
                error_code=api_error.code or ("network_error" if api_error.is_network_error else "unknown_error"),
                metadata={"method": method},
            )
            raise api_error from e

        track_api_telemetry(
            name=path,
            duration_ms=(time.monotonic() - started_at) * 1000,
            success=True,
            status_code=response.status_code,
            metadata={"method": method},
        )

        try:
            return response.json()
        except ValueError as e:
            raise ApiRequestError(
                "Booking API returned an invalid response.", status=response.status_code
            ) from e

    # =========================================================================
    # Operations
    # =========================================================================

    def _fetch_bookings(
        self,
        bucket: str,
        limit: Optional[int] = None,
        before_start_at: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        collector_party_id: Optional[str] = None,
    ) -> CollectorBookingsResponse:
        party_id = collector_party_id or self.collector_party_id
        try:
            data = self._request(
                "GET",
                self.bookings_path(bucket, party_id),
                params=build_bookings_params(limit, before_start_at, statuses),
            )
            return CollectorBookingsResponse.model_validate(data)
        except Exception as e:
            api_error = to_api_request_error(e)
            capture_observed_error(
                api_error,
                area="collector_bookings_fetch",
                metadata={
                    "bucket": bucket,
                    "collectorPartyId": party_id,
                    "code": api_error.code,
                    "status": api_error.status,
                },
            )
            raise api_error from e

    def get_current_bookings(self, limit=None, before_start_at=None, statuses=None, collector_party_id=None):
        return self._fetch_bookings("current", limit, before_start_at, statuses, collector_party_id)

    def get_past_bookings(self, limit=None, before_start_at=None, statuses=None, collector_party_id=None):
        return self._fetch_bookings("past", limit, before_start_at, statuses, collector_party_id)

    def update_booking_patients(
        self,
        booking_id: Union[str, int],
        updates: List[BookingPatientUpdate],
        collector_party_id: Optional[str] = None,
    ) -> UpdateBookingPatientsResponse:
        """Send a batch of sparse patient updates. An empty batch is rejected locally."""
        if not updates:
            raise ApiRequestError("At least one patient update is required")

        party_id = collector_party_id or self.collector_party_id
        body = {"updates": [update.to_api_payload() for update in updates]}
        try:
            data = self._request("PATCH", self.patients_path(booking_id, party_id), json=body)
            return UpdateBookingPatientsResponse.model_validate(data)
        except Exception as e:
            api_error = to_api_request_error(e)
            capture_observed_error(
                api_error,
                area="collector_booking_patients_update",
                metadata={
                    "bookingId": str(booking_id),
                    "collectorPartyId": party_id,
                    "code": api_error.code,
                    "status": api_error.status,
                },
            )
            raise api_error from e

    def mark_sample_collected(
        self,
        booking_id: Union[str, int],
        event_id: Optional[str] = None,
        collected_at: Optional[str] = None,
        raw_event: Optional[Dict[str, Any]] = None,
        collector_party_id: Optional[str] = None,
    ) -> MarkSampleCollectedResponse:
        """Mark the booking's sample as collected. The backend deduplicates on event_id."""
        party_id = collector_party_id or self.collector_party_id
        body: Dict[str, Any] = {}
        if event_id:
            body["event_id"] = event_id
        if collected_at:
            body["collected_at"] = collected_at
        if raw_event:
            body["raw_event"] = raw_event

        try:
            data = self._request("PATCH", self.sample_collected_path(booking_id, party_id), json=body)
            return MarkSampleCollectedResponse.model_validate(data)
        except Exception as e:
            api_error = to_api_request_error(e)
            capture_observed_error(
                api_error,
                area="collector_booking_sample_collected",
                metadata={
                    "bookingId": str(booking_id),
                    "collectorPartyId": party_id,
                    "code": api_error.code,
                    "status": api_error.status,
                },
            )
            raise api_error from e

    def submit_sample_collection(
        self,
        booking_id: Union[str, int],
        updates: List[BookingPatientUpdate],
        event_id: str,
        collected_at: str,
    ) -> MarkSampleCollectedResponse:
        """Patient updates (if any) followed by mark-collected, as one logical submission."""
        if updates:
            self.update_booking_patients(booking_id, updates)
        return self.mark_sample_collected(
            booking_id,
            event_id=event_id,
            collected_at=collected_at,
            raw_event={"source": SAMPLE_EVENT_SOURCE},
        )
