"""
Tests for the booking API client, its error classification and row mapping.
"""

from unittest.mock import MagicMock
from urllib.parse import unquote

import pytest
import requests

from collector.client.booking_api import BookingApiClient, build_bookings_params, clamp_limit
from collector.client.errors import (
    MISSING_NATIONAL_ID_SUBMISSION_MESSAGE,
    NETWORK_ERROR_MESSAGE,
    SERVER_UNAVAILABLE_MESSAGE,
    ApiRequestError,
    build_issue_report_link,
    get_api_error_code,
    get_api_error_id,
    get_api_error_message,
    get_missing_patient_ids,
    get_sample_submission_error,
    is_likely_network_error_message,
    is_network_api_error,
    to_api_request_error,
)
from collector.client.mappers import map_booking_status, map_collector_booking_to_row
from collector.models.schemas import BookingPatientUpdate, BookingStatus, CollectorBookingItem

from conftest import make_response

BOOKINGS_BODY = {
    "collector": {"party_id": "BOOM_HEALTH", "display_name": "Boom Health"},
    "bucket": "current",
    "items": [
        {
            "booking_id": 700001,
            "order_id": "BH-700001",
            "booking_status": "ACTIVE",
            "start_at": "2024-05-01T08:00:00Z",
            "end_at": "2024-05-01T08:45:00Z",
            "patients": [
                {"patient_id": "PT-1", "name": "Amina Hassan", "age": 34, "gender": "female", "national_id": None},
                {"patient_id": "PT-2", "name": "Omar Khalid", "age": 41, "tests_count": 2},
            ],
        }
    ],
    "next_before_start_at": None,
}


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    return session


@pytest.fixture
def api(session):
    return BookingApiClient(
        base_url="https://api.example.com/",
        collector_party_id="BOOM HEALTH",
        session=session,
        timeout_s=5,
    )


class TestParams:
    @pytest.mark.parametrize("limit,expected", [(None, None), (0, None), (-5, 1), (50, 50), (500, 200)])
    def test_clamp_limit(self, limit, expected):
        """Test page size clamping."""
        assert clamp_limit(limit) == expected

    def test_build_params(self):
        """Test query parameters carry limit, cursor and status filter."""
        params = build_bookings_params(limit=500, before_start_at="2024-05-01T00:00:00Z", statuses=["CREATED", "ACTIVE"])

        assert params == {"limit": 200, "before_start_at": "2024-05-01T00:00:00Z", "status": "CREATED,ACTIVE"}

    def test_empty_params(self):
        """Test unset filters are left out of the query."""
        assert build_bookings_params() == {}


class TestBookingApiClient:
    def test_headers(self, api, session):
        """Test the session sends JSON headers."""
        assert session.headers["Accept"] == "application/json"
        assert session.headers["Content-Type"] == "application/json"

    def test_get_current_bookings(self, api, session):
        """Test fetching the current bookings bucket."""
        session.request.return_value = make_response(200, BOOKINGS_BODY)

        response = api.get_current_bookings(limit=200)

        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == "https://api.example.com/collectors/BOOM%20HEALTH/bookings/current"
        assert session.request.call_args.kwargs["params"] == {"limit": 200}
        assert session.request.call_args.kwargs["timeout"] == 5
        assert response.items[0].booking_id == 700001

    def test_get_past_bookings(self, api, session):
        """Test fetching the past bookings bucket."""
        session.request.return_value = make_response(200, {**BOOKINGS_BODY, "bucket": "past"})

        api.get_past_bookings(statuses=["FULFILLED"])

        assert session.request.call_args.args[1].endswith("/bookings/past")
        assert session.request.call_args.kwargs["params"] == {"status": "FULFILLED"}

    def test_update_patients_body(self, api, session):
        """Test patient updates are sent as snake_case update objects."""
        session.request.return_value = make_response(200, {
            "status": "updated", "booking_id": 700001, "patients": [], "remap": [],
        })
        updates = [
            BookingPatientUpdate(current_patient_id="PT-1", national_id="784199012345671"),
            BookingPatientUpdate(current_patient_id="PT-2", new_patient_id="PT-9", age=42),
        ]

        api.update_booking_patients(700001, updates)

        method, url = session.request.call_args.args
        assert method == "PATCH"
        assert url.endswith("/bookings/700001/patients")
        assert session.request.call_args.kwargs["json"] == {
            "updates": [
                {"current_patient_id": "PT-1", "national_id": "784199012345671"},
                {"current_patient_id": "PT-2", "new_patient_id": "PT-9", "age": 42},
            ]
        }

    def test_empty_update_rejected_locally(self, api, session):
        """Test an empty update list fails without a request."""
        with pytest.raises(ApiRequestError):
            api.update_booking_patients(700001, [])
        session.request.assert_not_called()

    def test_mark_sample_collected_body(self, api, session):
        """Test the sample-collected body includes only the given fields."""
        session.request.return_value = make_response(200, {"status": "ok", "booking_id": 700001})

        api.mark_sample_collected(
            700001,
            event_id="evt_sample_BH-700001_1",
            collected_at="2024-05-01T08:30:00.000Z",
            raw_event={"source": "collector_dashboard_web"},
        )

        assert session.request.call_args.args[1].endswith("/bookings/700001/sample-collected")
        assert session.request.call_args.kwargs["json"] == {
            "event_id": "evt_sample_BH-700001_1",
            "collected_at": "2024-05-01T08:30:00.000Z",
            "raw_event": {"source": "collector_dashboard_web"},
        }

    def test_submit_skips_patch_without_updates(self, api, session):
        """Test submission goes straight to mark-collected when nothing changed."""
        session.request.return_value = make_response(200, {"status": "ok", "booking_id": 1})

        api.submit_sample_collection(1, [], event_id="evt", collected_at="now")

        assert session.request.call_count == 1
        assert session.request.call_args.args[1].endswith("/sample-collected")

    def test_business_error(self, api, session):
        """Test a backend error body becomes an ApiRequestError with its code."""
        session.request.return_value = make_response(422, {
            "error": "missing_patient_national_id",
            "message": "national id missing",
            "missing_patient_ids": ["PT-1"],
        })

        with pytest.raises(ApiRequestError) as exc:
            api.mark_sample_collected(1, event_id="evt")

        assert exc.value.status == 422
        assert exc.value.code == "missing_patient_national_id"
        assert exc.value.is_network_error is False
        assert get_missing_patient_ids(exc.value) == ["PT-1"]

    def test_connection_error_is_network(self, api, session):
        """Test a connection failure is flagged as a network error."""
        session.request.side_effect = requests.ConnectionError("Max retries exceeded")

        with pytest.raises(ApiRequestError) as exc:
            api.mark_sample_collected(1, event_id="evt")

        assert exc.value.is_network_error is True
        assert exc.value.status is None


class TestErrorClassification:
    def test_timeout_is_network(self):
        """Test a timeout is flagged as a network error."""
        assert is_network_api_error(requests.Timeout("read timed out"))

    def test_message_patterns(self):
        """Test connectivity wording is recognised in plain messages."""
        assert is_likely_network_error_message("TypeError: Failed to fetch")
        assert is_likely_network_error_message("getaddrinfo ENOTFOUND api.example.com")
        assert not is_likely_network_error_message("Booking was not found")
        assert not is_likely_network_error_message(None)

    def test_plain_exception(self):
        """Test an arbitrary exception keeps its message."""
        error = to_api_request_error(RuntimeError("socket ECONNRESET"))
        assert error.is_network_error is True

    def test_passthrough(self):
        """Test an ApiRequestError is returned unchanged."""
        error = ApiRequestError("x", status=400)
        assert to_api_request_error(error) is error

    def test_known_code_message(self):
        """Test known backend codes map to their user-facing message."""
        error = ApiRequestError("raw", status=404, code="booking_not_found")
        assert get_api_error_message(error) == "Booking was not found."
        assert get_api_error_code(error) == "booking_not_found"

    def test_server_error_message(self):
        """Test 5xx responses get the server unavailable message."""
        assert get_api_error_message(ApiRequestError("boom", status=502)) == SERVER_UNAVAILABLE_MESSAGE

    def test_network_message(self):
        """Test network errors get the connectivity message."""
        assert get_api_error_message(ApiRequestError("x", is_network_error=True)) == NETWORK_ERROR_MESSAGE

    def test_unknown_error_keeps_message(self):
        """Test an unmapped error keeps its own message."""
        assert get_api_error_message(ApiRequestError("Something specific", status=400)) == "Something specific"

    def test_error_id(self):
        """Test the error id is read from the error details."""
        error = ApiRequestError("x", details={"error_id": "req-123"})
        assert get_api_error_id(error) == "req-123"
        assert get_api_error_id(ApiRequestError("x")) is None

    def test_submission_message_for_missing_national_id(self):
        """Test the submission message for a missing national id."""
        error = ApiRequestError("x", status=422, code="missing_patient_national_id")
        assert get_sample_submission_error(error) == MISSING_NATIONAL_ID_SUBMISSION_MESSAGE


class TestIssueReportLink:
    def test_mailto(self):
        """Test the issue report link carries subject and body."""
        link = build_issue_report_link("BH-700001", "Booking was not found.", "booking_not_found", None)

        assert link.startswith("mailto:support@dardoc.com?subject=")
        subject, body = link.split("?", 1)[1].split("&")
        assert unquote(subject[len("subject="):]) == "DarDoc Sample Collection Issue - BH-700001"
        decoded = unquote(body[len("body="):])
        assert "Error ID: NA" in decoded
        assert "Reason: booking_not_found" in decoded
        assert "Message: Booking was not found." in decoded


class TestMappers:
    @pytest.mark.parametrize("raw,expected", [
        ("CREATED", BookingStatus.PENDING),
        ("ACTIVE", BookingStatus.CONFIRMED),
        ("FULFILLED", BookingStatus.RESULT_READY),
        ("CANCELLED", BookingStatus.CANCELLED),
        ("ON_HOLD", BookingStatus.UNKNOWN),
    ])
    def test_status(self, raw, expected):
        """Test booking status labels."""
        assert map_booking_status(raw) == expected

    def test_row(self):
        """Test mapping a booking API item to a row."""
        item = CollectorBookingItem.model_validate(BOOKINGS_BODY["items"][0])

        row = map_collector_booking_to_row(item)

        assert row.booking_id == "BH-700001"
        assert row.api_booking_id == 700001
        assert row.status == BookingStatus.CONFIRMED
        assert row.patient_name == "Amina Hassan +1"
        assert row.patients[1].tests_count == 2

    def test_row_without_order_id(self):
        """Test the booking id falls back to BK-<id>."""
        item = CollectorBookingItem(booking_id=5, booking_status="CREATED", start_at="2024-05-01T08:00:00Z")

        row = map_collector_booking_to_row(item)

        assert row.booking_id == "BK-5"
        assert row.patient_name == "Patient"
