"""
Mapping from booking API items to the collector's booking rows.
"""

from typing import List

from collector.models.schemas import (
    BookingPatient,
    BookingRow,
    BookingStatus,
    CollectorBookingItem,
)

_STATUS_MAP = {
    "CREATED": BookingStatus.PENDING,
    "ACTIVE": BookingStatus.CONFIRMED,
    "FULFILLED": BookingStatus.RESULT_READY,
    "CANCELLED": BookingStatus.CANCELLED,
}


def map_booking_status(status: str) -> BookingStatus:
    return _STATUS_MAP.get(status, BookingStatus.UNKNOWN)


def map_patients(item: CollectorBookingItem) -> List[BookingPatient]:
    return [
        BookingPatient(
            patient_id=patient.patient_id,
            name=patient.name,
            age=patient.age,
            gender=patient.gender,
            national_id=patient.national_id,
            tests_count=patient.tests_count,
        )
        for patient in item.patients
    ]


def map_collector_booking_to_row(item: CollectorBookingItem) -> BookingRow:
    """Order id doubles as the display id; bookings without one get `BK-<id>`."""
    patients = map_patients(item)
    primary_name = patients[0].name if patients and patients[0].name else "Patient"
    additional = max(0, len(patients) - 1)

    return BookingRow(
        booking_id=item.order_id or f"BK-{item.booking_id}",
        api_booking_id=item.booking_id,
        order_id=item.order_id,
        status=map_booking_status(item.booking_status),
        booking_status_raw=item.booking_status,
        start_at=item.start_at,
        end_at=item.end_at,
        patient_name=f"{primary_name} +{additional}" if additional else primary_name,
        patients=patients,
    )
