"""
Patient form reconciliation.

Turns the collector's edited patient forms into the minimal set of
per-patient updates the booking API needs. Everything here is pure.
"""

from typing import List, Optional, Sequence, Union

from collector.models.schemas import BookingPatient, BookingPatientForm, BookingPatientUpdate


def parse_age(value: str) -> Optional[Union[int, float]]:
    """Numeric age from form input; None means "no change requested"."""
    trimmed = (value or "").strip()
    if not trimmed:
        return None
    try:
        parsed = float(trimmed)
    except ValueError:
        return None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        return None
    return int(parsed) if parsed.is_integer() else parsed


def map_patients_to_forms(patients: Sequence[BookingPatient]) -> List[BookingPatientForm]:
    return [
        BookingPatientForm(
            current_patient_id=patient.patient_id,
            name=patient.name or "",
            age="" if patient.age is None else str(patient.age),
            gender=patient.gender or "",
            national_id=patient.national_id or "",
            tests_count=patient.tests_count,
        )
        for patient in patients
    ]


def build_patient_updates(
    forms: Sequence[BookingPatientForm],
    source_patients: Sequence[BookingPatient],
) -> List[BookingPatientUpdate]:
    """
    Diff edited forms against the booking's patient snapshot.

    Forms with no matching source patient are dropped. Text fields are
    only sent when non-empty and different; national id is sent whenever
    it differs, so clearing it is a real update. Output order follows
    the forms.
    """
    source_by_id = {patient.patient_id: patient for patient in source_patients}
    updates = []

    for form in forms:
        source = source_by_id.get(form.current_patient_id)
        if source is None:
            continue

        next_new_patient_id = form.new_patient_id.strip()
        next_name = form.name.strip()
        next_gender = form.gender.strip()
        next_national_id = form.national_id.strip()
        next_age = parse_age(form.age)

        update = BookingPatientUpdate(current_patient_id=form.current_patient_id)

        if next_new_patient_id and next_new_patient_id != form.current_patient_id:
            update.new_patient_id = next_new_patient_id

        if next_name and next_name != source.name:
            update.name = next_name

        if next_age is not None and next_age != source.age:
            update.age = next_age

        if next_gender and next_gender != (source.gender or ""):
            update.gender = next_gender

        if next_national_id != (source.national_id or ""):
            update.national_id = next_national_id

        if update.changed_fields():
            updates.append(update)

    return updates


def missing_national_id_patient_ids(forms: Sequence[BookingPatientForm]) -> List[str]:
    return [form.current_patient_id for form in forms if not form.national_id.strip()]


def merge_missing_national_ids_from_document(
    updates: Sequence[BookingPatientUpdate],
    missing_patient_ids: Sequence[str],
    document_number: str,
) -> List[BookingPatientUpdate]:
    """Fill every patient lacking a national id with the scanned document number."""
    if not document_number or not missing_patient_ids:
        return list(updates)

    by_patient_id = {
        update.current_patient_id: update.model_copy() for update in updates
    }

    for patient_id in missing_patient_ids:
        existing = by_patient_id.get(patient_id) or BookingPatientUpdate(current_patient_id=patient_id)
        existing.national_id = document_number
        by_patient_id[patient_id] = existing

    return list(by_patient_id.values())
