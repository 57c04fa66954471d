"""
Shared fixtures: synthetic images, processed payloads and fake HTTP responses.
"""

import base64
import io
import os
from unittest.mock import MagicMock

import pytest
import requests
from PIL import Image

from collector.client.queue import InMemoryQueueStore, SampleSubmissionQueue
from collector.models.schemas import (
    BookingPatient,
    BookingRow,
    DocumentType,
    DocumentValidation,
    ExtractedDocumentData,
    ProcessedDocumentPayload,
)


def make_image_bytes(width=64, height=48, fmt="PNG", color=(200, 120, 40), mode="RGB", noise=False, **save_kwargs):
    """Encode a synthetic image. Noise makes it incompressible."""
    if noise:
        img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
        if mode != "RGB":
            img = img.convert(mode)
    else:
        img = Image.new(mode, (width, height), color)
    buffer = io.BytesIO()
    img.save(buffer, fmt, **save_kwargs)
    return buffer.getvalue()


def make_payload(
    document_type=DocumentType.PASSPORT,
    confidence=0.91,
    document_number="A12345678",
    full_name="Amina Hassan",
    starts_with_784=False,
    is_valid_eid=False,
    cropped=None,
):
    return ProcessedDocumentPayload(
        document_type=document_type,
        extracted_data=ExtractedDocumentData(
            full_name=full_name,
            gender="female",
            document_number=document_number,
            nationality="UAE",
        ),
        validation=DocumentValidation(is_valid_eid=is_valid_eid, starts_with_784=starts_with_784),
        cropped_document_image_base64=cropped if cropped is not None else SMALL_PNG_BASE64,
        confidence_score=confidence,
    )


def make_response(status_code=200, json_body=None):
    """A requests.Response double with .ok/.json()/.raise_for_status()."""
    response = MagicMock(spec=requests.Response)
    response.status_code = status_code
    response.ok = status_code < 400
    if json_body is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = json_body

    def raise_for_status():
        if status_code >= 400:
            raise requests.HTTPError(f"{status_code} Error", response=response)

    response.raise_for_status.side_effect = raise_for_status
    return response


SMALL_PNG_BYTES = make_image_bytes(32, 24)
SMALL_PNG_BASE64 = base64.b64encode(SMALL_PNG_BYTES).decode("ascii")


@pytest.fixture
def png_bytes():
    return SMALL_PNG_BYTES


@pytest.fixture
def png_base64():
    return SMALL_PNG_BASE64


@pytest.fixture
def jpeg_bytes():
    return make_image_bytes(64, 48, fmt="JPEG")


@pytest.fixture
def noisy_png_bytes():
    """~3MB incompressible PNG, inside the resize limit."""
    return make_image_bytes(1200, 900, fmt="PNG", noise=True)


@pytest.fixture
def memory_queue():
    return SampleSubmissionQueue(InMemoryQueueStore())


@pytest.fixture
def booking():
    return BookingRow(
        booking_id="BH-700001",
        api_booking_id=700001,
        order_id="BH-700001",
        patients=[
            BookingPatient(patient_id="PT-1", name="Amina Hassan", age=34, gender="female", national_id=None),
            BookingPatient(patient_id="PT-2", name="Omar Khalid", age=41, gender="male", national_id="784-1985-1234567-1"),
        ],
    )
