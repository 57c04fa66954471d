"""
Untrusted model output decoding.

The vision model is asked for strict JSON, but nothing it returns is
trusted: text extraction, fence stripping, JSON parsing and field
normalization all happen here, and every entry point either returns a
well-typed value or None. Nothing in this module raises past its own
scope.
"""

import base64
import binascii
import json
import logging
import math
import re
from typing import Any, Dict, Optional

from collector.models.schemas import (
    DocumentType,
    DocumentValidation,
    ExtractedDocumentData,
    ProcessedDocumentPayload,
)

logger = logging.getLogger(__name__)

_FENCE_OPEN_JSON = re.compile(r"^```json\s*", re.IGNORECASE)
_FENCE_OPEN = re.compile(r"^```\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")
_NON_BASE64 = re.compile(r"[^A-Za-z0-9+/=]")
_WHITESPACE = re.compile(r"\s+")

HEIF_BRANDS = {"heic", "heix", "hevc", "hevx", "mif1", "msf1"}


# =============================================================================
# Response text
# =============================================================================

def extract_output_text(payload: Any) -> str:
    """
    Pull the model's text out of a Responses API payload.

    Prefers the consolidated ``output_text`` field; otherwise joins every
    ``output_text``/``text`` content chunk in ``output``.
    """
    if not isinstance(payload, dict):
        return ""

    output_text = payload.get("output_text")
    if isinstance(output_text, str) and output_text:
        return output_text

    chunks = []
    for item in payload.get("output") or []:
        if not isinstance(item, dict):
            continue
        for content in item.get("content") or []:
            if not isinstance(content, dict):
                continue
            if content.get("type") in ("output_text", "text") and isinstance(content.get("text"), str):
                chunks.append(content["text"])

    return "\n".join(chunks).strip()


def strip_code_fences(text: str) -> str:
    cleaned = _FENCE_OPEN_JSON.sub("", text)
    cleaned = _FENCE_OPEN.sub("", cleaned)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def parse_json_response(text: str) -> Optional[Any]:
    """Parse model text as JSON after removing Markdown fences."""
    try:
        return json.loads(strip_code_fences(text))
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Model output is not valid JSON: {e}")
        return None


# =============================================================================
# Scalars
# =============================================================================

def clamp_confidence(value: Any) -> float:
    """Coerce to a float in [0, 1]; anything non-numeric becomes 0."""
    if isinstance(value, bool):
        value = float(value)
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return max(0.0, min(1.0, number))


def _clean_string(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def normalize_document_number(value: str) -> str:
    """Drop whitespace, hyphens and anything non-alphanumeric."""
    cleaned = _WHITESPACE.sub("", value or "").replace("-", "")
    return re.sub(r"[^A-Za-z0-9]", "", cleaned)


# =============================================================================
# Base64 images
# =============================================================================

def _strip_wrappers(raw: str) -> str:
    value = raw.strip()
    if len(value) >= 3 and value[:2] in ("b'", 'b"') and value[-1] == value[1]:
        value = value[2:-1]
    if len(value) >= 2 and value[0] in ("'", '"') and value[-1] == value[0]:
        value = value[1:-1]
    return value.strip()


def _normalize_body(raw: str) -> str:
    body = raw.replace("\\n", "").replace("\\r", "")
    body = _WHITESPACE.sub("", body)
    body = body.replace("-", "+").replace("_", "/")
    body = _NON_BASE64.sub("", body)
    remainder = len(body) % 4
    if remainder:
        body += "=" * (4 - remainder)
    return body


def normalize_base64(value: str) -> str:
    """
    Canonicalize a base64 image string.

    Strips a ``data:`` URI prefix and quoting wrappers, removes whitespace,
    converts the URL-safe alphabet to the standard one and re-pads to a
    multiple of 4. Idempotent.
    """
    if not isinstance(value, str) or not value.strip():
        return ""

    unwrapped = _strip_wrappers(value)
    if not unwrapped.startswith("data:"):
        return _normalize_body(unwrapped)

    comma = unwrapped.find(",")
    if comma == -1:
        return ""
    return _normalize_body(unwrapped[comma + 1:])


def has_supported_image_signature(data: bytes) -> bool:
    """Magic-byte check for JPEG, PNG, WEBP and HEIC/HEIF uploads."""
    if len(data) < 12:
        return False

    is_jpeg = data[:3] == b"\xff\xd8\xff"
    is_png = data[:4] == b"\x89PNG"
    is_webp = data[:4] == b"RIFF" and data[8:12] == b"WEBP"

    ftyp = data[4:8].decode("ascii", errors="ignore").lower()
    brand = data[8:12].decode("ascii", errors="ignore").lower()
    is_heif = ftyp == "ftyp" and brand in HEIF_BRANDS

    return is_jpeg or is_png or is_webp or is_heif


def is_likely_image_base64(value: str) -> bool:
    """True when the base64 string decodes to a recognizable image header."""
    try:
        data = base64.b64decode(value, validate=False)
    except (binascii.Error, ValueError):
        return False
    if len(data) < 16:
        return False

    return (
        data[:3] == b"\xff\xd8\xff"
        or data[:4] == b"\x89PNG"
        or data[:3] == b"GIF"
        or data[:2] == b"BM"
        or (data[:4] == b"RIFF" and data[8:12] == b"WEBP")
    )


# =============================================================================
# Payload
# =============================================================================

def to_normalized_payload(
    value: Any,
    expected_type: DocumentType,
) -> Optional[ProcessedDocumentPayload]:
    """
    Build a ProcessedDocumentPayload from parsed model JSON.

    Returns None when the value is not an object or carries no usable
    cropped image. The document type is always the one requested, never
    the one the model claims.
    """
    if not isinstance(value, dict):
        return None

    extracted: Dict[str, Any] = value.get("extractedData") if isinstance(value.get("extractedData"), dict) else {}
    validation: Dict[str, Any] = value.get("validation") if isinstance(value.get("validation"), dict) else {}

    image = normalize_base64(value.get("croppedDocumentImageBase64"))
    if not image or not is_likely_image_base64(image):
        logger.warning("Model output has no usable cropped document image")
        return None

    starts_with_784 = validation.get("startsWith784")
    if not isinstance(starts_with_784, bool):
        legacy = validation.get("startsWith789")
        starts_with_784 = legacy if isinstance(legacy, bool) else False
    is_valid_eid = validation.get("isValidEID")
    if not isinstance(is_valid_eid, bool):
        is_valid_eid = False

    payload = ProcessedDocumentPayload(
        document_type=expected_type,
        extracted_data=ExtractedDocumentData(
            full_name=_clean_string(extracted.get("fullName")),
            gender=_clean_string(extracted.get("gender")),
            document_number=_clean_string(extracted.get("documentNumber")),
            nationality=_clean_string(extracted.get("nationality")),
        ),
        validation=DocumentValidation(
            is_valid_eid=is_valid_eid,
            starts_with_784=starts_with_784,
        ),
        cropped_document_image_base64=image,
        confidence_score=clamp_confidence(value.get("confidenceScore")),
    )

    return apply_document_validation_flags(payload)


def apply_document_validation_flags(payload: ProcessedDocumentPayload) -> ProcessedDocumentPayload:
    """Recompute the EID flags from the document number; reset them elsewhere."""
    if payload.document_type == DocumentType.EID_FRONT:
        number = _WHITESPACE.sub("", payload.extracted_data.document_number).replace("-", "")
        starts_with_784 = number.startswith("784")
        payload.validation = DocumentValidation(
            starts_with_784=starts_with_784,
            is_valid_eid=starts_with_784 and payload.validation.is_valid_eid,
        )
    else:
        payload.validation = DocumentValidation()
    return payload
