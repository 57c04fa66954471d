import logging
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from collector.config import settings
from collector.deadline import DeadlineExceeded, call_with_deadline
from collector.models.schemas import DOCUMENT_TYPES, DocumentType

logger = logging.getLogger(__name__)

# Client will be initialized lazily when needed
_client: Optional[OpenAI] = None

JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "additionalProperties": False,
    "required": [
        "documentType",
        "extractedData",
        "validation",
        "croppedDocumentImageBase64",
        "confidenceScore",
    ],
    "properties": {
        "documentType": {"type": "string", "enum": DOCUMENT_TYPES},
        "extractedData": {
            "type": "object",
            "additionalProperties": False,
            "required": ["fullName", "gender", "documentNumber", "nationality"],
            "properties": {
                "fullName": {"type": "string"},
                "gender": {"type": "string"},
                "documentNumber": {"type": "string"},
                "nationality": {"type": "string"},
            },
        },
        "validation": {
            "type": "object",
            "additionalProperties": False,
            "required": ["isValidEID", "startsWith784"],
            "properties": {
                "isValidEID": {"type": "boolean"},
                "startsWith784": {"type": "boolean"},
            },
        },
        "croppedDocumentImageBase64": {"type": "string"},
        "confidenceScore": {"type": "number"},
    },
}


class VisionRequestError(Exception):
    """The vision API answered with a non-2xx status."""

    def __init__(self, status_code: int, body: str = ""):
        super().__init__(f"Vision request failed with status {status_code}")
        self.status_code = status_code
        self.body = body


class VisionTimeoutError(Exception):
    """The vision API did not answer before the deadline."""


def get_api_key() -> Optional[str]:
    """Configured credential (OPENAI_API_KEY, else OPENAI_API_KEY_DEV)."""
    return settings.openai_api_key or None


def get_client() -> OpenAI:
    """Get or initialize OpenAI client. Raises error if API key not configured."""
    global _client
    if _client is None:
        api_key = get_api_key()
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY not set. Document processing requires an API key."
            )
        # Socket timeouts only; call_vision_model enforces the overall deadline
        _client = OpenAI(
            api_key=api_key,
            base_url=settings.openai_base_url,
            timeout=settings.openai_document_timeout_s,
            max_retries=0,
        )
    return _client


def build_instruction_prompt(document_type: DocumentType) -> str:
    """Deterministic extraction + cleanup instructions for one document type."""
    return "\n".join([
        "You are an OCR + document cleanup processor.",
        f"Expected document type: {document_type.value}.",
        "Process the provided image before any preview is shown:",
        "1) Detect document edges.",
        "2) Perspective-correct the document.",
        "3) Remove all background noise (hands, fingers, shadows, table).",
        "4) Return a tightly cropped professional scanner-style result.",
        "For PASSPORT and EID_FRONT extract: fullName, gender, documentNumber, nationality.",
        "For EID_BACK extraction fields can be empty strings.",
        "For EID_FRONT, startsWith784 must reflect whether documentNumber begins with 784.",
        "If the image is not the expected document type, do not hallucinate values.",
        "For unsupported documents, keep extracted fields empty and set confidenceScore to 0.2 or lower.",
        "Return ONLY strict JSON that matches the provided schema.",
        "croppedDocumentImageBase64 must be raw base64 without data URL prefix.",
        "If image is unclear, return low confidenceScore (<0.6) and best effort fields.",
    ])


def build_request_body(document_type: DocumentType, image_data_url: str) -> Dict[str, Any]:
    return {
        "model": settings.openai_document_model,
        "input": [
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": build_instruction_prompt(document_type)},
                    {"type": "input_image", "image_url": image_data_url},
                ],
            }
        ],
        "text": {
            "format": {
                "type": "json_schema",
                "name": "document_processing_output",
                "schema": JSON_SCHEMA,
                "strict": True,
            }
        },
    }


def call_vision_model(document_type: DocumentType, image_data_url: str) -> Dict[str, Any]:
    """
    Send one image to the Responses API and return the raw response payload.

    Raises VisionTimeoutError at the deadline and VisionRequestError on any
    non-2xx answer. The payload itself is untrusted and returned as a dict.
    """
    client = get_client()
    body = build_request_body(document_type, image_data_url)

    logger.info(f"Sending {document_type.value} image to {settings.openai_document_model}")

    try:
        response = call_with_deadline(
            client.responses.create,
            settings.openai_document_timeout_s,
            **body,
            timeout=settings.openai_document_timeout_s,
        )
    except (openai.APITimeoutError, DeadlineExceeded) as e:
        raise VisionTimeoutError(str(e)) from e
    except openai.APIStatusError as e:
        try:
            text = e.response.text if e.response is not None else ""
        except Exception:
            text = ""
        raise VisionRequestError(e.status_code, text or "") from e

    return response.model_dump()
