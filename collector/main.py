"""
Sample Collector - FastAPI Application

Server side of the collector dashboard.

Endpoints:
- /health - Liveness and configuration check
- /api/document/process - Identity document scan (passport, EID front/back)
"""

import asyncio
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Union

from fastapi import FastAPI, File, Form, UploadFile
from fastapi.responses import JSONResponse

from collector.config import settings
from collector.documents.proxy import (
    NOT_CLEAR_MESSAGE,
    DocumentProxyError,
    UploadedImage,
    process_document,
)
from collector.documents.vision import get_api_key
from collector.models.schemas import (
    ErrorReason,
    ProcessedDocumentErrorPayload,
    ProcessedDocumentPayload,
)
from collector.observability.telemetry import capture_observed_error, track_api_telemetry

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Vision calls are blocking; keep them off the event loop
_executor = ThreadPoolExecutor(max_workers=4)

# Create FastAPI app
app = FastAPI(
    title="Sample Collector",
    description="Booking and sample collection backend for home-visit collectors",
    version="1.0.0",
)


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": "1.0.0",
        "document_processing_configured": bool(get_api_key()),
    }


def _respond(
    payload: Union[ProcessedDocumentPayload, ProcessedDocumentErrorPayload],
    status_code: int,
    started_at: float,
    error_code: Optional[str] = None,
    document_type: Optional[str] = None,
) -> JSONResponse:
    track_api_telemetry(
        name="api_document_process",
        duration_ms=(time.monotonic() - started_at) * 1000,
        success=status_code == 200,
        status_code=status_code,
        error_code=error_code,
        metadata={"documentType": document_type} if document_type else None,
    )
    return JSONResponse(content=payload.to_wire(), status_code=status_code)


@app.post("/api/document/process")
async def process_document_endpoint(
    documentType: str = Form(""),
    file: Optional[UploadFile] = File(None),
):
    """
    Scan one identity document image.

    Returns the normalized payload (200) or an error payload whose HTTP
    status reflects the failure category (400/413/415/422/500 or the
    upstream model status).
    """
    started_at = time.monotonic()
    document_type = documentType.strip() or None

    upload = None
    if file is not None:
        upload = UploadedImage(
            filename=file.filename or "",
            content_type=file.content_type or "",
            data=await file.read(),
        )

    loop = asyncio.get_running_loop()
    try:
        payload = await loop.run_in_executor(_executor, process_document, documentType, upload)
    except DocumentProxyError as e:
        logger.warning(f"Document processing rejected: {e.reason.value} ({e.status_code}) {e.message}")
        return _respond(
            e.to_payload(str(uuid.uuid4())),
            e.status_code,
            started_at,
            error_code=e.reason.value,
            document_type=document_type if e.reason != ErrorReason.INVALID_DOCUMENT_TYPE else None,
        )
    except Exception as e:
        capture_observed_error(e, area="api_document_process")
        error = DocumentProxyError(NOT_CLEAR_MESSAGE, 500, ErrorReason.DOCUMENT_NOT_CLEAR, retryable=True)
        return _respond(
            error.to_payload(str(uuid.uuid4())),
            500,
            started_at,
            error_code=ErrorReason.DOCUMENT_NOT_CLEAR.value,
        )

    return _respond(payload, 200, started_at, document_type=document_type)


# =============================================================================
# Run
# =============================================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "collector.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
