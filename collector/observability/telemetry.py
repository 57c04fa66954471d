"""
API telemetry and observed-error capture.

Every call site reports through these two functions. Neither ever raises:
a broken telemetry sink must not change the outcome of the call it
describes.
"""

import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

from collector.config import settings

api_logger = logging.getLogger("telemetry.api")
error_logger = logging.getLogger("telemetry.error")

_BREADCRUMB_LIMIT = 100
_breadcrumbs: Deque[Dict[str, Any]] = deque(maxlen=_BREADCRUMB_LIMIT)
_lock = threading.Lock()


def telemetry_enabled() -> bool:
    return bool(settings.telemetry_enabled)


def track_api_telemetry(
    name: str,
    duration_ms: float,
    success: bool,
    status_code: Optional[int] = None,
    error_code: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    """Record one API call (endpoint, duration, outcome)."""
    try:
        record = {
            "name": name,
            "duration_ms": max(0, int(round(duration_ms))),
            "success": bool(success),
            "status_code": status_code,
            "error_code": error_code,
            "metadata": dict(metadata or {}),
        }

        if record["success"]:
            api_logger.info(f"{name} success {record}")
        else:
            api_logger.warning(f"{name} failure {record}")

        if telemetry_enabled():
            with _lock:
                _breadcrumbs.append(record)
    except Exception as e:
        api_logger.debug(f"Dropping telemetry record for {name}: {e}")


def capture_observed_error(
    error: BaseException,
    area: str,
    metadata: Optional[Dict[str, Any]] = None,
    tags: Optional[Dict[str, str]] = None,
) -> None:
    """Log an unexpected error with its area and context."""
    try:
        error_logger.error(
            f"[{area}] {type(error).__name__}: {error} "
            f"metadata={metadata or {}} tags={tags or {}}",
            exc_info=(type(error), error, error.__traceback__),
        )
    except Exception as e:
        error_logger.debug(f"Dropping observed error for {area}: {e}")


def recent_breadcrumbs() -> List[Dict[str, Any]]:
    with _lock:
        return list(_breadcrumbs)


def clear_breadcrumbs() -> None:
    with _lock:
        _breadcrumbs.clear()
