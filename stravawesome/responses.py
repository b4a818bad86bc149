"""
Uniform response envelope: ``{success: true, data, message?}`` or
``{success: false, error, code?, details?}``.
"""
import logging
from typing import Any, Dict, Optional

from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


def success_response(data: Any, message: Optional[str] = None) -> Dict[str, Any]:
    body = {"success": True, "data": data}
    if message is not None:
        body["message"] = message
    return body


def error_response(error: str, status_code: int = 500, code: Optional[str] = None,
                   details: Any = None, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    logger.error(f"API Error: {error} (status={status_code}, code={code})")
    body: Dict[str, Any] = {"success": False, "error": error}
    if code is not None:
        body["code"] = code
    if details is not None:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body, headers=headers)
