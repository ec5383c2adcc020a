"""Error envelope shared by every endpoint.

{ "error": { "code": "STORE_NOT_FOUND", "message": "...", "detail": {...} } }
"""

from typing import Any

from pydantic import BaseModel

VALIDATION_ERROR = "VALIDATION_ERROR"
STORE_NOT_FOUND = "STORE_NOT_FOUND"
UNAUTHORIZED = "UNAUTHORIZED"
DEDUPE_IN_PROGRESS = "DEDUPE_IN_PROGRESS"
INTERNAL_ERROR = "INTERNAL_ERROR"


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: dict[str, Any] | None = None


class ErrorResponse(BaseModel):
    error: ErrorDetail


def error_body(code: str, message: str, detail: dict[str, Any] | None = None) -> dict[str, Any]:
    """Envelope as a plain dict (JSONResponse content or HTTPException detail)."""
    return ErrorResponse(error=ErrorDetail(code=code, message=message, detail=detail)).model_dump()
