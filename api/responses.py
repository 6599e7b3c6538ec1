"""
Response envelope shared by every endpoint.

    {"success": bool, "message"?: str, "data"?: any, "error"?: str}
"""
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    """Successful envelope; empty fields are omitted."""
    body: Dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = jsonable_encoder(data)
    return body


def failure(error: str, message: str, **extra: Any) -> Dict[str, Any]:
    """Error envelope."""
    body: Dict[str, Any] = {"success": False, "error": error, "message": message}
    body.update(jsonable_encoder(extra))
    return body
