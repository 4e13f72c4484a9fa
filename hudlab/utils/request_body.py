"""
JSON body parsing for handlers that authorize before they validate input.
"""
import json
from typing import Any, Dict

from fastapi import HTTPException, Request, status


async def read_json_object(request: Request, required: bool = True) -> Dict[str, Any]:
    """
    Decode the request body as a JSON object.

    Handlers call this after their role dependencies have resolved, so a
    caller without the role gets 401/403 whatever body it sent.

    Args:
        request: Incoming request
        required: When False an empty body decodes to {}

    Raises:
        HTTPException: 400 for a missing, malformed or non-object body
    """
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request body is required")
        return {}

    try:
        body = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON body")

    if not isinstance(body, dict):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Request body must be a JSON object",
        )
    return body
