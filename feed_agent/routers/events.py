"""
Event intake API: POST /events.

Contract: 200 + { ok, appended, event_ids, window_size }; 401 when AUTH_TOKEN
is set and not supplied; 400 malformed JSON; 422 invalid batch shape.
"""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from feed_agent.engine import process_receive_request

router = APIRouter(prefix="/events", tags=["events"])


@router.post("")
async def post_events(request: Request) -> JSONResponse:
    """
    Append a batch of events and fold it into the window (forced reload).
    """
    result = await process_receive_request(request=request)
    return JSONResponse(status_code=result["status_code"], content=result["body"])
