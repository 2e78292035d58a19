"""
Feed API: GET /feeds/{secret}.{format}.

Contract: 200 + feed body in the format's content type; 401 when the secret
is unknown; 400 for unsupported formats; 500 envelope when options or an
event cannot be rendered.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import Response

from feed_agent.engine import process_feed_request

router = APIRouter(prefix="/feeds", tags=["feeds"])


@router.get("/{secret}.{fmt}")
async def get_feed(secret: str, fmt: str) -> Response:
    """
    Render the agent's window from the cache when it is still usable. A first
    read, or a read after the ordering or size changed, rebuilds the window
    and stores the new watermark.
    """
    result = process_feed_request(secret=secret, fmt=fmt)
    return Response(
        content=result.body,
        status_code=result.status_code,
        media_type=result.content_type,
        headers=result.headers,
    )
