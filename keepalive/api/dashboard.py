"""
Dashboard routes: the static index page and recent log lines.
"""

from typing import Any, Literal, Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response

from keepalive.lib.logger import get_log_buffer

router = APIRouter()

MAX_LOG_LINES = 500


@router.get("/")
async def index(request: Request) -> Response:
    """Serve the index page if present, else a plain-text fallback."""
    index_path = request.app.state.settings.index_path
    if index_path.is_file():
        return FileResponse(index_path)
    return PlainTextResponse("Index not found")


@router.get("/logs")
async def recent_logs(
    limit: int = Query(100, ge=1, description="Number of entries to return"),
    source: Optional[Literal["launcher", "worker"]] = Query(
        None, description="Only entries from the launcher or from the worker's output"
    ),
) -> dict[str, Any]:
    """Recent launcher and worker log entries, oldest first."""
    entries = get_log_buffer().get_recent(min(limit, MAX_LOG_LINES), source=source)
    return {"entries": entries, "count": len(entries)}
