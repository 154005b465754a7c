"""FastAPI web server for cursor-history (read-only JSON API)."""

import logging
from urllib.parse import quote

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, Response

from .backup import list_backups
from .debug import debug_log_from_env
from .errors import CursorHistoryError, InvalidInputError, LockedError, NotFoundError
from .export import (
    backup_info_to_dict,
    parse_message_types,
    safe_filename,
    search_result_to_dict,
    session_summary_to_dict,
    session_to_dict,
    session_to_json,
    session_to_markdown,
    workspace_to_dict,
)
from .search import DEFAULT_CONTEXT_CHARS
from .storage import CursorStorage

logger = logging.getLogger(__name__)

app = FastAPI(title="cursor-history", version="0.1.0")


def _attachment(stem: str, ext: str) -> str:
    """Content-Disposition with an ASCII fallback name and the UTF-8 name (RFC 5987)."""
    fallback = stem.encode("ascii", "ignore").decode("ascii").strip() or "session"
    encoded = quote(f"{stem}.{ext}")
    return f"attachment; filename=\"{fallback}.{ext}\"; filename*=UTF-8''{encoded}"


def get_storage() -> CursorStorage:
    """Build storage per request; Cursor mutates its stores while running."""
    return CursorStorage(log=debug_log_from_env())


@app.exception_handler(CursorHistoryError)
async def _handle_error(request: Request, exc: CursorHistoryError):
    if isinstance(exc, NotFoundError):
        status = 404
    elif isinstance(exc, InvalidInputError):
        status = 400
    elif isinstance(exc, LockedError):
        status = 503
    else:
        status = 500
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=status, content={"detail": str(exc), "kind": exc.kind.value})


# ── Routes ───────────────────────────────────────────────────────


@app.get("/api/workspaces")
async def get_workspaces():
    """Return workspaces with chat history, busiest first."""
    workspaces = await get_storage().list_workspaces()
    return {"count": len(workspaces), "workspaces": [workspace_to_dict(w) for w in workspaces]}


@app.get("/api/sessions")
async def get_sessions(
    workspace: str | None = Query(None, description="Filter by workspace id or path"),
    search: str | None = Query(None, description="Search in titles"),
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Return session summaries, most recent first."""
    sessions = await get_storage().list_sessions(workspace=workspace)

    if search:
        search_lower = search.lower()
        sessions = [
            s for s in sessions
            if search_lower in s.title.lower()
            or search_lower in (s.workspace_path or "").lower()
        ]

    total = len(sessions)
    sessions = sessions[offset: offset + limit]

    return {
        "total": total,
        "sessions": [session_summary_to_dict(s) for s in sessions],
    }


@app.get("/api/session/{ref}")
async def get_session(ref: str, only: str | None = Query(None, description="Message types to keep")):
    """Return one full session by index or id."""
    types = parse_message_types(only)
    session = await get_storage().get_session(ref)
    return session_to_dict(session, types)


@app.get("/api/search")
async def search_sessions(
    q: str = Query(..., description="Case-insensitive search query"),
    workspace: str | None = Query(None),
    context: int = Query(DEFAULT_CONTEXT_CHARS, ge=0),
    limit: int = Query(0, ge=0),
):
    """Search message content across sessions."""
    results = await get_storage().search_sessions(q, workspace=workspace, context_chars=context, limit=limit)
    return {
        "query": q,
        "count": len(results),
        "totalMatches": sum(r.match_count for r in results),
        "results": [search_result_to_dict(r) for r in results],
    }


@app.get("/api/export/{ref}")
async def export_session(
    ref: str,
    format: str = Query("md", description="Export format: md or json"),
    only: str | None = Query(None),
):
    """Export a session as Markdown or JSON."""
    if format not in ("md", "json"):
        raise HTTPException(status_code=400, detail=f"Unknown format: {format}")
    types = parse_message_types(only)
    session = await get_storage().get_session(ref)
    filename = safe_filename(session.title)

    if format == "json":
        return Response(
            content=session_to_json(session, types),
            media_type="application/json",
            headers={"Content-Disposition": _attachment(filename, "json")},
        )
    return Response(
        content=session_to_markdown(session, types),
        media_type="text/markdown",
        headers={"Content-Disposition": _attachment(filename, "md")},
    )


@app.get("/api/backups")
async def get_backups(directory: str | None = Query(None, description="Backup directory")):
    """Return available backups, newest first."""
    backups = await list_backups(directory)
    return {"count": len(backups), "backups": [backup_info_to_dict(b) for b in backups]}
