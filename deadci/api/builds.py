"""
Build view routes (JSON) and manual re-run.

Paths mirror the fingerprint hierarchy:
/builds/{domain}/{owner}/{repo}/{branch}/{commit}
Fewer than five parts list the matching builds, most recent first.
"""
import logging

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from deadci.core.events import Fingerprint
from deadci.core.services import CIServices
from deadci.core.store import EventRunningError, EventStoreError
from deadci.schemas.events import EventDetail, EventListResponse, RerunResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/builds", tags=["builds"])

# Characters never allowed in a path part
ILLEGAL_PATH_CHARS = frozenset(" \"\\\b\f\n\r\t\v")

MAX_PATH_PARTS = 5


def get_services(request: Request) -> CIServices:
    """Services attached to the app by the lifespan."""
    return request.app.state.services


def parse_path(path: str) -> list[str]:
    """
    Split a build path into its fingerprint parts.

    Raises:
        ValueError: too many parts, empty parts, or illegal characters
    """
    path = path.strip("/")
    if not path:
        return []
    parts = path.split("/")
    if len(parts) > MAX_PATH_PARTS:
        raise ValueError("Invalid path")
    for part in parts:
        if not part:
            raise ValueError("Empty path part")
        if any(c in ILLEGAL_PATH_CHARS for c in part):
            raise ValueError("Illegal character in path")
    return parts


def _parse_or_404(path: str) -> list[str]:
    try:
        return parse_path(path)
    except ValueError:
        raise HTTPException(status_code=404, detail="Not found")


def _list(services: CIServices, parts: list[str]) -> EventListResponse:
    try:
        events = services.store.list_events(*parts)
    except EventStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    base_url = services.config.base_url
    items = [e.to_summary(base_url) for e in events]
    return EventListResponse(items=items, count=len(items))


@router.get("", response_model=EventListResponse)
def list_builds(request: Request) -> EventListResponse:
    """List the most recent builds."""
    return _list(get_services(request), [])


@router.get("/{path:path}", response_model=None)
def view_builds(path: str, request: Request) -> EventDetail | EventListResponse:
    """
    View a single build (five path parts) or list builds under a prefix.
    """
    services = get_services(request)
    parts = _parse_or_404(path)

    if len(parts) < MAX_PATH_PARTS:
        return _list(services, parts)

    try:
        event = services.store.lookup(Fingerprint(*parts))
    except EventStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if event is None:
        raise HTTPException(status_code=404, detail="Build not found")
    return event.to_detail(services.config.base_url)


@router.post("/{path:path}", status_code=202, response_model=RerunResponse)
async def rerun_build(path: str, request: Request) -> JSONResponse:
    """
    Re-run a build immediately.
    Returns 409 if the build is currently running.
    """
    services = get_services(request)
    parts = _parse_or_404(path)
    if len(parts) != MAX_PATH_PARTS:
        raise HTTPException(status_code=404, detail="Not found")

    try:
        event = await services.intake.rerun(Fingerprint(*parts))
    except EventRunningError:
        raise HTTPException(status_code=409, detail="Unable to re-run already running build")
    except EventStoreError as e:
        raise HTTPException(status_code=500, detail=str(e))

    url = event.full_url(services.config.base_url)
    body = RerunResponse(url=url, status=event.status)
    return JSONResponse(
        status_code=202,
        content=body.model_dump(mode="json"),
        headers={"Location": f"/builds/{event.path}"},
    )
