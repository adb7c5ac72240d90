"""Entity collection router: the four repository operations per collection."""
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.shared.errors import AppErrors, PanelError
from src.storage.collections import PANEL_SPECS, get_repository
from src.storage.dual_repository import EntityRecord
from src.sync.coordinator import SyncCoordinator
from src.web.dependencies import (
    announce_change,
    error_response,
    get_backends,
    get_caller,
    invalid_body,
    read_json_object,
)

log = logging.getLogger(__name__)
router = APIRouter()


def _record_to_dict(r: EntityRecord) -> dict:
    return {"id": r.id, "owner_id": r.owner_id, **r.payload, "origin": r.origin.value}


def _unknown_collection(name: str) -> JSONResponse:
    return JSONResponse({"error": f"Unknown collection '{name}'."}, status_code=404)


@router.get("/api/collections/{name}")
async def list_records(name: str, request: Request):
    if name not in PANEL_SPECS:
        return _unknown_collection(name)
    caller = get_caller(request)
    repo = get_repository(name, get_backends())
    # empty scope yields [] rather than an error
    return [_record_to_dict(r) for r in repo.list(caller.scope)]


@router.post("/api/collections/{name}")
async def create_record(name: str, request: Request):
    if name not in PANEL_SPECS:
        return _unknown_collection(name)
    caller = get_caller(request)
    if caller.user_id is None and not caller.is_admin:
        return JSONResponse({"error": AppErrors.NOT_AUTHENTICATED}, status_code=401)

    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    requested_owner = body.pop("owner_id", None)
    # only admins may create on behalf of another owner
    owner_id = requested_owner if caller.is_admin and requested_owner is not None else caller.user_id
    if "created_at" in PANEL_SPECS[name].fields:
        body.setdefault("created_at", datetime.now(UTC).isoformat())

    backends = get_backends()
    try:
        record = get_repository(name, backends).create(body, owner_id)
    except PanelError as e:
        return error_response(e)
    announce_change(SyncCoordinator(backends))
    return _record_to_dict(record)


@router.put("/api/collections/{name}/{record_id}")
async def update_record(name: str, record_id: int, request: Request):
    if name not in PANEL_SPECS:
        return _unknown_collection(name)
    caller = get_caller(request)
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    backends = get_backends()
    try:
        record = get_repository(name, backends).update(record_id, caller.scope, body)
    except PanelError as e:
        return error_response(e)
    announce_change(SyncCoordinator(backends))
    return _record_to_dict(record)


@router.delete("/api/collections/{name}/{record_id}")
async def delete_record(name: str, record_id: int, request: Request):
    if name not in PANEL_SPECS:
        return _unknown_collection(name)
    caller = get_caller(request)
    backends = get_backends()
    try:
        get_repository(name, backends).delete(record_id, caller.scope)
    except PanelError as e:
        return error_response(e)
    announce_change(SyncCoordinator(backends))
    return {"success": True}
