"""Settings router: shared database, server mode, system reset, session."""
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.shared.errors import AppErrors, BackendUnavailable, PanelError
from src.storage.mode import (
    ServerMode,
    config_for,
    load_db_config,
    load_server_mode,
    save_db_config,
    save_server_mode,
)
from src.storage.shared_store import display_url
from src.storage.system import initialize_shared_database, reset_system
from src.web.dependencies import (
    error_response,
    get_backends,
    get_caller,
    get_coordinator,
    get_state,
    invalid_body,
    read_json_object,
)

log = logging.getLogger(__name__)
router = APIRouter()


def _admin_only(request: Request):
    if not get_caller(request).is_admin:
        return JSONResponse({"error": AppErrors.ADMIN_REQUIRED}, status_code=403)
    return None


def _db_target(body: dict) -> str:
    """Database URL or SQLite path from a request body; url wins."""
    value = body.get("url") or body.get("path")
    return value.strip() if isinstance(value, str) else ""


@router.get("/api/db/config")
async def get_db_config():
    backends = get_backends()
    config = load_db_config(backends.data_root)
    if config is None or not config.enabled:
        return {"enabled": False}
    response = {"enabled": True, "mode": backends.resolve_mode().value}
    if config.url:
        response["url"] = display_url(config.url)
    else:
        response["path"] = config.path
    return response


@router.post("/api/db/config")
async def set_db_config(request: Request):
    denied = _admin_only(request)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    target = _db_target(body)
    if not target:
        return JSONResponse({"error": "Database URL or path is required."}, status_code=400)
    enabled = bool(body.get("enabled", True))
    config = config_for(target, enabled=enabled)
    save_db_config(get_backends().data_root, config)
    log.info("Shared database config saved (enabled=%s)", enabled)
    if config.url:
        return {"enabled": enabled, "url": display_url(config.url)}
    return {"enabled": enabled, "path": config.path}


@router.post("/api/db/init")
async def init_db(request: Request):
    denied = _admin_only(request)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    target = _db_target(body)
    if not target:
        return JSONResponse({"error": "Database URL or path is required."}, status_code=400)
    try:
        initialize_shared_database(get_backends(), target)
    except BackendUnavailable as e:
        log.error("Shared database init failed: %s", e)
        return JSONResponse({"success": False, "message": str(e)}, status_code=500)
    return {"success": True, "message": "Database initialized and tables created."}


@router.get("/api/system/mode")
async def get_system_mode():
    backends = get_backends()
    return {
        "server_mode": load_server_mode(backends.data_root).value,
        "storage_mode": backends.resolve_mode().value,
    }


@router.post("/api/system/mode")
async def set_system_mode(request: Request):
    denied = _admin_only(request)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    try:
        mode = ServerMode(body.get("server_mode", ""))
    except ValueError:
        return JSONResponse({"error": "server_mode must be 'local' or 'server'."}, status_code=400)
    save_server_mode(get_backends().data_root, mode)
    return {"server_mode": mode.value}


@router.post("/api/system/reset")
async def system_reset(request: Request):
    denied = _admin_only(request)
    if denied is not None:
        return denied
    try:
        reset_system(get_backends(), get_coordinator())
    except PanelError as e:
        return error_response(e)
    return {"success": True, "version": 1}


@router.get("/api/session")
async def get_session(request: Request):
    caller = get_caller(request)
    return {"user_id": caller.user_id, "is_admin": caller.is_admin}


@router.post("/api/session/identity")
async def set_identity(request: Request):
    """
    Development sign-in: record who is signed in without authenticating.

    Real identities come from the external authentication layer. This route
    exists only when VELOX_DEV_IDENTITY=1.
    """
    if not get_state().dev_identity:
        return JSONResponse({"error": "Not Found"}, status_code=404)
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    user_id = body.get("user_id")
    if user_id is not None and not isinstance(user_id, int):
        return JSONResponse({"error": "user_id must be an integer."}, status_code=400)
    request.session["user_id"] = user_id
    request.session["is_admin"] = bool(body.get("is_admin", False))
    return {"user_id": user_id, "is_admin": request.session["is_admin"]}
