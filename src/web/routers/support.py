"""Support ticket router for customers and administrators."""
import logging
from dataclasses import asdict

from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from src.shared.errors import AppErrors, PanelError
from src.storage.dual_repository import Scope
from src.support.models import SenderType
from src.web.dependencies import (
    Caller,
    error_response,
    get_caller,
    get_support_service,
    invalid_body,
    read_json_object,
)

log = logging.getLogger(__name__)
router = APIRouter()


def _require_user(caller: Caller):
    if caller.user_id is None:
        return JSONResponse({"error": AppErrors.NOT_AUTHENTICATED}, status_code=401)
    return None


def _require_admin(caller: Caller):
    if not caller.is_admin:
        return JSONResponse({"error": AppErrors.ADMIN_REQUIRED}, status_code=403)
    return None


def _thread_response(ticket, messages) -> dict:
    return {"ticket": asdict(ticket), "messages": [asdict(m) for m in messages]}


# ── Customer ──


@router.get("/api/support/tickets")
async def list_my_tickets(request: Request, archived: bool = Query(default=False)):
    caller = get_caller(request)
    denied = _require_user(caller)
    if denied is not None:
        return denied
    svc = get_support_service()
    tickets = svc.list_tickets(Scope.owner(caller.user_id), include_archived=archived)
    return [asdict(t) for t in tickets]


@router.post("/api/support/tickets")
async def create_ticket(request: Request):
    caller = get_caller(request)
    denied = _require_user(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    subject = (body.get("subject") or "").strip()
    message = (body.get("message") or "").strip()
    if not subject or not message:
        return JSONResponse({"error": AppErrors.EMPTY_INPUT}, status_code=400)

    try:
        ticket = get_support_service().create_ticket(
            caller.user_id, subject, body.get("priority") or "medium", message
        )
    except PanelError as e:
        return error_response(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"success": True, "ticket_id": ticket.id, "ticket": asdict(ticket)}


@router.get("/api/support/tickets/{ticket_id}")
async def get_my_ticket(ticket_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_user(caller)
    if denied is not None:
        return denied
    try:
        ticket, messages = get_support_service().get_thread(ticket_id, Scope.owner(caller.user_id))
    except PanelError as e:
        return error_response(e)
    return _thread_response(ticket, messages)


@router.post("/api/support/tickets/{ticket_id}")
async def reply_to_ticket(ticket_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_user(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    try:
        message = get_support_service().post_message(
            ticket_id, SenderType.USER.value, caller.user_id, body.get("message", "")
        )
    except PanelError as e:
        return error_response(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"success": True, "message": asdict(message)}


# ── Admin ──


@router.get("/api/admin/support/tickets")
async def list_all_tickets(request: Request, archived: bool = Query(default=True)):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    tickets = get_support_service().list_tickets(caller.scope, include_archived=archived)
    return [asdict(t) for t in tickets]


@router.get("/api/admin/support/tickets/{ticket_id}")
async def get_ticket_admin(ticket_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    try:
        ticket, messages = get_support_service().get_thread(ticket_id, caller.scope)
    except PanelError as e:
        return error_response(e)
    return _thread_response(ticket, messages)


@router.post("/api/admin/support/tickets/{ticket_id}")
async def admin_reply(ticket_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    try:
        message = get_support_service().post_message(
            ticket_id, SenderType.ADMIN.value, caller.user_id or 0, body.get("message", "")
        )
    except PanelError as e:
        return error_response(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"success": True, "message": asdict(message)}


@router.patch("/api/admin/support/tickets/{ticket_id}")
async def update_ticket(ticket_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    try:
        ticket = get_support_service().update_ticket(
            ticket_id, caller.scope, status=body.get("status"), priority=body.get("priority")
        )
    except PanelError as e:
        return error_response(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"success": True, "ticket": asdict(ticket)}


@router.get("/api/admin/support/limit")
async def get_ticket_limit(request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    return {"max_open_tickets": get_support_service().get_ticket_limit()}


@router.post("/api/admin/support/limit")
async def set_ticket_limit(request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    try:
        value = get_support_service().set_ticket_limit(body.get("max_open_tickets"))
    except PanelError as e:
        return error_response(e)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return {"max_open_tickets": value}


@router.post("/api/admin/support/users/{user_id}/access")
async def set_support_access(user_id: int, request: Request):
    caller = get_caller(request)
    denied = _require_admin(caller)
    if denied is not None:
        return denied
    body = await read_json_object(request)
    if body is None:
        return invalid_body()
    allowed = body.get("allow_support")
    if not isinstance(allowed, bool):
        return JSONResponse({"error": "allow_support must be true or false."}, status_code=400)
    try:
        get_support_service().set_support_access(user_id, allowed)
    except PanelError as e:
        return error_response(e)
    return {"user_id": user_id, "allow_support": allowed}
