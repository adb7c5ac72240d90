"""
Dependency injection for FastAPI routes.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import Request
from fastapi.responses import JSONResponse

from src.shared.app_state import AppState
from src.shared.errors import AppErrors, BackendUnavailable, PanelError, status_for
from src.storage.backends import Backends
from src.storage.dual_repository import Scope
from src.support.ticket_service import SupportService
from src.sync.coordinator import SyncCoordinator

DATA_ROOT = Path(os.environ.get("VELOX_DATA_ROOT", "./data"))

log = logging.getLogger(__name__)


@dataclass
class Caller:
    """Identity placed in the session by the authentication layer."""
    user_id: Optional[int] = None
    is_admin: bool = False

    @property
    def scope(self) -> Scope:
        if self.is_admin:
            return Scope.admin()
        if self.user_id is not None:
            return Scope.owner(self.user_id)
        return Scope()


def get_state() -> AppState:
    return AppState.from_env(DATA_ROOT)


def get_backends() -> Backends:
    return Backends(DATA_ROOT)


def get_coordinator() -> SyncCoordinator:
    return SyncCoordinator(get_backends())


def get_support_service() -> SupportService:
    state = get_state()
    backends = Backends(state.data_root)
    return SupportService(
        backends,
        coordinator=SyncCoordinator(backends),
        admin_can_post_on_closed=state.admin_can_post_on_closed,
    )


def get_caller(request: Request) -> Caller:
    """Reconstruct the caller from the session."""
    session = request.session
    user_id = session.get("user_id")
    return Caller(
        user_id=int(user_id) if user_id is not None else None,
        is_admin=bool(session.get("is_admin", False)),
    )


async def read_json_object(request: Request) -> Optional[dict]:
    """Parsed JSON body, or None when it is missing, malformed or not an object."""
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


def invalid_body() -> JSONResponse:
    return JSONResponse({"error": AppErrors.INVALID_BODY}, status_code=400)


def error_response(error: PanelError) -> JSONResponse:
    return JSONResponse({"error": str(error)}, status_code=status_for(error))


def announce_change(coordinator: SyncCoordinator) -> None:
    """Bump after a committed write; a failed bump leaves others stale, it does not undo the write."""
    try:
        coordinator.bump()
    except BackendUnavailable as e:
        log.warning("Change committed but sync bump failed: %s", e)
