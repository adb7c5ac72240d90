"""
Panel entity collections served through the dual-backend repository.
"""
from src.storage.backends import Backends
from src.storage.dual_repository import DualBackendRepository, EntitySpec


class ServerStatus:
    ACTIVE = "active"
    SUSPENDED = "suspended"


class PowerStatus:
    RUNNING = "running"
    OFFLINE = "offline"
    RESTARTING = "restarting"


class MonitorStatus:
    ACTIVE = "active"
    INACTIVE = "inactive"
    MAINTENANCE = "maintenance"


# Configuration records: one AI agent server per restaurant, owned by a customer.
SERVER_SPEC = EntitySpec(
    name="servers",
    table="servers",
    owner_column="user_id",
    fields={
        "name": "text",
        "status": "text",
        "power_status": "text",
        "ai_api_key": "text",
        "whatsapp_api_token": "text",
        "whatsapp_business_id": "text",
        "whatsapp_phone_number_id": "text",
        "created_at": "text",
        "config": "json",
        "sub_users": "json",
    },
    defaults={
        "status": ServerStatus.ACTIVE,
        "power_status": PowerStatus.OFFLINE,
        "ai_api_key": "",
        "whatsapp_api_token": "",
        "whatsapp_business_id": "",
        "whatsapp_phone_number_id": "",
        "config": {},
        "sub_users": [],
    },
    immutable=frozenset({"created_at"}),
)

# Monitored targets shown on the status page.
MONITOR_SPEC = EntitySpec(
    name="monitors",
    table="status_monitors",
    owner_column="user_id",
    fields={
        "name": "text",
        "target": "text",
        "status": "text",
        "last_check": "text",
        "total_checks": "int",
        "successful_checks": "int",
        "created_at": "text",
    },
    defaults={
        "status": MonitorStatus.ACTIVE,
        "total_checks": 0,
        "successful_checks": 0,
    },
    immutable=frozenset({"created_at"}),
)

# Per-user suspension record: what a suspended customer sees, and allow_support=False
# blocks that user from opening support tickets.
SUSPENSION_SPEC = EntitySpec(
    name="suspension",
    table="suspension_settings",
    owner_column="user_id",
    fields={
        "title": "text",
        "message": "text",
        "contact_email": "text",
        "allow_support": "bool",
    },
    defaults={
        "title": "Account suspended",
        "message": "",
        "contact_email": "",
        "allow_support": True,
    },
)

PANEL_SPECS = {spec.name: spec for spec in (SERVER_SPEC, MONITOR_SPEC, SUSPENSION_SPEC)}


def all_specs() -> list[EntitySpec]:
    """Every collection that has a shared table, support included."""
    from src.support.models import MESSAGE_SPEC, TICKET_SPEC
    return [*PANEL_SPECS.values(), TICKET_SPEC, MESSAGE_SPEC]


def get_repository(name: str, backends: Backends) -> DualBackendRepository:
    """
    Repository for a named panel collection.

    Raises:
        KeyError: If the collection name is unknown.
    """
    return DualBackendRepository(PANEL_SPECS[name], backends)
