"""
Support ticket and message models.
"""
from dataclasses import dataclass
from enum import Enum

from src.storage.dual_repository import EntityRecord, EntitySpec


class TicketStatus(str, Enum):
    OPEN = "open"
    CUSTOMER_REPLY = "customer_reply"
    ANSWERED = "answered"
    SOLVED = "solved"
    CLOSED = "closed"


# Counted by admission control and shown in the default user view.
ACTIVE_STATUSES = frozenset(s.value for s in (TicketStatus.OPEN, TicketStatus.ANSWERED, TicketStatus.CUSTOMER_REPLY))

# Archived tickets are hidden from the default view but keep their own status.
ARCHIVED_STATUSES = frozenset(s.value for s in (TicketStatus.SOLVED, TicketStatus.CLOSED))

# Sorted first in the admin queue: waiting for an admin.
AWAITING_ADMIN = frozenset(s.value for s in (TicketStatus.OPEN, TicketStatus.CUSTOMER_REPLY))


class TicketPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class SenderType(str, Enum):
    USER = "user"
    ADMIN = "admin"


@dataclass
class Ticket:
    id: int
    user_id: int
    subject: str
    status: str
    priority: str
    created_at: str
    updated_at: str


@dataclass
class Message:
    """Append-only entry in a ticket thread."""
    id: int
    ticket_id: int
    sender_type: str
    sender_id: int
    text: str
    created_at: str


TICKET_SPEC = EntitySpec(
    name="support_tickets",
    table="support_tickets",
    owner_column="user_id",
    fields={
        "subject": "text",
        "status": "text",
        "priority": "text",
        "created_at": "text",
        "updated_at": "text",
    },
    defaults={
        "status": TicketStatus.OPEN.value,
        "priority": TicketPriority.MEDIUM.value,
    },
    immutable=frozenset({"created_at"}),
)

# Messages are owned by the ticket owner so owner scoping covers threads.
MESSAGE_SPEC = EntitySpec(
    name="support_messages",
    table="support_messages",
    owner_column="user_id",
    fields={
        "ticket_id": "int",
        "sender_type": "text",
        "sender_id": "int",
        "text": "text",
        "created_at": "text",
    },
    immutable=frozenset({"ticket_id", "sender_type", "sender_id", "text", "created_at"}),
)


def ticket_from_record(record: EntityRecord) -> Ticket:
    p = record.payload
    return Ticket(
        id=record.id,
        user_id=record.owner_id,
        subject=p["subject"],
        status=p["status"],
        priority=p["priority"],
        created_at=p["created_at"],
        updated_at=p["updated_at"],
    )


def message_from_record(record: EntityRecord) -> Message:
    p = record.payload
    return Message(
        id=record.id,
        ticket_id=p["ticket_id"],
        sender_type=p["sender_type"],
        sender_id=p["sender_id"],
        text=p["text"],
        created_at=p["created_at"],
    )
