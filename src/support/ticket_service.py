"""
Support ticket workflow.

Status machine:

    open            --admin reply-->   answered
    answered        --user reply-->    customer_reply
    customer_reply  --admin reply-->   answered
    any but closed  --user reply-->    customer_reply
    any but closed  --admin action-->  closed (terminal)
    any but closed  --admin action-->  solved, or any other status

Admission control caps the number of active tickets (open, answered,
customer_reply) per user. Users whose suspension record has allow_support
set to false cannot open tickets at all. The ticket and its first message
are written in one transaction.
"""
import logging
from datetime import UTC, datetime
from typing import Optional

from src.shared.errors import (
    BackendUnavailable,
    InvalidTransition,
    LimitExceeded,
    OwnershipViolation,
    SupportSuspended,
    TicketClosed,
)
from src.storage.backends import Backends, StorageSession
from src.storage.collections import SUSPENSION_SPEC
from src.storage.dual_repository import DualBackendRepository, Scope
from src.storage.settings_repository import SettingsRepository
from src.support.models import (
    ACTIVE_STATUSES,
    AWAITING_ADMIN,
    MESSAGE_SPEC,
    TICKET_SPEC,
    Message,
    SenderType,
    Ticket,
    TicketPriority,
    TicketStatus,
    message_from_record,
    ticket_from_record,
)
from src.sync.coordinator import SyncCoordinator

log = logging.getLogger(__name__)

MAX_OPEN_TICKETS_KEY = "max_open_tickets"
DEFAULT_MAX_OPEN_TICKETS = 3


def _now() -> str:
    return datetime.now(UTC).isoformat()


def status_after_message(
    current: TicketStatus,
    sender: SenderType,
    admin_can_post_on_closed: bool = True,
) -> TicketStatus:
    """
    Status a ticket moves to when `sender` posts a message.

    Raises:
        TicketClosed: The ticket is closed and the sender may not post.
    """
    if current == TicketStatus.CLOSED:
        if sender == SenderType.ADMIN and admin_can_post_on_closed:
            return TicketStatus.CLOSED
        raise TicketClosed("Ticket is closed; no further messages are accepted.")

    if sender == SenderType.USER:
        return TicketStatus.CUSTOMER_REPLY

    # Admin replies answer waiting tickets; solved stays solved until reopened explicitly.
    if current.value in AWAITING_ADMIN:
        return TicketStatus.ANSWERED
    return current


def check_status_change(current: TicketStatus, new: TicketStatus) -> None:
    """
    Validate an explicit admin status change.

    Raises:
        InvalidTransition: Leaving closed is never allowed.
    """
    if current == TicketStatus.CLOSED and new != TicketStatus.CLOSED:
        raise InvalidTransition("Closed tickets cannot be reopened.")


def _parse_status(value: str) -> TicketStatus:
    try:
        return TicketStatus(value)
    except ValueError:
        raise InvalidTransition(f"Unknown ticket status '{value}'")


def _parse_priority(value: str) -> TicketPriority:
    try:
        return TicketPriority(value)
    except ValueError:
        raise ValueError(f"Unknown ticket priority '{value}'")


class SupportService:
    """Ticket workflow on top of the dual-backend repositories."""

    def __init__(
        self,
        backends: Backends,
        coordinator: Optional[SyncCoordinator] = None,
        admin_can_post_on_closed: bool = True,
    ):
        self.backends = backends
        self.coordinator = coordinator
        self.admin_can_post_on_closed = admin_can_post_on_closed
        self.tickets = DualBackendRepository(TICKET_SPEC, backends)
        self.messages = DualBackendRepository(MESSAGE_SPEC, backends)
        self.suspensions = DualBackendRepository(SUSPENSION_SPEC, backends)
        self.settings = SettingsRepository(backends)

    def _bump(self) -> None:
        """Announce a committed change. A failure here leaves other clients stale until the next bump."""
        if self.coordinator is None:
            return
        try:
            self.coordinator.bump()
        except BackendUnavailable as e:
            log.warning("Change committed but sync bump failed: %s", e)

    # ── Settings ──

    def _ticket_limit(self, session: Optional[StorageSession] = None) -> int:
        raw = self.settings.get(MAX_OPEN_TICKETS_KEY, session=session)
        if raw is None:
            return DEFAULT_MAX_OPEN_TICKETS
        try:
            return int(raw)
        except ValueError:
            log.warning("Invalid %s setting %r, using %d", MAX_OPEN_TICKETS_KEY, raw, DEFAULT_MAX_OPEN_TICKETS)
            return DEFAULT_MAX_OPEN_TICKETS

    def get_ticket_limit(self) -> int:
        return self._ticket_limit()

    def set_ticket_limit(self, value: int) -> int:
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ValueError("Ticket limit must be a positive integer.")
        self.settings.set(MAX_OPEN_TICKETS_KEY, str(value))
        self._bump()
        return value

    # ── Suspension ──

    def _support_suspended(self, user_id: int, session: Optional[StorageSession] = None) -> bool:
        return bool(self.suspensions.list(
            Scope.owner(user_id), filters={"allow_support": False}, session=session
        ))

    def set_support_access(self, user_id: int, allowed: bool) -> None:
        """Suspend a user from opening tickets, or lift the suspension."""
        with self.backends.session(write=True) as s:
            records = self.suspensions.list(Scope.owner(user_id), session=s)
            if records:
                for record in records:
                    self.suspensions.update(record.id, Scope.admin(), {"allow_support": allowed}, session=s)
            elif not allowed:
                self.suspensions.create({"allow_support": False}, owner_id=user_id, session=s)
        log.info("User %s support access %s", user_id, "restored" if allowed else "suspended")
        self._bump()

    # ── Tickets ──

    def create_ticket(self, user_id: int, subject: str, priority: str, first_message: str) -> Ticket:
        """
        Open a ticket with its first user message.

        Raises:
            SupportSuspended: The user is suspended from support.
            LimitExceeded: The user already holds the maximum number of active tickets.
            ValueError: Empty subject/message or unknown priority.
        """
        subject = (subject or "").strip()
        first_message = (first_message or "").strip()
        if not subject or not first_message:
            raise ValueError("Subject and message are required.")
        priority = _parse_priority(priority)

        with self.backends.session(write=True) as s:
            if self._support_suspended(user_id, s):
                log.info("User %s refused a new ticket: suspended from support", user_id)
                raise SupportSuspended()
            limit = self._ticket_limit(s)
            active = [
                r for r in self.tickets.list(Scope.owner(user_id), session=s)
                if r.payload["status"] in ACTIVE_STATUSES
            ]
            if len(active) >= limit:
                log.info("User %s refused a new ticket: %d/%d active", user_id, len(active), limit)
                raise LimitExceeded(limit)

            now = _now()
            record = self.tickets.create(
                {
                    "subject": subject,
                    "status": TicketStatus.OPEN.value,
                    "priority": priority.value,
                    "created_at": now,
                    "updated_at": now,
                },
                owner_id=user_id,
                session=s,
            )
            self.messages.create(
                {
                    "ticket_id": record.id,
                    "sender_type": SenderType.USER.value,
                    "sender_id": user_id,
                    "text": first_message,
                    "created_at": now,
                },
                owner_id=user_id,
                session=s,
            )

        self._bump()
        return ticket_from_record(record)

    def post_message(self, ticket_id: int, sender_type: str, sender_id: int, text: str) -> Message:
        """
        Append a message and apply the matching status transition.

        Raises:
            NotFound: No such ticket.
            OwnershipViolation: A user posting on someone else's ticket.
            TicketClosed: The ticket is closed for this sender.
        """
        sender = SenderType(sender_type)
        text = (text or "").strip()
        if not text:
            raise ValueError("Message is empty.")
        scope = Scope.admin() if sender == SenderType.ADMIN else Scope.owner(sender_id)

        with self.backends.session(write=True) as s:
            ticket = ticket_from_record(self.tickets.get(ticket_id, scope, session=s))
            current = TicketStatus(ticket.status)
            new_status = status_after_message(current, sender, self.admin_can_post_on_closed)

            now = _now()
            record = self.messages.create(
                {
                    "ticket_id": ticket_id,
                    "sender_type": sender.value,
                    "sender_id": sender_id,
                    "text": text,
                    "created_at": now,
                },
                owner_id=ticket.user_id,
                session=s,
            )
            self.tickets.update(
                ticket_id, Scope.admin(), {"status": new_status.value, "updated_at": now}, session=s
            )
            if new_status != current:
                log.info("Ticket %d: %s -> %s", ticket_id, current.value, new_status.value)

        self._bump()
        return message_from_record(record)

    def update_ticket(
        self,
        ticket_id: int,
        scope: Scope,
        status: Optional[str] = None,
        priority: Optional[str] = None,
    ) -> Ticket:
        """
        Explicit admin change of status and/or priority.

        Raises:
            OwnershipViolation: Caller is not admin.
            InvalidTransition: Unknown status or leaving closed.
        """
        if not scope.is_admin:
            raise OwnershipViolation("Only administrators can change ticket status.")
        new_status = _parse_status(status) if status else None
        new_priority = _parse_priority(priority) if priority else None

        with self.backends.session(write=True) as s:
            ticket = ticket_from_record(self.tickets.get(ticket_id, scope, session=s))
            patch = {}
            if new_status is not None:
                check_status_change(TicketStatus(ticket.status), new_status)
                patch["status"] = new_status.value
                patch["updated_at"] = _now()
            if new_priority is not None:
                patch["priority"] = new_priority.value
            if not patch:
                return ticket
            record = self.tickets.update(ticket_id, scope, patch, session=s)

        self._bump()
        return ticket_from_record(record)

    # ── Reads ──

    def get_ticket(self, ticket_id: int, scope: Scope) -> Ticket:
        return ticket_from_record(self.tickets.get(ticket_id, scope))

    def get_thread(self, ticket_id: int, scope: Scope) -> tuple[Ticket, list[Message]]:
        """Ticket plus its messages in creation order, read in one session."""
        with self.backends.session() as s:
            ticket = ticket_from_record(self.tickets.get(ticket_id, scope, session=s))
            records = self.messages.list(scope, filters={"ticket_id": ticket_id}, session=s)
        messages = [message_from_record(r) for r in records]
        messages.sort(key=lambda m: (m.created_at, m.id))
        return ticket, messages

    def get_messages(self, ticket_id: int, scope: Scope) -> list[Message]:
        return self.get_thread(ticket_id, scope)[1]

    def list_tickets(self, scope: Scope, include_archived: Optional[bool] = None) -> list[Ticket]:
        """
        Tickets visible to `scope`.

        Users see active tickets newest first unless include_archived is set.
        Admins see everything, tickets awaiting an admin first.
        """
        if include_archived is None:
            include_archived = scope.is_admin
        tickets = [ticket_from_record(r) for r in self.tickets.list(scope)]
        if not include_archived:
            tickets = [t for t in tickets if t.status in ACTIVE_STATUSES]

        tickets.sort(key=lambda t: t.updated_at, reverse=True)
        if scope.is_admin:
            # stable sort keeps updated_at order inside each group
            tickets.sort(key=lambda t: 0 if t.status in AWAITING_ADMIN else 1)
        return tickets

    def count_active_tickets(self, user_id: int) -> int:
        return len(self.list_tickets(Scope.owner(user_id), include_archived=False))
