from __future__ import annotations

TICKET_STATUS_OPEN = "open"
TICKET_STATUS_PENDING_APPROVAL = "pending_approval"
TICKET_STATUS_SCHEDULED = "scheduled"
TICKET_STATUS_IN_PROGRESS = "in_progress"
TICKET_STATUS_RESOLVED = "resolved"
TICKET_STATUS_CLOSED = "closed"
TICKET_STATUS_REJECTED = "rejected"

TICKET_STATUSES = (
    TICKET_STATUS_OPEN,
    TICKET_STATUS_PENDING_APPROVAL,
    TICKET_STATUS_SCHEDULED,
    TICKET_STATUS_IN_PROGRESS,
    TICKET_STATUS_RESOLVED,
    TICKET_STATUS_CLOSED,
    TICKET_STATUS_REJECTED,
)

TERMINAL_STATUSES = frozenset({TICKET_STATUS_CLOSED, TICKET_STATUS_REJECTED})

# Statuses that stop the SLA clock (closed_at is stamped on entry).
CLOCK_STOP_STATUSES = frozenset({TICKET_STATUS_RESOLVED, TICKET_STATUS_CLOSED, TICKET_STATUS_REJECTED})

# Edges reachable through update_field. Approval edges belong to the approval gate,
# entering scheduled belongs to SchedulingService.schedule.
ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    TICKET_STATUS_OPEN: frozenset({TICKET_STATUS_IN_PROGRESS, TICKET_STATUS_CLOSED}),
    TICKET_STATUS_PENDING_APPROVAL: frozenset(),
    TICKET_STATUS_SCHEDULED: frozenset({TICKET_STATUS_OPEN, TICKET_STATUS_IN_PROGRESS}),
    TICKET_STATUS_IN_PROGRESS: frozenset({TICKET_STATUS_RESOLVED, TICKET_STATUS_CLOSED}),
    TICKET_STATUS_RESOLVED: frozenset({TICKET_STATUS_CLOSED}),
    TICKET_STATUS_CLOSED: frozenset(),
    TICKET_STATUS_REJECTED: frozenset(),
}

APPROVAL_TRANSITIONS: dict[str, frozenset[str]] = {
    TICKET_STATUS_PENDING_APPROVAL: frozenset(
        {TICKET_STATUS_OPEN, TICKET_STATUS_SCHEDULED, TICKET_STATUS_REJECTED}
    ),
}

PRIORITY_LEVELS = ("low", "medium", "high", "urgent")
DEFAULT_PRIORITY = "medium"

UPDATABLE_FIELDS = ("status", "priority", "assigned_to")

SYSTEM_AUTHOR_ID = "system"
PRIVILEGED_ROLES = frozenset({"admin", "agent"})

WEBHOOK_LOG_SUCCESS = "success"
WEBHOOK_LOG_ERROR = "error"

REASON_UNKNOWN_OR_INACTIVE = "unknown_or_inactive"
REASON_BAD_SECRET = "bad_secret"
REASON_MALFORMED_PAYLOAD = "malformed_payload"
REASON_TICKET_CREATION_FAILED = "ticket_creation_failed"

EVENT_CREATED = "created"
EVENT_FIELD_CHANGED = "field_changed"
EVENT_PAUSED = "paused"
EVENT_RESUMED = "resumed"
EVENT_SCHEDULED = "scheduled"
EVENT_UNSCHEDULED = "unscheduled"

TICKET_TITLE_MAX_LENGTH = 255
BRASILIA_TIMEZONE = "America/Sao_Paulo"
