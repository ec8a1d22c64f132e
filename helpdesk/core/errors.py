from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

LOGGER = logging.getLogger(__name__)


class HelpdeskError(RuntimeError):
    user_message: str = "An unexpected error occurred."
    status_code: int = 500
    code: str = "internal_error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.user_message)
        if message:
            self.user_message = message


class ValidationError(HelpdeskError):
    user_message = "The provided input is not valid."
    status_code = 422
    code = "validation_error"


class PermissionDeniedError(HelpdeskError):
    user_message = "You do not have permission to run this action."
    status_code = 403
    code = "permission_denied"


class TicketNotFoundError(HelpdeskError):
    user_message = "The requested ticket could not be found."
    status_code = 404
    code = "ticket_not_found"


class MessageNotFoundError(HelpdeskError):
    user_message = "The requested message could not be found."
    status_code = 404
    code = "message_not_found"


class WebhookNotFoundError(HelpdeskError):
    user_message = "The requested webhook could not be found."
    status_code = 404
    code = "webhook_not_found"


class TicketStateError(HelpdeskError):
    user_message = "The ticket is not in a valid state for this action."
    status_code = 409
    code = "invalid_state"


class InvalidTransitionError(TicketStateError):
    user_message = "This status change is not allowed."
    code = "invalid_transition"


class NotPendingApprovalError(TicketStateError):
    user_message = "The ticket is not pending approval."
    code = "not_pending_approval"


class InvalidScheduleError(TicketStateError):
    user_message = "The ticket cannot be scheduled for that time."
    code = "invalid_schedule"


class NotScheduledError(TicketStateError):
    user_message = "The ticket is not scheduled."
    code = "not_scheduled"


class InvalidPauseStateError(TicketStateError):
    user_message = "Only in-progress tickets that are not paused can be paused."
    code = "invalid_pause_state"


class NotPausedError(TicketStateError):
    user_message = "The ticket is not paused."
    code = "not_paused"


class AuthenticationError(HelpdeskError):
    user_message = "Webhook authentication failed."
    status_code = 401
    code = "authentication_failed"


class MalformedPayloadError(HelpdeskError):
    user_message = "The webhook payload could not be parsed."
    status_code = 400
    code = "malformed_payload"


class TicketCreationFailedError(HelpdeskError):
    user_message = "The ticket could not be created."
    status_code = 500
    code = "ticket_creation_failed"


class DeliveryUnavailableError(HelpdeskError):
    user_message = "The service is temporarily unavailable."
    status_code = 503
    code = "unavailable"


# Short names used across the codebase.
InvalidTransition = InvalidTransitionError
NotPendingApproval = NotPendingApprovalError
InvalidSchedule = InvalidScheduleError
NotScheduled = NotScheduledError
InvalidPauseState = InvalidPauseStateError
NotPaused = NotPausedError
MalformedPayload = MalformedPayloadError
TicketNotFound = TicketNotFoundError
PermissionDenied = PermissionDeniedError
DeliveryUnavailable = DeliveryUnavailableError


def error_body(error: HelpdeskError) -> dict[str, object]:
    return {"success": False, "error": error.code, "message": error.user_message}


async def handle_helpdesk_error(request: Request, error: Exception) -> JSONResponse:
    assert isinstance(error, HelpdeskError)
    if error.status_code >= 500:
        LOGGER.exception(
            "Request failed. method=%s path=%s code=%s",
            request.method,
            request.url.path,
            error.code,
            exc_info=error,
        )
    else:
        LOGGER.info(
            "Request rejected. method=%s path=%s code=%s",
            request.method,
            request.url.path,
            error.code,
        )
    return JSONResponse(status_code=error.status_code, content=error_body(error))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(HelpdeskError, handle_helpdesk_error)
