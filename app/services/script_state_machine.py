"""
Conversation status transitions.

All status changes go through `transition`, which returns the new status and
the side effects the caller has to carry out.
"""

import enum
import logging
from typing import Tuple, List

from app.core.exceptions import InvalidTransitionError
from app.db.models import ConversationStatus

logger = logging.getLogger(__name__)


class ConversationEvent(enum.Enum):
    INBOUND_MESSAGE = "inbound_message"
    AUTO_REPLY = "auto_reply"
    ESCALATE = "escalate"
    DISQUALIFY = "disqualify"
    OUTSIDE_HOURS = "outside_hours"
    PAUSE = "pause"
    RESUME = "resume"
    COMPLETE = "complete"
    BOOK = "book"


class SideEffect(enum.Enum):
    REACTIVATED = "reactivated"
    SEND_REPLY = "send_reply"
    ADVANCE_STEP = "advance_step"
    SEND_ESCALATION_MESSAGE = "send_escalation_message"
    SEND_DISQUALIFY_MESSAGE = "send_disqualify_message"
    ENQUEUE_ESCALATED = "enqueue_escalated"
    ENQUEUE_OUTSIDE_HOURS = "enqueue_outside_hours"
    STAMP_ESCALATED_AT = "stamp_escalated_at"
    STAMP_COMPLETED_AT = "stamp_completed_at"


ACTIVE = ConversationStatus.ACTIVE
PAUSED = ConversationStatus.PAUSED
ESCALATED = ConversationStatus.ESCALATED
COMPLETED = ConversationStatus.COMPLETED
DISQUALIFIED = ConversationStatus.DISQUALIFIED
BOOKED = ConversationStatus.BOOKED

# (status, event) -> (new status, side effects)
TRANSITIONS = {
    (ACTIVE, ConversationEvent.INBOUND_MESSAGE): (ACTIVE, []),
    (PAUSED, ConversationEvent.INBOUND_MESSAGE): (ACTIVE, [SideEffect.REACTIVATED]),
    (ACTIVE, ConversationEvent.AUTO_REPLY): (ACTIVE, [SideEffect.SEND_REPLY, SideEffect.ADVANCE_STEP]),
    (ACTIVE, ConversationEvent.ESCALATE): (
        ESCALATED,
        [SideEffect.STAMP_ESCALATED_AT, SideEffect.SEND_ESCALATION_MESSAGE, SideEffect.ENQUEUE_ESCALATED]
    ),
    (ACTIVE, ConversationEvent.DISQUALIFY): (
        DISQUALIFIED,
        [SideEffect.STAMP_COMPLETED_AT, SideEffect.SEND_DISQUALIFY_MESSAGE]
    ),
    (ACTIVE, ConversationEvent.OUTSIDE_HOURS): (ACTIVE, [SideEffect.ENQUEUE_OUTSIDE_HOURS]),
    (ACTIVE, ConversationEvent.PAUSE): (PAUSED, []),
    (PAUSED, ConversationEvent.RESUME): (ACTIVE, []),
    (ESCALATED, ConversationEvent.RESUME): (ACTIVE, []),
    (ACTIVE, ConversationEvent.COMPLETE): (COMPLETED, [SideEffect.STAMP_COMPLETED_AT]),
    (PAUSED, ConversationEvent.COMPLETE): (COMPLETED, [SideEffect.STAMP_COMPLETED_AT]),
    (ESCALATED, ConversationEvent.COMPLETE): (COMPLETED, [SideEffect.STAMP_COMPLETED_AT]),
    (ACTIVE, ConversationEvent.BOOK): (BOOKED, [SideEffect.STAMP_COMPLETED_AT]),
    (PAUSED, ConversationEvent.BOOK): (BOOKED, [SideEffect.STAMP_COMPLETED_AT]),
    (ESCALATED, ConversationEvent.BOOK): (BOOKED, [SideEffect.STAMP_COMPLETED_AT]),
    (ESCALATED, ConversationEvent.DISQUALIFY): (DISQUALIFIED, [SideEffect.STAMP_COMPLETED_AT]),
}

# Human status changes from the dashboard
STATUS_EVENTS = {
    ACTIVE: ConversationEvent.RESUME,
    PAUSED: ConversationEvent.PAUSE,
    ESCALATED: ConversationEvent.ESCALATE,
    COMPLETED: ConversationEvent.COMPLETE,
    BOOKED: ConversationEvent.BOOK,
    DISQUALIFIED: ConversationEvent.DISQUALIFY,
}


def _as_status(status) -> ConversationStatus:
    if isinstance(status, ConversationStatus):
        return status
    try:
        return ConversationStatus(status)
    except ValueError:
        raise InvalidTransitionError(f"Unknown conversation status: {status}")


def transition(current_status, event: ConversationEvent) -> Tuple[ConversationStatus, List[SideEffect]]:
    """
    Apply an event to a conversation status.

    Inbound messages never change escalated or closed conversations; the
    message is stored and the status is kept.

    Args:
        current_status: ConversationStatus or its string value
        event: What happened

    Returns:
        (new status, side effects)

    Raises:
        InvalidTransitionError: the event is not allowed in this status
    """
    status = _as_status(current_status)
    if event == ConversationEvent.INBOUND_MESSAGE and (status, event) not in TRANSITIONS:
        return status, []

    result = TRANSITIONS.get((status, event))
    if result is None:
        raise InvalidTransitionError(f"Cannot apply '{event.value}' to a {status.value} conversation")

    new_status, effects = result
    if new_status != status:
        logger.debug(f"Conversation transition {status.value} -> {new_status.value} on {event.value}")
    return new_status, list(effects)


def event_for_status(target_status) -> ConversationEvent:
    """Event a human status change maps to."""
    status = _as_status(target_status)
    return STATUS_EVENTS[status]
