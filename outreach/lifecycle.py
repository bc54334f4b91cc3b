from enum import Enum


class Direction(str, Enum):
    OUTBOUND = "outbound"
    INBOUND = "inbound"


class MessageStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    REPLIED = "replied"
    BOUNCED = "bounced"
    RECEIVED = "received"
    CANCELLED = "cancelled"


# Allowed forward moves; anything absent is terminal.
TRANSITIONS = {
    MessageStatus.DRAFT: {MessageStatus.SCHEDULED, MessageStatus.SENT},
    MessageStatus.SCHEDULED: {MessageStatus.SENT, MessageStatus.CANCELLED},
    MessageStatus.SENT: {
        MessageStatus.DELIVERED,
        MessageStatus.OPENED,
        MessageStatus.REPLIED,
        MessageStatus.BOUNCED,
    },
    MessageStatus.DELIVERED: {
        MessageStatus.OPENED,
        MessageStatus.REPLIED,
        MessageStatus.BOUNCED,
    },
    MessageStatus.OPENED: {MessageStatus.REPLIED},
}

# Statuses an outbound message reaches only after it left the building
DISPATCHED = {
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.OPENED,
    MessageStatus.REPLIED,
    MessageStatus.BOUNCED,
}


def can_transition(current: str, target: str) -> bool:
    """Return True if a message may move from ``current`` to ``target``.

    Re-applying the current status is a no-op and always allowed.
    """
    current = MessageStatus(current)
    target = MessageStatus(target)
    if current == target:
        return True
    return target in TRANSITIONS.get(current, set())


def is_terminal(status: str) -> bool:
    return not TRANSITIONS.get(MessageStatus(status))
