from __future__ import annotations

from backend.app.models import MessageStatus

STATUS_RANK = {
    MessageStatus.pending: 0,
    MessageStatus.sent: 1,
    MessageStatus.delivered: 2,
    MessageStatus.read: 3,
}

TERMINAL_STATUSES = {MessageStatus.read, MessageStatus.failed}


def can_transition(current: MessageStatus, incoming: MessageStatus) -> bool:
    """Status only moves forward; failed is reachable from any non-terminal state."""
    if current in TERMINAL_STATUSES:
        return False
    if incoming == MessageStatus.failed:
        return True
    return STATUS_RANK[incoming] > STATUS_RANK[current]
