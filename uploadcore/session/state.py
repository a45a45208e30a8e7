"""Upload session status state machine"""

from enum import Enum
from typing import Dict, FrozenSet

from ..exceptions import IllegalState


class UploadStatus(Enum):
    """Session lifecycle states"""
    PENDING = "pending"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    UploadStatus.COMPLETED,
    UploadStatus.ERROR,
    UploadStatus.CANCELLED,
})

# new status -> statuses it may be entered from
ALLOWED_SOURCES: Dict[UploadStatus, FrozenSet[UploadStatus]] = {
    UploadStatus.UPLOADING: frozenset({UploadStatus.PENDING}),
    UploadStatus.COMPLETED: frozenset({UploadStatus.UPLOADING}),
    UploadStatus.CANCELLED: frozenset({UploadStatus.PENDING, UploadStatus.UPLOADING}),
    UploadStatus.ERROR: frozenset({UploadStatus.PENDING, UploadStatus.UPLOADING}),
}


def allowed_sources(new_status: UploadStatus) -> FrozenSet[UploadStatus]:
    """Statuses from which new_status can be reached"""
    return ALLOWED_SOURCES.get(new_status, frozenset())


def check_transition(current: UploadStatus, new_status: UploadStatus):
    """Raise IllegalState unless current -> new_status is legal"""
    if current not in allowed_sources(new_status):
        raise IllegalState(current, new_status)
