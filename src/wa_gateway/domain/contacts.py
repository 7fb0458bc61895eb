"""Domain models for the contact confirmation workflow."""

from dataclasses import dataclass
from enum import Enum


class ContactState(str, Enum):
    """Confirmation state of a registered contact."""

    IDLE = "idle"
    AWAIT_CONFIRMATION = "await_confirmation"


class ReplyOutcome(str, Enum):
    """Result of feeding an inbound reply to the workflow."""

    CONFIRMED = "confirmed"
    DECLINED = "declined"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ContactRecord:
    """Represents a registered contact (doctor) within one session."""

    session_id: str
    jid: str
    display_name: str
    state: ContactState
    payload_link: str
