"""Domain models for protocol sessions and their events."""

from dataclasses import dataclass, field
from enum import Enum, IntEnum


class SessionStatus(str, Enum):
    """Connection state of a managed session."""

    DISCONNECTED = "disconnected"
    PENDING_QR = "pending_qr"
    CONNECTED = "connected"


class DisconnectReason(IntEnum):
    """Status codes reported by the transport when a connection closes."""

    CONNECTION_CLOSED = 428
    CONNECTION_LOST = 408
    CONNECTION_REPLACED = 440
    LOGGED_OUT = 401
    BAD_SESSION = 500
    RESTART_REQUIRED = 515
    MULTIDEVICE_MISMATCH = 411
    FORBIDDEN = 403
    UNAVAILABLE_SERVICE = 503


@dataclass(frozen=True)
class Credentials:
    """Auth material for one session."""

    creds: dict[str, object] = field(default_factory=dict)
    keys: dict[str, dict[str, object]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        """Return true when nothing has been persisted yet."""
        return not self.creds and not self.keys


@dataclass(frozen=True)
class CredentialUpdate:
    """Incremental change emitted by the transport.

    ``keys`` maps a key category to ``{key_id: value}``; a ``None`` value
    deletes that key.
    """

    creds: dict[str, object] | None = None
    keys: dict[str, dict[str, object | None]] = field(default_factory=dict)


@dataclass(frozen=True)
class InboundMessage:
    """Text message received by a session."""

    remote_jid: str
    text: str | None
    from_me: bool = False
    message_id: str | None = None


@dataclass(frozen=True)
class QrIssued:
    """The transport produced a new pairing QR token."""

    token: str


@dataclass(frozen=True)
class ConnectionOpened:
    """The connection is authenticated and usable."""


@dataclass(frozen=True)
class ConnectionClosed:
    """The connection closed; ``status_code`` identifies the cause."""

    status_code: int | None = None
    detail: str | None = None

    @property
    def is_logged_out(self) -> bool:
        """Return true when the remote party revoked the session."""
        return self.status_code == DisconnectReason.LOGGED_OUT


@dataclass(frozen=True)
class CredentialsUpdated:
    """The transport changed its auth material."""

    update: CredentialUpdate


@dataclass(frozen=True)
class MessageReceived:
    """An inbound message arrived."""

    message: InboundMessage


SessionEvent = (
    QrIssued | ConnectionOpened | ConnectionClosed | CredentialsUpdated | MessageReceived
)


@dataclass(frozen=True)
class SessionSnapshot:
    """Read-only view of a managed session."""

    session_id: str
    status: SessionStatus
    has_qr: bool
    reconnect_attempts: int
    last_error: str | None = None
