"""Protocol transport interfaces and plugin loading."""

import importlib
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from wa_gateway.domain.sessions import Credentials, SessionEvent

EventSink = Callable[[SessionEvent], None]


class ProtocolSession(Protocol):
    """One live connection to the messaging network."""

    async def connect(self) -> None:
        """Open the connection; progress is reported through events."""

    async def send_text(self, jid: str, text: str) -> str | None:
        """Send a text message and return the message id, if known."""

    async def close(self) -> None:
        """Close the connection without logging out."""


@dataclass(frozen=True)
class TransportOptions:
    """Socket options handed to every new protocol session."""

    browser: tuple[str, str, str] = ("Ubuntu", "Chrome", "22.04")
    connect_timeout: float = 60.0
    default_query_timeout: float = 60.0
    sync_full_history: bool = False
    mark_online_on_connect: bool = False
    emit_own_events: bool = False


class TransportFactory(Protocol):
    """Creates protocol sessions for the lifecycle manager."""

    def create_session(
        self,
        session_id: str,
        credentials: Credentials,
        emit: EventSink,
        options: TransportOptions,
    ) -> ProtocolSession:
        """Build an unconnected session wired to ``emit``."""


def load_transport_factory(path: str, settings: Any = None) -> TransportFactory:
    """Load a factory from a ``module:attribute`` path.

    Classes are built with their ``from_settings`` constructor when they have
    one and settings are given, otherwise without arguments. Other attributes
    are used as-is.
    """
    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ValueError(f"Invalid transport factory path: {path!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attribute)
    if isinstance(factory, type):
        if settings is not None and hasattr(factory, "from_settings"):
            return factory.from_settings(settings)
        factory = factory()
    return factory
