"""A pseudo messaging network, to run the gateway without a real device."""

import asyncio
import logging
from dataclasses import dataclass, field
from uuid import uuid4

from wa_gateway.adapters.transport import EventSink, TransportOptions
from wa_gateway.domain.sessions import (
    ConnectionOpened,
    CredentialsUpdated,
    CredentialUpdate,
    Credentials,
    QrIssued,
)

logger = logging.getLogger(__name__)


@dataclass
class DummySession:
    """Pairs itself after a delay and logs outbound messages."""

    session_id: str
    credentials: Credentials
    emit: EventSink
    pair_delay: float
    sent: list[tuple[str, str]] = field(default_factory=list)
    _pairing: asyncio.Task | None = None

    async def connect(self) -> None:
        """Open immediately when paired, otherwise issue a QR token."""
        if self.credentials.creds.get("me"):
            self.emit(ConnectionOpened())
            return
        self.emit(QrIssued(token=f"dummy:{self.session_id}:{uuid4().hex}"))
        self._pairing = asyncio.create_task(self._pair())

    async def send_text(self, jid: str, text: str) -> str | None:
        """Record the message instead of delivering it."""
        self.sent.append((jid, text))
        logger.info("Dummy send to %s: %s", jid, text)
        return uuid4().hex

    async def close(self) -> None:
        """Stop a pending pairing."""
        if self._pairing is not None:
            self._pairing.cancel()

    async def _pair(self) -> None:
        await asyncio.sleep(self.pair_delay)
        me = {"id": "0000000000@s.whatsapp.net", "name": self.session_id}
        self.emit(
            CredentialsUpdated(CredentialUpdate(creds={"me": me, "registered": True}))
        )
        self.emit(ConnectionOpened())


@dataclass
class DummyTransportFactory:
    """Factory for :class:`DummySession`."""

    pair_delay: float = 5.0

    def create_session(
        self,
        session_id: str,
        credentials: Credentials,
        emit: EventSink,
        options: TransportOptions,
    ) -> DummySession:
        """Build a dummy session."""
        return DummySession(
            session_id=session_id,
            credentials=credentials,
            emit=emit,
            pair_delay=max(self.pair_delay, 0.0),
        )
