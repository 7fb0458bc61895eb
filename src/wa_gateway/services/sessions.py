"""Lifecycle manager for protocol sessions.

Each session is driven by a small state machine
(``disconnected -> pending_qr -> connected -> disconnected``). Transport
events are pushed into a per-session FIFO queue and applied one at a time by
a consumer task, so a credential update is always persisted before the next
event of the same session is looked at.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass, field

from wa_gateway.adapters.transport import (
    ProtocolSession,
    TransportFactory,
    TransportOptions,
)
from wa_gateway.domain.addresses import normalize_jid
from wa_gateway.domain.errors import (
    DeliveryFailed,
    PersistenceFailure,
    SessionUnavailable,
    TerminalLogout,
)
from wa_gateway.domain.sessions import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    MessageReceived,
    QrIssued,
    SessionEvent,
    SessionSnapshot,
    SessionStatus,
)
from wa_gateway.services.credentials import CredentialStore
from wa_gateway.services.locks import NamedLock
from wa_gateway.services.qr import render_qr_ascii

logger = logging.getLogger(__name__)

InboundHandler = Callable[[str, str, str], Awaitable[object]]


@dataclass(frozen=True)
class ReconnectPolicy:
    """Decides how long to wait before each reconnect attempt.

    The defaults reconnect immediately and forever. Attempts that fail to
    open the session at all wait at least ``failure_delay``, doubling for
    each consecutive failure.
    """

    max_attempts: int | None = None
    base_delay: float = 0.0
    multiplier: float = 2.0
    max_delay: float = 0.0
    failure_delay: float = 1.0
    max_failure_delay: float = 30.0

    def delay_for(self, attempt: int) -> float | None:
        """Return the delay before ``attempt`` (1-based), or None to give up."""
        if self.max_attempts is not None and attempt > self.max_attempts:
            return None
        if self.base_delay <= 0:
            return 0.0
        delay = self.base_delay * self.multiplier ** (attempt - 1)
        if self.max_delay > 0:
            return min(delay, self.max_delay)
        return delay

    def failure_delay_for(self, streak: int) -> float:
        """Return the minimum delay after ``streak`` consecutive failed opens."""
        if streak <= 0 or self.failure_delay <= 0:
            return 0.0
        delay = self.failure_delay * 2 ** (streak - 1)
        if self.max_failure_delay > 0:
            return min(delay, self.max_failure_delay)
        return delay


@dataclass
class _ManagedSession:
    session_id: str
    handle: ProtocolSession | None = None
    status: SessionStatus = SessionStatus.DISCONNECTED
    current_qr: str | None = None
    active: bool = True
    events: asyncio.Queue = field(default_factory=asyncio.Queue)
    consumer: asyncio.Task | None = None
    connector: asyncio.Task | None = None
    saving: asyncio.Task | None = None


@dataclass
class SessionManager:
    """Owns every named protocol session and keeps them connected."""

    credential_store: CredentialStore
    transport_factory: TransportFactory
    options: TransportOptions = field(default_factory=TransportOptions)
    reconnect_policy: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    restart_after_logout: bool = False
    print_qr: bool = False
    _sessions: dict[str, _ManagedSession] = field(default_factory=dict)
    _attempts: dict[str, int] = field(default_factory=dict)
    _last_errors: dict[str, str] = field(default_factory=dict)
    _open_failures: dict[str, int] = field(default_factory=dict)
    _reconnects: dict[str, asyncio.Task] = field(default_factory=dict)
    _tasks: set[asyncio.Task] = field(default_factory=set)
    _handlers: list[InboundHandler] = field(default_factory=list)
    _locks: NamedLock = field(default_factory=NamedLock)

    def add_inbound_handler(self, handler: InboundHandler) -> None:
        """Subscribe to inbound text that was not sent by this device."""
        self._handlers.append(handler)

    async def start(self, session_id: str) -> None:
        """Start (or restart) a session without waiting for the connection."""
        self._attempts.pop(session_id, None)
        self._open_failures.pop(session_id, None)
        _cancel(self._reconnects.pop(session_id, None))
        await self._open(session_id)

    async def stop(self, session_id: str) -> None:
        """Close a session and do not reconnect it."""
        _cancel(self._reconnects.pop(session_id, None))
        self._attempts.pop(session_id, None)
        session = self._sessions.get(session_id)
        if session is not None and session.active:
            await self._discard(session, close_handle=True)
            logger.info("Session %s stopped", session_id)

    async def stop_all(self) -> None:
        """Stop every managed session."""
        for session_id in list(self._sessions):
            await self.stop(session_id)
        for task in list(self._tasks):
            _cancel(task)

    def get_active(self, session_id: str) -> ProtocolSession | None:
        """Return the handle only when the session is connected."""
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return None
        if session.status is not SessionStatus.CONNECTED:
            return None
        return session.handle

    def status(self, session_id: str) -> SessionStatus:
        """Return the current status of a session."""
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return SessionStatus.DISCONNECTED
        return session.status

    def current_qr(self, session_id: str) -> str | None:
        """Return the QR token while the session waits to be paired."""
        session = self._sessions.get(session_id)
        if session is None or not session.active:
            return None
        if session.status is not SessionStatus.PENDING_QR:
            return None
        return session.current_qr

    def snapshot(self) -> list[SessionSnapshot]:
        """Return a read-only view of every known session."""
        return [
            SessionSnapshot(
                session_id=session_id,
                status=self.status(session_id),
                has_qr=self.current_qr(session_id) is not None,
                reconnect_attempts=self._attempts.get(session_id, 0),
                last_error=self._last_errors.get(session_id),
            )
            for session_id in sorted(self._sessions)
        ]

    def ensure_active(self, session_id: str) -> ProtocolSession:
        """Return the connected handle or raise :class:`SessionUnavailable`."""
        handle = self.get_active(session_id)
        if handle is None:
            raise SessionUnavailable()
        return handle

    async def send(self, session_id: str, jid: str, text: str) -> str | None:
        """Send a text message through a connected session."""
        handle = self.ensure_active(session_id)
        try:
            message_id = await handle.send_text(jid, text)
        except Exception as exc:
            logger.exception(
                "Failed to send message",
                extra={"session_id": session_id, "jid": jid},
            )
            raise DeliveryFailed() from exc
        logger.info("Message sent to %s via session %s", jid, session_id)
        return message_id

    async def _open(self, session_id: str) -> None:
        async with self._locks.hold(session_id):
            previous = self._sessions.get(session_id)
            if previous is not None and previous.active:
                await self._discard(previous, close_handle=True)
            credentials = await self.credential_store.load(session_id)
            session = _ManagedSession(session_id=session_id)
            session.handle = self.transport_factory.create_session(
                session_id, credentials, session.events.put_nowait, self.options
            )
            self._sessions[session_id] = session
            session.consumer = asyncio.create_task(
                self._consume(session), name=f"session-events:{session_id}"
            )
            session.connector = asyncio.create_task(
                self._connect(session), name=f"session-connect:{session_id}"
            )
        logger.info(
            "Session %s starting (%s)",
            session_id,
            "new device" if credentials.is_empty else "stored credentials",
        )

    async def _connect(self, session: _ManagedSession) -> None:
        try:
            await session.handle.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(
                "Failed to connect session", extra={"session_id": session.session_id}
            )
            session.events.put_nowait(ConnectionClosed(detail=str(exc)))

    async def _consume(self, session: _ManagedSession) -> None:
        while session.active:
            event = await session.events.get()
            if not session.active:
                return
            try:
                await self._apply(session, event)
            except Exception:
                logger.exception(
                    "Failed to handle session event",
                    extra={"session_id": session.session_id},
                )

    async def _apply(self, session: _ManagedSession, event: SessionEvent) -> None:
        session_id = session.session_id
        if isinstance(event, CredentialsUpdated):
            session.saving = asyncio.ensure_future(
                self.credential_store.save(session_id, event.update)
            )
            try:
                await asyncio.shield(session.saving)
            except PersistenceFailure:
                logger.error(
                    "Credentials for session %s were not saved; reconnecting",
                    session_id,
                )
                self._last_errors[session_id] = PersistenceFailure.default_message
                await self._discard(session, close_handle=True)
                self._schedule_reconnect(session_id)
        elif isinstance(event, QrIssued):
            session.current_qr = event.token
            session.status = SessionStatus.PENDING_QR
            logger.info("New QR for session %s, scan it to connect", session_id)
            if self.print_qr:
                logger.info("\n%s", render_qr_ascii(event.token))
        elif isinstance(event, ConnectionOpened):
            session.current_qr = None
            session.status = SessionStatus.CONNECTED
            self._attempts.pop(session_id, None)
            self._last_errors.pop(session_id, None)
            logger.info("Session %s connected to WhatsApp", session_id)
        elif isinstance(event, ConnectionClosed):
            await self._discard(session, close_handle=False)
            if event.is_logged_out:
                await self._handle_logout(session_id, TerminalLogout())
            else:
                self._last_errors[session_id] = (
                    event.detail or f"closed ({event.status_code})"
                )
                logger.warning(
                    "Session %s closed (code=%s, %s)",
                    session_id,
                    event.status_code,
                    event.detail or "no detail",
                )
                self._schedule_reconnect(session_id)
        elif isinstance(event, MessageReceived):
            await self._dispatch_inbound(session_id, event)

    async def _handle_logout(self, session_id: str, cause: TerminalLogout) -> None:
        self._last_errors[session_id] = cause.message
        logger.warning("Session %s logged out, erasing credentials", session_id)
        try:
            await self.credential_store.erase(session_id)
        except PersistenceFailure:
            logger.error("Credentials for session %s were not erased", session_id)
            return
        if self.restart_after_logout:
            self._spawn(self.start(session_id))
        else:
            logger.warning("Session %s left disconnected until restarted", session_id)

    async def _dispatch_inbound(self, session_id: str, event: MessageReceived) -> None:
        message = event.message
        if message.from_me or not message.text:
            return
        jid = normalize_jid(message.remote_jid)
        for handler in self._handlers:
            try:
                await handler(session_id, jid, message.text)
            except Exception:
                logger.exception(
                    "Inbound handler failed",
                    extra={"session_id": session_id, "jid": jid},
                )

    async def _discard(self, session: _ManagedSession, close_handle: bool) -> None:
        session.active = False
        session.status = SessionStatus.DISCONNECTED
        session.current_qr = None
        _cancel(session.connector)
        _cancel(session.consumer)
        if close_handle and session.handle is not None:
            try:
                await session.handle.close()
            except Exception:
                logger.exception(
                    "Failed to close session", extra={"session_id": session.session_id}
                )
        await self._flush_credentials(session)

    async def _flush_credentials(self, session: _ManagedSession) -> None:
        """Persist credential updates still pending for a discarded session."""
        if session.saving is not None and not session.saving.done():
            try:
                await session.saving
            except PersistenceFailure:
                logger.error(
                    "Credentials for session %s were not saved", session.session_id
                )
        while not session.events.empty():
            event = session.events.get_nowait()
            if not isinstance(event, CredentialsUpdated):
                continue
            try:
                await self.credential_store.save(session.session_id, event.update)
            except PersistenceFailure:
                logger.error(
                    "Pending credentials for session %s were not saved",
                    session.session_id,
                )

    def _schedule_reconnect(self, session_id: str) -> None:
        _cancel(self._reconnects.pop(session_id, None))
        self._reconnects[session_id] = self._spawn(self._reconnect(session_id))

    async def _reconnect(self, session_id: str) -> None:
        attempt = self._attempts.get(session_id, 0) + 1
        delay = self.reconnect_policy.delay_for(attempt)
        if delay is None:
            logger.error(
                "Giving up on session %s after %d reconnect attempts",
                session_id,
                attempt - 1,
            )
            return
        self._attempts[session_id] = attempt
        failures = self._open_failures.get(session_id, 0)
        delay = max(delay, self.reconnect_policy.failure_delay_for(failures))
        logger.warning(
            "Reconnecting session %s (attempt %d) in %.1fs", session_id, attempt, delay
        )
        if delay:
            await asyncio.sleep(delay)
        self._reconnects.pop(session_id, None)
        try:
            await self._open(session_id)
        except Exception:
            if failures:
                logger.warning("Reconnect of session %s failed again", session_id)
            else:
                logger.exception("Reconnect failed", extra={"session_id": session_id})
            self._open_failures[session_id] = failures + 1
            self._schedule_reconnect(session_id)
        else:
            self._open_failures.pop(session_id, None)

    def _spawn(self, coro: Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task


def _cancel(task: asyncio.Task | None) -> None:
    if task is None or task.done() or task is asyncio.current_task():
        return
    task.cancel()
