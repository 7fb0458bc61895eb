"""Shared test fixtures."""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from wa_gateway.adapters.memory_contact_repository import InMemoryContactRepository
from wa_gateway.adapters.transport import EventSink, TransportOptions
from wa_gateway.config import Settings
from wa_gateway.containers import AppContainer
from wa_gateway.domain.sessions import ConnectionOpened, Credentials, QrIssued
from wa_gateway.services.contacts import ContactService
from wa_gateway.services.credentials import CredentialRepository, CredentialStore
from wa_gateway.services.sessions import SessionManager


@dataclass
class FakeProtocolSession:
    """Fake protocol session that records outbound messages."""

    session_id: str
    credentials: Credentials
    emit: EventSink
    open_on_connect: bool = True
    qr_on_connect: str | None = None
    fail_sends: bool = False
    sent: list[tuple[str, str]] = field(default_factory=list)
    closed: bool = False

    async def connect(self) -> None:
        if self.qr_on_connect is not None:
            self.emit(QrIssued(token=self.qr_on_connect))
        if self.open_on_connect:
            self.emit(ConnectionOpened())

    async def send_text(self, jid: str, text: str) -> str | None:
        if self.fail_sends:
            raise RuntimeError("rejected by server")
        self.sent.append((jid, text))
        return f"msg-{len(self.sent)}"

    async def close(self) -> None:
        self.closed = True


@dataclass
class FakeTransportFactory:
    """Fake transport factory keeping every session it creates."""

    journal: list[str] = field(default_factory=list)
    open_on_connect: bool = True
    qr_on_connect: str | None = None
    fail_sends: bool = False
    sessions: list[FakeProtocolSession] = field(default_factory=list)

    def create_session(
        self,
        session_id: str,
        credentials: Credentials,
        emit: EventSink,
        options: TransportOptions,
    ) -> FakeProtocolSession:
        self.journal.append(f"start:{session_id}")
        session = FakeProtocolSession(
            session_id=session_id,
            credentials=credentials,
            emit=emit,
            open_on_connect=self.open_on_connect,
            qr_on_connect=self.qr_on_connect,
            fail_sends=self.fail_sends,
        )
        self.sessions.append(session)
        return session

    @property
    def latest(self) -> FakeProtocolSession:
        return self.sessions[-1]

    def all_sent(self) -> list[tuple[str, str]]:
        return [message for session in self.sessions for message in session.sent]


@dataclass
class InMemoryCredentialRepository(CredentialRepository):
    """In-memory credential repository for tests."""

    journal: list[str] = field(default_factory=list)
    creds: dict[str, dict[str, object]] = field(default_factory=dict)
    keys: dict[str, dict[str, dict[str, object]]] = field(default_factory=dict)
    fail_writes: bool = False
    fail_reads: bool = False
    reads: int = 0

    def read(self, session_id: str) -> Credentials:
        self.reads += 1
        if self.fail_reads:
            raise OSError("unreadable")
        return Credentials(
            creds=dict(self.creds.get(session_id, {})),
            keys={
                category: dict(entries)
                for category, entries in self.keys.get(session_id, {}).items()
            },
        )

    def write_creds(self, session_id: str, creds: dict[str, object]) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.journal.append(f"save:{session_id}")
        self.creds[session_id] = dict(creds)

    def write_keys(
        self, session_id: str, keys: dict[str, dict[str, object | None]]
    ) -> None:
        if self.fail_writes:
            raise OSError("disk full")
        self.journal.append(f"save:{session_id}")
        stored = self.keys.setdefault(session_id, {})
        for category, entries in keys.items():
            bucket = stored.setdefault(category, {})
            for key_id, value in entries.items():
                if value is None:
                    bucket.pop(key_id, None)
                else:
                    bucket[key_id] = value

    def erase(self, session_id: str) -> None:
        self.journal.append(f"erase:{session_id}")
        self.creds.pop(session_id, None)
        self.keys.pop(session_id, None)


async def wait_for(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def journal() -> list[str]:
    return []


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        auth_dir=tmp_path / "auth",
        transport_dir=tmp_path / "socket",
        admin_token="admin-token",
    )


@pytest.fixture
def credential_repository(journal: list[str]) -> InMemoryCredentialRepository:
    return InMemoryCredentialRepository(journal=journal)


@pytest.fixture
def transport_factory(journal: list[str]) -> FakeTransportFactory:
    return FakeTransportFactory(journal=journal)


@pytest.fixture
def container(
    settings: Settings,
    credential_repository: InMemoryCredentialRepository,
    transport_factory: FakeTransportFactory,
) -> AppContainer:
    credential_store = CredentialStore(credential_repository)
    session_manager = SessionManager(
        credential_store=credential_store,
        transport_factory=transport_factory,
    )
    contact_service = ContactService(
        repository=InMemoryContactRepository(),
        session_manager=session_manager,
    )
    session_manager.add_inbound_handler(contact_service.on_inbound_text)

    async def close_resources() -> None:
        await session_manager.stop_all()

    return AppContainer(
        settings=settings,
        credential_store=credential_store,
        session_manager=session_manager,
        contact_service=contact_service,
        close_resources=close_resources,
    )
