"""Tests for the session lifecycle manager."""

import asyncio

import pytest

from tests.conftest import (
    FakeTransportFactory,
    InMemoryCredentialRepository,
    wait_for,
)
from wa_gateway.domain.errors import DeliveryFailed, SessionUnavailable
from wa_gateway.domain.sessions import (
    ConnectionClosed,
    ConnectionOpened,
    CredentialsUpdated,
    CredentialUpdate,
    DisconnectReason,
    InboundMessage,
    MessageReceived,
    QrIssued,
    SessionStatus,
)
from wa_gateway.services.credentials import CredentialStore
from wa_gateway.services.sessions import ReconnectPolicy, SessionManager


def _manager(
    factory: FakeTransportFactory,
    repository: InMemoryCredentialRepository,
    **kwargs,
) -> SessionManager:
    return SessionManager(
        credential_store=CredentialStore(repository),
        transport_factory=factory,
        **kwargs,
    )


def _connected(manager: SessionManager, session_id: str = "default"):
    return lambda: manager.status(session_id) is SessionStatus.CONNECTED


def test_start_returns_before_connection_and_then_connects(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        assert manager.get_active("default") is None
        await wait_for(_connected(manager))
        assert manager.get_active("default") is transport_factory.latest
        await manager.stop_all()

    asyncio.run(scenario())


def test_start_loads_stored_credentials(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    credential_repository.creds["default"] = {"me": {"id": "1@s.whatsapp.net"}}
    credential_repository.keys["default"] = {"pre-key": {"1": {"public": "abc"}}}
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await manager.stop_all()

    asyncio.run(scenario())

    credentials = transport_factory.latest.credentials
    assert credentials.creds["me"] == {"id": "1@s.whatsapp.net"}
    assert credentials.keys == {"pre-key": {"1": {"public": "abc"}}}


def test_qr_tokens_replace_each_other_and_expire_on_open(
    credential_repository: InMemoryCredentialRepository,
) -> None:
    factory = FakeTransportFactory(open_on_connect=False)
    manager = _manager(factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        assert manager.current_qr("default") is None
        factory.latest.emit(QrIssued(token="qr-1"))
        await wait_for(lambda: manager.current_qr("default") == "qr-1")
        assert manager.status("default") is SessionStatus.PENDING_QR
        assert manager.get_active("default") is None

        factory.latest.emit(QrIssued(token="qr-2"))
        await wait_for(lambda: manager.current_qr("default") == "qr-2")

        factory.latest.emit(ConnectionOpened())
        await wait_for(_connected(manager))
        assert manager.current_qr("default") is None
        await manager.stop_all()

    asyncio.run(scenario())


def test_send_delivers_one_message_through_connected_session(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> str | None:
        await manager.start("default")
        await wait_for(_connected(manager))
        message_id = await manager.send("default", "5511@s.whatsapp.net", "hello")
        await manager.stop_all()
        return message_id

    message_id = asyncio.run(scenario())

    assert message_id == "msg-1"
    assert transport_factory.all_sent() == [("5511@s.whatsapp.net", "hello")]


def test_send_without_connected_session_is_unavailable(
    credential_repository: InMemoryCredentialRepository,
) -> None:
    factory = FakeTransportFactory(open_on_connect=False)
    manager = _manager(factory, credential_repository)

    async def scenario() -> None:
        with pytest.raises(SessionUnavailable):
            await manager.send("default", "5511@s.whatsapp.net", "hello")
        await manager.start("default")
        factory.latest.emit(QrIssued(token="qr"))
        await wait_for(lambda: manager.current_qr("default") is not None)
        with pytest.raises(SessionUnavailable):
            await manager.send("default", "5511@s.whatsapp.net", "hello")
        await manager.stop_all()

    asyncio.run(scenario())

    assert factory.all_sent() == []


def test_send_rejected_by_transport_raises_delivery_failed(
    credential_repository: InMemoryCredentialRepository,
) -> None:
    factory = FakeTransportFactory(fail_sends=True)
    manager = _manager(factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        with pytest.raises(DeliveryFailed):
            await manager.send("default", "5511@s.whatsapp.net", "hello")
        await manager.stop_all()

    asyncio.run(scenario())


def test_transient_close_restarts_once_with_credentials_intact(
    journal: list[str],
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    credential_repository.creds["default"] = {"me": {"id": "1@s.whatsapp.net"}}
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        first = transport_factory.latest
        first.emit(ConnectionClosed(status_code=DisconnectReason.CONNECTION_LOST))
        await wait_for(lambda: len(transport_factory.sessions) == 2)
        await wait_for(_connected(manager))
        assert manager.get_active("default") is transport_factory.latest
        assert manager.get_active("default") is not first
        await manager.stop_all()

    asyncio.run(scenario())

    assert journal == ["start:default", "start:default"]
    assert transport_factory.latest.credentials.creds["me"] == {
        "id": "1@s.whatsapp.net"
    }


def test_reconnect_targets_the_closed_session_id(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await manager.start("clinic")
        await wait_for(_connected(manager, "clinic"))
        clinic = next(s for s in transport_factory.sessions if s.session_id == "clinic")
        clinic.emit(ConnectionClosed(status_code=DisconnectReason.CONNECTION_CLOSED))
        await wait_for(lambda: len(transport_factory.sessions) == 3)
        await manager.stop_all()

    asyncio.run(scenario())

    assert [s.session_id for s in transport_factory.sessions] == [
        "default",
        "clinic",
        "clinic",
    ]


def test_logout_erases_credentials_before_restarting(
    journal: list[str],
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    credential_repository.creds["default"] = {"me": {"id": "1@s.whatsapp.net"}}
    manager = _manager(
        transport_factory, credential_repository, restart_after_logout=True
    )

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        transport_factory.latest.emit(
            ConnectionClosed(status_code=DisconnectReason.LOGGED_OUT)
        )
        await wait_for(lambda: len(transport_factory.sessions) == 2)
        await manager.stop_all()

    asyncio.run(scenario())

    assert journal == ["start:default", "erase:default", "start:default"]
    assert transport_factory.latest.credentials.is_empty


def test_logout_leaves_session_dormant_by_default(
    journal: list[str],
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    credential_repository.creds["default"] = {"me": {"id": "1@s.whatsapp.net"}}
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        transport_factory.latest.emit(
            ConnectionClosed(status_code=DisconnectReason.LOGGED_OUT)
        )
        await wait_for(lambda: "erase:default" in journal)
        for _ in range(10):
            await asyncio.sleep(0)
        snapshot = manager.snapshot()
        assert manager.status("default") is SessionStatus.DISCONNECTED
        assert snapshot[0].last_error is not None
        await manager.stop_all()

    asyncio.run(scenario())

    assert journal == ["start:default", "erase:default"]
    assert "default" not in credential_repository.creds


def test_credential_update_is_saved_before_next_event(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)
    seen: list[object] = []

    async def handler(session_id: str, jid: str, text: str) -> None:
        seen.append(credential_repository.creds.get(session_id))

    manager.add_inbound_handler(handler)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        session = transport_factory.latest
        session.emit(CredentialsUpdated(CredentialUpdate(creds={"me": {"id": "x"}})))
        session.emit(
            MessageReceived(InboundMessage(remote_jid="55@s.whatsapp.net", text="oi"))
        )
        await wait_for(lambda: bool(seen))
        await manager.stop_all()

    asyncio.run(scenario())

    assert seen == [{"me": {"id": "x"}}]


def test_persistence_failure_forces_fresh_reconnect(
    journal: list[str],
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        first = transport_factory.latest
        credential_repository.fail_writes = True
        first.emit(CredentialsUpdated(CredentialUpdate(creds={"me": {"id": "x"}})))
        await wait_for(lambda: len(transport_factory.sessions) == 2)
        assert first.closed
        await manager.stop_all()

    asyncio.run(scenario())

    assert "erase:default" not in journal


def test_inbound_self_messages_are_not_dispatched(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)
    received: list[tuple[str, str, str]] = []

    async def handler(session_id: str, jid: str, text: str) -> None:
        received.append((session_id, jid, text))

    manager.add_inbound_handler(handler)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        session = transport_factory.latest
        session.emit(
            MessageReceived(
                InboundMessage(remote_jid="55@s.whatsapp.net", text="sim", from_me=True)
            )
        )
        session.emit(
            MessageReceived(InboundMessage(remote_jid="55:4@s.whatsapp.net", text="sim"))
        )
        await wait_for(lambda: bool(received))
        await manager.stop_all()

    asyncio.run(scenario())

    assert received == [("default", "55@s.whatsapp.net", "sim")]


def test_events_from_discarded_handles_are_ignored(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        first = transport_factory.latest
        first.emit(ConnectionClosed(status_code=DisconnectReason.RESTART_REQUIRED))
        await wait_for(lambda: len(transport_factory.sessions) == 2)
        await wait_for(_connected(manager))
        first.emit(QrIssued(token="stale"))
        first.emit(ConnectionClosed(status_code=DisconnectReason.CONNECTION_LOST))
        for _ in range(10):
            await asyncio.sleep(0)
        assert manager.current_qr("default") is None
        assert manager.status("default") is SessionStatus.CONNECTED
        await manager.stop_all()

    asyncio.run(scenario())

    assert len(transport_factory.sessions) == 2


def test_reconnect_policy_gives_up_after_max_attempts(
    journal: list[str],
    credential_repository: InMemoryCredentialRepository,
) -> None:
    factory = FakeTransportFactory(journal=journal, open_on_connect=False)
    manager = _manager(
        factory, credential_repository, reconnect_policy=ReconnectPolicy(max_attempts=1)
    )

    async def scenario() -> None:
        await manager.start("default")
        factory.latest.emit(ConnectionClosed(status_code=408))
        await wait_for(lambda: len(factory.sessions) == 2)
        factory.latest.emit(ConnectionClosed(status_code=408))
        for _ in range(20):
            await asyncio.sleep(0)
        assert manager.status("default") is SessionStatus.DISCONNECTED
        assert manager.snapshot()[0].reconnect_attempts == 1
        await manager.stop_all()

    asyncio.run(scenario())

    assert journal == ["start:default", "start:default"]


def test_stop_closes_handle_without_reconnecting(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        await manager.stop("default")
        for _ in range(10):
            await asyncio.sleep(0)
        assert manager.get_active("default") is None

    asyncio.run(scenario())

    assert transport_factory.latest.closed
    assert len(transport_factory.sessions) == 1


def test_reconnect_policy_delays() -> None:
    immediate = ReconnectPolicy()
    assert immediate.delay_for(1) == 0.0
    assert immediate.delay_for(1000) == 0.0

    backoff = ReconnectPolicy(max_attempts=4, base_delay=1.0, max_delay=5.0)
    assert [backoff.delay_for(n) for n in range(1, 6)] == [1.0, 2.0, 4.0, 5.0, None]


def test_stop_saves_credential_updates_still_queued(
    journal: list[str],
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        transport_factory.latest.emit(
            CredentialsUpdated(CredentialUpdate(creds={"me": {"id": "x"}}))
        )
        await manager.stop_all()

    asyncio.run(scenario())

    assert credential_repository.creds["default"] == {"me": {"id": "x"}}
    assert journal == ["start:default", "save:default"]


def test_restart_loads_credentials_queued_by_previous_handle(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(transport_factory, credential_repository)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        first = transport_factory.latest
        first.emit(
            CredentialsUpdated(
                CredentialUpdate(
                    creds={"me": {"id": "x"}},
                    keys={"pre-key": {"1": {"public": "a"}}},
                )
            )
        )
        await manager.start("default")
        await manager.stop_all()

    asyncio.run(scenario())

    assert transport_factory.sessions[0].closed
    credentials = transport_factory.latest.credentials
    assert credentials.creds == {"me": {"id": "x"}}
    assert credentials.keys == {"pre-key": {"1": {"public": "a"}}}


def test_failed_reopen_backs_off_before_retrying(
    transport_factory: FakeTransportFactory,
    credential_repository: InMemoryCredentialRepository,
) -> None:
    manager = _manager(
        transport_factory,
        credential_repository,
        reconnect_policy=ReconnectPolicy(failure_delay=0.2),
    )

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(_connected(manager))
        credential_repository.fail_reads = True
        transport_factory.latest.emit(
            ConnectionClosed(status_code=DisconnectReason.CONNECTION_LOST)
        )
        await wait_for(lambda: credential_repository.reads == 2)
        await asyncio.sleep(0.1)
        assert credential_repository.reads == 2
        credential_repository.fail_reads = False
        await wait_for(lambda: len(transport_factory.sessions) == 2, timeout=2.0)
        await wait_for(_connected(manager))
        assert manager.snapshot()[0].reconnect_attempts == 0
        await manager.stop_all()

    asyncio.run(scenario())


def test_qr_is_printed_when_enabled(
    credential_repository: InMemoryCredentialRepository,
) -> None:
    factory = FakeTransportFactory(open_on_connect=False, qr_on_connect="2@ref,abc")
    manager = _manager(factory, credential_repository, print_qr=True)

    async def scenario() -> None:
        await manager.start("default")
        await wait_for(lambda: manager.current_qr("default") == "2@ref,abc")
        await manager.stop_all()

    asyncio.run(scenario())


def test_reconnect_policy_failure_delays() -> None:
    policy = ReconnectPolicy(failure_delay=1.0, max_failure_delay=3.0)

    assert [policy.failure_delay_for(n) for n in range(0, 5)] == [
        0.0,
        1.0,
        2.0,
        3.0,
        3.0,
    ]
    assert ReconnectPolicy(failure_delay=0.0).failure_delay_for(3) == 0.0
