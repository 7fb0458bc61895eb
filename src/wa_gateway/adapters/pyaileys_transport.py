"""WhatsApp multi-device transport backed by pyaileys.

Each session owns a Baileys-style auth folder (``creds.json`` plus one
``<category>-<key_id>.json`` file per key). The folder is seeded from the
credential store when it is missing, and mirrored back into the store through
credential updates whenever the socket reports new creds.
"""

import asyncio
import dataclasses
import json
import logging
import shutil
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pyaileys.client import WhatsAppClient
from pyaileys.socket_config import SocketConfig

from wa_gateway.adapters.file_credential_repository import safe_name
from wa_gateway.adapters.transport import EventSink, TransportOptions
from wa_gateway.config import Settings
from wa_gateway.domain.addresses import normalize_jid
from wa_gateway.domain.sessions import (
    ConnectionClosed,
    ConnectionOpened,
    Credentials,
    CredentialsUpdated,
    CredentialUpdate,
    DisconnectReason,
    InboundMessage,
    MessageReceived,
    QrIssued,
)

logger = logging.getLogger(__name__)

# Longest first, so ``sender-key-memory-*`` is not read as ``sender-key``.
KEY_CATEGORIES = (
    "app-state-sync-version",
    "app-state-sync-key",
    "sender-key-memory",
    "device-list",
    "lid-mapping",
    "sender-key",
    "pre-key",
    "session",
    "tctoken",
)

ClientLoader = Callable[[str, SocketConfig], Awaitable[tuple[Any, Any]]]


async def load_client(folder: str, socket: SocketConfig) -> tuple[Any, Any]:
    """Open a pyaileys client on a multi-file auth folder."""
    return await WhatsAppClient.from_auth_folder(folder, socket=socket)


def socket_config_from_options(options: TransportOptions) -> SocketConfig:
    """Apply transport options to the fields pyaileys' socket config knows."""
    config = SocketConfig()
    wanted = {
        "browser": options.browser,
        "connect_timeout_ms": int(options.connect_timeout * 1000),
        "connect_timeout_s": options.connect_timeout,
        "default_query_timeout_ms": int(options.default_query_timeout * 1000),
        "default_query_timeout_s": options.default_query_timeout,
        "sync_full_history": options.sync_full_history,
        "mark_online_on_connect": options.mark_online_on_connect,
        "emit_own_events": options.emit_own_events,
        "print_qr_in_terminal": False,
    }
    known = {item.name for item in dataclasses.fields(config)}
    return dataclasses.replace(
        config, **{name: value for name, value in wanted.items() if name in known}
    )


@dataclass
class PyaileysSession:
    """One WhatsApp Web socket, translated into gateway events."""

    session_id: str
    folder: Path
    credentials: Credentials
    emit: EventSink
    socket_config: SocketConfig
    client_loader: ClientLoader = load_client
    _client: Any = None
    _auth_state: Any = None
    _mirrored_keys: set[tuple[str, str]] = field(default_factory=set)

    async def connect(self) -> None:
        """Load the auth folder, subscribe to socket events and connect."""
        await asyncio.to_thread(self._seed_folder)
        self._client, self._auth_state = await self.client_loader(
            str(self.folder), self.socket_config
        )
        self._mirrored_keys = {
            (category, key_id)
            for category, entries in self.credentials.keys.items()
            for key_id in entries
        }
        self._client.on("connection.update", self._on_connection_update)
        self._client.on("creds.update", self._on_creds_update)
        self._client.on("message.decrypted", self._on_message)
        await self._client.connect()

    async def send_text(self, jid: str, text: str) -> str | None:
        """Encrypt and send a text message."""
        if self._client is None:
            raise RuntimeError(f"Session {self.session_id} is not connected")
        return await self._client.send_text(jid, text)

    async def close(self) -> None:
        """Close the socket without logging the device out."""
        if self._client is not None:
            await self._client.disconnect()

    async def _on_connection_update(self, update: Any) -> None:
        qr = _field(update, "qr")
        if qr:
            self.emit(QrIssued(token=qr))
        connection = _field(update, "connection")
        if connection == "open":
            self.emit(ConnectionOpened())
        elif connection == "close":
            status_code = _status_code(update)
            if status_code == DisconnectReason.LOGGED_OUT:
                await asyncio.to_thread(shutil.rmtree, self.folder, True)
            self.emit(
                ConnectionClosed(status_code=status_code, detail=_detail(update))
            )

    async def _on_creds_update(self, _creds: Any) -> None:
        await self._auth_state.save_creds()
        creds, keys = await asyncio.to_thread(self._read_folder)
        current = {
            (category, key_id) for category, entries in keys.items() for key_id in entries
        }
        changes: dict[str, dict[str, object | None]] = {
            category: dict(entries) for category, entries in keys.items()
        }
        for category, key_id in self._mirrored_keys - current:
            changes.setdefault(category, {})[key_id] = None
        self._mirrored_keys = current
        self.emit(CredentialsUpdated(CredentialUpdate(creds=creds, keys=changes)))

    async def _on_message(self, payload: Any) -> None:
        chat_jid = _field(payload, "chat_jid")
        if not chat_jid:
            return
        sender_jid = _field(payload, "sender_jid")
        own_jid = self._own_jid()
        from_me = bool(
            sender_jid and own_jid and normalize_jid(sender_jid) == normalize_jid(own_jid)
        )
        self.emit(
            MessageReceived(
                InboundMessage(
                    remote_jid=chat_jid,
                    text=_field(payload, "text"),
                    from_me=from_me,
                    message_id=_field(payload, "id") or None,
                )
            )
        )

    def _own_jid(self) -> str | None:
        creds = self._client.socket.auth.creds
        me = getattr(creds, "me", None)
        return getattr(me, "id", None)

    def _seed_folder(self) -> None:
        if (self.folder / "creds.json").exists() or self.credentials.is_empty:
            return
        self.folder.mkdir(parents=True, exist_ok=True)
        logger.info("Restoring auth folder for session %s", self.session_id)
        _write_json(self.folder / "creds.json", self.credentials.creds)
        for category, entries in self.credentials.keys.items():
            for key_id, value in entries.items():
                _write_json(self.folder / f"{category}-{key_id}.json", value)

    def _read_folder(self) -> tuple[dict[str, object], dict[str, dict[str, object]]]:
        creds: dict[str, object] = {}
        keys: dict[str, dict[str, object]] = {}
        if not self.folder.is_dir():
            return creds, keys
        for path in sorted(self.folder.glob("*.json")):
            if path.name == "creds.json":
                creds = _read_json(path)
                continue
            category = next(
                (c for c in KEY_CATEGORIES if path.stem.startswith(f"{c}-")), None
            )
            if category is None:
                continue
            keys.setdefault(category, {})[path.stem[len(category) + 1 :]] = _read_json(
                path
            )
        return creds, keys


@dataclass
class PyaileysTransportFactory:
    """Factory for :class:`PyaileysSession`."""

    auth_dir: Path = Path("auth_info_socket")
    client_loader: ClientLoader = load_client

    @classmethod
    def from_settings(cls, settings: Settings) -> "PyaileysTransportFactory":
        """Build a factory rooted at the configured socket folder."""
        return cls(auth_dir=settings.transport_dir)

    def create_session(
        self,
        session_id: str,
        credentials: Credentials,
        emit: EventSink,
        options: TransportOptions,
    ) -> PyaileysSession:
        """Build an unconnected session for ``session_id``."""
        return PyaileysSession(
            session_id=session_id,
            folder=self.auth_dir / safe_name(session_id),
            credentials=credentials,
            emit=emit,
            socket_config=socket_config_from_options(options),
            client_loader=self.client_loader,
        )


def _field(source: Any, *names: str) -> Any:
    for name in names:
        if isinstance(source, dict):
            value = source.get(name)
        else:
            value = getattr(source, name, None)
        if value is not None:
            return value
    return None


def _status_code(update: Any) -> int | None:
    code = _field(update, "status_code", "statusCode", "reason")
    if code is None:
        last = _field(update, "last_disconnect", "lastDisconnect")
        error = _field(last, "error")
        code = (
            _field(last, "status_code", "statusCode")
            or _field(error, "status_code", "statusCode")
            or _field(_field(error, "output"), "status_code", "statusCode")
        )
    try:
        return int(code) if code is not None else None
    except (TypeError, ValueError):
        return None


def _detail(update: Any) -> str | None:
    last = _field(update, "last_disconnect", "lastDisconnect")
    error = _field(last, "error")
    if error is None:
        return None
    return str(error)


def _read_json(path: Path) -> Any:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, payload: object) -> None:
    with path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle)
