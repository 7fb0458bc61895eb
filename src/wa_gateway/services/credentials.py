"""Credential persistence for protocol sessions."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Protocol

from wa_gateway.domain.errors import PersistenceFailure
from wa_gateway.domain.sessions import CredentialUpdate, Credentials
from wa_gateway.services.locks import NamedLock

logger = logging.getLogger(__name__)


class CredentialRepository(Protocol):
    """Durable storage for auth material, scoped by session id."""

    def read(self, session_id: str) -> Credentials:
        """Return stored credentials, or empty credentials."""

    def write_creds(self, session_id: str, creds: dict[str, object]) -> None:
        """Replace the stored identity subset."""

    def write_keys(
        self, session_id: str, keys: dict[str, dict[str, object | None]]
    ) -> None:
        """Upsert keys by category; ``None`` values delete the key."""

    def erase(self, session_id: str) -> None:
        """Remove every record stored for the session."""


@dataclass
class CredentialStore:
    """Serialized, failure-normalizing access to a credential repository."""

    repository: CredentialRepository
    _locks: NamedLock = field(default_factory=NamedLock)

    async def load(self, session_id: str) -> Credentials:
        """Load credentials for a session."""
        async with self._locks.hold(session_id):
            try:
                return await asyncio.to_thread(self.repository.read, session_id)
            except Exception as exc:
                logger.exception(
                    "Failed to load credentials", extra={"session_id": session_id}
                )
                raise PersistenceFailure() from exc

    async def save(self, session_id: str, update: CredentialUpdate) -> None:
        """Persist an incremental credential update."""
        async with self._locks.hold(session_id):
            try:
                if update.keys:
                    await asyncio.to_thread(
                        self.repository.write_keys, session_id, update.keys
                    )
                if update.creds is not None:
                    await asyncio.to_thread(
                        self.repository.write_creds, session_id, update.creds
                    )
            except Exception as exc:
                logger.exception(
                    "Failed to save credentials", extra={"session_id": session_id}
                )
                raise PersistenceFailure() from exc

    async def erase(self, session_id: str) -> None:
        """Remove all persisted material for a session."""
        async with self._locks.hold(session_id):
            try:
                await asyncio.to_thread(self.repository.erase, session_id)
            except Exception as exc:
                logger.exception(
                    "Failed to erase credentials", extra={"session_id": session_id}
                )
                raise PersistenceFailure() from exc
