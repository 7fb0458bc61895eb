"""Confirmation workflow for registered contacts."""

import logging
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Protocol

from wa_gateway.domain.addresses import phone_to_jid
from wa_gateway.domain.contacts import ContactRecord, ContactState, ReplyOutcome
from wa_gateway.services.locks import NamedLock
from wa_gateway.services.sessions import SessionManager

logger = logging.getLogger(__name__)

AFFIRMATIVE_TOKENS = ("sim",)
NEGATIVE_TOKENS = ("não", "nao")


class ContactRepository(Protocol):
    """Storage for contact records, keyed by session id and JID."""

    def get(self, session_id: str, jid: str) -> ContactRecord | None:
        """Return the contact, if present."""

    def put(self, record: ContactRecord) -> None:
        """Create or overwrite a contact."""

    def delete(self, session_id: str, jid: str) -> None:
        """Remove a contact."""


@dataclass
class ContactService:
    """State machine: register -> await confirmation -> idle."""

    repository: ContactRepository
    session_manager: SessionManager
    _locks: NamedLock = field(default_factory=NamedLock)

    async def register(
        self, session_id: str, phone: str, display_name: str, payload_link: str
    ) -> ContactRecord:
        """Register a contact and ask them to confirm.

        The record is rolled back when the prompt cannot be delivered.
        """
        jid = phone_to_jid(phone)
        async with self._locks.hold((session_id, jid)):
            self.session_manager.ensure_active(session_id)
            previous = self.repository.get(session_id, jid)
            record = ContactRecord(
                session_id=session_id,
                jid=jid,
                display_name=display_name,
                state=ContactState.AWAIT_CONFIRMATION,
                payload_link=payload_link,
            )
            self.repository.put(record)
            try:
                await self.session_manager.send(
                    session_id, jid, _confirmation_prompt(display_name)
                )
            except Exception:
                if previous is None:
                    self.repository.delete(session_id, jid)
                else:
                    self.repository.put(previous)
                raise
        logger.info("Contact %s registered, awaiting confirmation", jid)
        return record

    async def on_inbound_text(
        self, session_id: str, jid: str, raw_text: str
    ) -> ReplyOutcome:
        """Advance the workflow with a reply from ``jid``."""
        async with self._locks.hold((session_id, jid)):
            record = self.repository.get(session_id, jid)
            if record is None or record.state is not ContactState.AWAIT_CONFIRMATION:
                return ReplyOutcome.IGNORED
            outcome = classify_reply(raw_text)
            if outcome is ReplyOutcome.CONFIRMED:
                await self.session_manager.send(
                    session_id,
                    jid,
                    _link_message(record.display_name, record.payload_link),
                )
            elif outcome is ReplyOutcome.DECLINED:
                await self.session_manager.send(
                    session_id, jid, _apology_message(record.display_name)
                )
            else:
                return outcome
            self.repository.put(replace(record, state=ContactState.IDLE))
        logger.info("Contact %s resolved as %s", jid, outcome.value)
        return outcome

    def get(self, session_id: str, jid: str) -> ContactRecord | None:
        """Return a contact record, if registered."""
        return self.repository.get(session_id, jid)


def classify_reply(raw_text: str) -> ReplyOutcome:
    """Classify a free-text reply; affirmative wins when both tokens appear."""
    text = unicodedata.normalize("NFC", raw_text).strip().casefold()
    if any(token in text for token in AFFIRMATIVE_TOKENS):
        return ReplyOutcome.CONFIRMED
    if any(token in text for token in NEGATIVE_TOKENS):
        return ReplyOutcome.DECLINED
    return ReplyOutcome.IGNORED


def _confirmation_prompt(display_name: str) -> str:
    return (
        f"Olá, {display_name}! Você foi cadastrado(a) em nosso sistema.\n\n"
        "Deseja receber o link de acesso? Responda *SIM* para confirmar "
        "ou *NÃO* para cancelar."
    )


def _link_message(display_name: str, payload_link: str) -> str:
    return f"Obrigado, {display_name}! Aqui está o seu link de acesso: {payload_link}"


def _apology_message(display_name: str) -> str:
    return (
        f"Tudo bem, {display_name}. Pedimos desculpas pelo incômodo, "
        "você não receberá mais mensagens sobre este cadastro."
    )
