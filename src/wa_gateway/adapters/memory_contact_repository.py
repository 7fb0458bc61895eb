"""In-process contact storage."""

from dataclasses import dataclass, field

from wa_gateway.domain.contacts import ContactRecord
from wa_gateway.services.contacts import ContactRepository


@dataclass
class InMemoryContactRepository(ContactRepository):
    """Contact records kept for the lifetime of the process."""

    records: dict[tuple[str, str], ContactRecord] = field(default_factory=dict)

    def get(self, session_id: str, jid: str) -> ContactRecord | None:
        """Return the contact, if present."""
        return self.records.get((session_id, jid))

    def put(self, record: ContactRecord) -> None:
        """Create or overwrite a contact."""
        self.records[(record.session_id, record.jid)] = record

    def delete(self, session_id: str, jid: str) -> None:
        """Remove a contact."""
        self.records.pop((session_id, jid), None)
