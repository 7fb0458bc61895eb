"""Supabase-backed credential repository."""

from dataclasses import dataclass
from datetime import UTC, datetime

from supabase import Client

from wa_gateway.domain.sessions import Credentials
from wa_gateway.services.credentials import CredentialRepository

_TABLE = "wa_credentials"
_CREDS_CATEGORY = "creds"
_CREDS_KEY_ID = "creds"


@dataclass
class SupabaseCredentialRepository(CredentialRepository):
    """Supabase implementation storing one row per credential record."""

    client: Client

    def read(self, session_id: str) -> Credentials:
        """Return stored credentials, or empty credentials."""
        response = (
            self.client.table(_TABLE)
            .select("category, key_id, value_json")
            .eq("session_id", session_id)
            .execute()
        )
        creds: dict[str, object] = {}
        keys: dict[str, dict[str, object]] = {}
        for row in response.data or []:
            if row["category"] == _CREDS_CATEGORY:
                creds = row["value_json"] or {}
                continue
            keys.setdefault(row["category"], {})[row["key_id"]] = row["value_json"]
        return Credentials(creds=creds, keys=keys)

    def write_creds(self, session_id: str, creds: dict[str, object]) -> None:
        """Upsert the identity row."""
        self.client.table(_TABLE).upsert(
            _row(session_id, _CREDS_CATEGORY, _CREDS_KEY_ID, creds),
            on_conflict="session_id,category,key_id",
        ).execute()

    def write_keys(
        self, session_id: str, keys: dict[str, dict[str, object | None]]
    ) -> None:
        """Upsert changed keys and delete removed ones."""
        rows = []
        for category, entries in keys.items():
            for key_id, value in entries.items():
                if value is None:
                    self.client.table(_TABLE).delete().eq("session_id", session_id).eq(
                        "category", category
                    ).eq("key_id", key_id).execute()
                else:
                    rows.append(_row(session_id, category, key_id, value))
        if rows:
            self.client.table(_TABLE).upsert(
                rows, on_conflict="session_id,category,key_id"
            ).execute()

    def erase(self, session_id: str) -> None:
        """Delete every row for the session."""
        self.client.table(_TABLE).delete().eq("session_id", session_id).execute()


def _row(session_id: str, category: str, key_id: str, value: object) -> dict:
    return {
        "session_id": session_id,
        "category": category,
        "key_id": key_id,
        "value_json": value,
        "updated_at": datetime.now(tz=UTC).isoformat(),
    }
