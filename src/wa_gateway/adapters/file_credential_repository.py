"""Filesystem-backed credential repository (multi-file auth layout)."""

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote, unquote

from wa_gateway.domain.sessions import Credentials
from wa_gateway.services.credentials import CredentialRepository


@dataclass
class FileCredentialRepository(CredentialRepository):
    """Store each session under ``<base_dir>/<session_id>/``.

    ``creds.json`` holds the identity subset and every key lives in
    ``keys/<category>/<key_id>.json``.
    """

    base_dir: Path

    def read(self, session_id: str) -> Credentials:
        """Return stored credentials, or empty credentials."""
        root = self._session_dir(session_id)
        creds_path = root / "creds.json"
        creds = _read_json(creds_path) if creds_path.exists() else {}
        keys: dict[str, dict[str, object]] = {}
        keys_dir = root / "keys"
        if keys_dir.is_dir():
            for category_dir in sorted(keys_dir.iterdir()):
                if not category_dir.is_dir():
                    continue
                entries = {
                    _unsafe_name(path.stem): _read_json(path)
                    for path in sorted(category_dir.glob("*.json"))
                }
                if entries:
                    keys[_unsafe_name(category_dir.name)] = entries
        return Credentials(creds=creds, keys=keys)

    def write_creds(self, session_id: str, creds: dict[str, object]) -> None:
        """Replace ``creds.json`` atomically."""
        _write_json(self._session_dir(session_id) / "creds.json", creds)

    def write_keys(
        self, session_id: str, keys: dict[str, dict[str, object | None]]
    ) -> None:
        """Write or delete one file per key."""
        keys_dir = self._session_dir(session_id) / "keys"
        for category, entries in keys.items():
            category_dir = keys_dir / safe_name(category)
            for key_id, value in entries.items():
                path = category_dir / f"{safe_name(key_id)}.json"
                if value is None:
                    path.unlink(missing_ok=True)
                else:
                    _write_json(path, value)

    def erase(self, session_id: str) -> None:
        """Remove the session directory."""
        root = self._session_dir(session_id)
        if root.exists():
            shutil.rmtree(root)

    def _session_dir(self, session_id: str) -> Path:
        return self.base_dir / safe_name(session_id)


def safe_name(value: str) -> str:
    """Escape a value so it is usable as a single path component."""
    if value in {"", ".", ".."}:
        return "%00" + value.replace(".", "%2E")
    return quote(value, safe="")


def _unsafe_name(value: str) -> str:
    if value.startswith("%00"):
        value = value[3:]
    return unquote(value)


def _read_json(path: Path) -> object:
    with path.open(encoding="utf-8") as handle:
        return json.load(handle)


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with tmp_path.open("w", encoding="utf-8") as handle:
        json.dump(payload, handle)
        handle.flush()
        os.fsync(handle.fileno())
    os.replace(tmp_path, path)
