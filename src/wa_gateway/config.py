"""Application configuration."""

import os
from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")

DEFAULT_TRANSPORT_FACTORY = (
    "wa_gateway.adapters.pyaileys_transport:PyaileysTransportFactory"
)
DUMMY_TRANSPORT_FACTORY = "wa_gateway.adapters.dummy_transport:DummyTransportFactory"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    host: str = "0.0.0.0"
    port: int = 3334
    auth_dir: Path = Path("auth_info_baileys")
    default_session_id: str = "default"
    credential_backend: Literal["file", "supabase"] = "file"
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    admin_token: str | None = None
    transport_factory: str = DEFAULT_TRANSPORT_FACTORY
    transport_dir: Path = Path("auth_info_socket")
    print_qr_in_terminal: bool = True
    connect_timeout: float = 60.0
    default_query_timeout: float = 60.0
    restart_after_logout: bool = False
    reconnect_max_attempts: int | None = None
    reconnect_base_delay: float = 0.0
    reconnect_multiplier: float = 2.0
    reconnect_max_delay: float = 0.0
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )
