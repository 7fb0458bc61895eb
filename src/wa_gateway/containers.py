"""Dependency container wiring for the application."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from supabase import create_client

from wa_gateway.adapters.file_credential_repository import FileCredentialRepository
from wa_gateway.adapters.memory_contact_repository import InMemoryContactRepository
from wa_gateway.adapters.supabase_credential_repository import (
    SupabaseCredentialRepository,
)
from wa_gateway.adapters.transport import (
    TransportFactory,
    TransportOptions,
    load_transport_factory,
)
from wa_gateway.config import Settings
from wa_gateway.services.contacts import ContactService
from wa_gateway.services.credentials import CredentialRepository, CredentialStore
from wa_gateway.services.sessions import ReconnectPolicy, SessionManager


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    credential_store: CredentialStore
    session_manager: SessionManager
    contact_service: ContactService
    close_resources: Callable[[], Awaitable[None]]


def build_container(
    settings: Settings | None = None,
    transport_factory: TransportFactory | None = None,
) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    credential_store = CredentialStore(_build_credential_repository(resolved_settings))
    session_manager = SessionManager(
        credential_store=credential_store,
        transport_factory=transport_factory
        or load_transport_factory(
            resolved_settings.transport_factory, resolved_settings
        ),
        options=TransportOptions(
            connect_timeout=resolved_settings.connect_timeout,
            default_query_timeout=resolved_settings.default_query_timeout,
        ),
        reconnect_policy=ReconnectPolicy(
            max_attempts=resolved_settings.reconnect_max_attempts,
            base_delay=resolved_settings.reconnect_base_delay,
            multiplier=resolved_settings.reconnect_multiplier,
            max_delay=resolved_settings.reconnect_max_delay,
        ),
        restart_after_logout=resolved_settings.restart_after_logout,
        print_qr=resolved_settings.print_qr_in_terminal,
    )
    contact_service = ContactService(
        repository=InMemoryContactRepository(),
        session_manager=session_manager,
    )
    session_manager.add_inbound_handler(contact_service.on_inbound_text)

    async def close_resources() -> None:
        await session_manager.stop_all()

    return AppContainer(
        settings=resolved_settings,
        credential_store=credential_store,
        session_manager=session_manager,
        contact_service=contact_service,
        close_resources=close_resources,
    )


def _build_credential_repository(settings: Settings) -> CredentialRepository:
    if settings.credential_backend == "supabase":
        if not settings.supabase_url or not settings.supabase_service_key:
            raise ValueError(
                "supabase_url and supabase_service_key are required "
                "for the supabase credential backend"
            )
        return SupabaseCredentialRepository(
            create_client(settings.supabase_url, settings.supabase_service_key)
        )
    return FileCredentialRepository(settings.auth_dir)
