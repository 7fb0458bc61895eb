"""FastAPI application factory."""

import io
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from wa_gateway.api.admin import router as admin_router
from wa_gateway.api.admin import serialize_snapshot
from wa_gateway.api.models import RegisterContactRequest, SendTokenRequest
from wa_gateway.app_logging import configure_logging
from wa_gateway.containers import AppContainer
from wa_gateway.domain.addresses import phone_to_jid
from wa_gateway.domain.errors import GatewayError, InvalidRequest, QrUnavailable
from wa_gateway.services.qr import render_qr_png


def create_app(container: AppContainer) -> FastAPI:
    """Create a FastAPI app configured with dependencies."""
    configure_logging(container.settings.log_level)
    logger = logging.getLogger(__name__)
    default_session_id = container.settings.default_session_id

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await app.state.container.session_manager.start(default_session_id)
        except Exception:
            logger.exception("Failed to start WhatsApp session")
        yield
        await app.state.container.close_resources()

    app = FastAPI(lifespan=lifespan)
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(admin_router)

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(
        request: Request, exc: GatewayError
    ) -> JSONResponse:
        return _error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_response(InvalidRequest("Corpo da requisicao invalido"))

    @app.exception_handler(Exception)
    async def unexpected_error_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        logger.exception("Unhandled error on %s", request.url.path)
        return _error_response(GatewayError())

    @app.get("/health")
    async def health(request: Request) -> dict[str, object]:
        """Health check with the state of every session."""
        state_container: AppContainer = request.app.state.container
        return {
            "status": "ok",
            "sessions": [
                serialize_snapshot(snapshot)
                for snapshot in state_container.session_manager.snapshot()
            ],
        }

    @app.get("/qr")
    async def current_qr(
        request: Request, session_id: str = default_session_id
    ) -> StreamingResponse:
        """Return the pending pairing QR as a PNG image."""
        state_container: AppContainer = request.app.state.container
        token = state_container.session_manager.current_qr(session_id)
        if token is None:
            raise QrUnavailable()
        return StreamingResponse(
            io.BytesIO(render_qr_png(token)), media_type="image/png"
        )

    @app.post("/enviar")
    async def send_token(
        payload: SendTokenRequest, request: Request
    ) -> dict[str, str]:
        """Send an access token to a phone number."""
        state_container: AppContainer = request.app.state.container
        if _missing(payload.telefone) or _missing(payload.token):
            raise InvalidRequest("Informe telefone e token no corpo da requisicao")
        jid = phone_to_jid(str(payload.telefone))
        await state_container.session_manager.send(
            default_session_id, jid, _token_message(str(payload.token))
        )
        logger.info("Token sent to %s", jid)
        return {"status": "success"}

    @app.post("/cadastro-medico")
    async def register_contact(
        payload: RegisterContactRequest, request: Request
    ) -> dict[str, str]:
        """Register a doctor and send the confirmation prompt."""
        state_container: AppContainer = request.app.state.container
        if (
            _missing(payload.telefone)
            or _missing(payload.nome_medico)
            or _missing(payload.link)
        ):
            raise InvalidRequest(
                "Informe telefone, nome_medico e link no corpo da requisicao"
            )
        await state_container.contact_service.register(
            default_session_id,
            str(payload.telefone),
            payload.nome_medico.strip(),
            payload.link.strip(),
        )
        return {"status": "success"}

    return app


def _error_response(exc: GatewayError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.http_status,
        content={"status": exc.status_tag, "message": exc.message},
    )


def _missing(value: object) -> bool:
    if value is None:
        return True
    return isinstance(value, str) and not value.strip()


def _token_message(token: str) -> str:
    return (
        f"🔑 Olá! Seu token de acesso é: {token}.\n\n"
        "Utilize este código para validar o acesso ao sistema."
    )
