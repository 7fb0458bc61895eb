"""Error taxonomy shared by the gateway layers."""


class GatewayError(Exception):
    """Base error carrying a client-safe status tag and HTTP status."""

    status_tag = "error"
    http_status = 500
    default_message = "Erro interno"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(GatewayError):
    """Missing or malformed request fields."""

    http_status = 400
    default_message = "Invalid request"


class SessionUnavailable(GatewayError):
    """No connected WhatsApp session is available."""

    status_tag = "unavailable"
    http_status = 503
    default_message = "Sessão WhatsApp nao ativa. Escaneie o QR code."


class DeliveryFailed(GatewayError):
    """The transport rejected an outbound message."""

    default_message = "Falha ao enviar mensagem"


class PersistenceFailure(GatewayError):
    """The credential store could not read or write auth material."""

    default_message = "Falha ao persistir credenciais"


class TerminalLogout(GatewayError):
    """The remote party revoked the session; credentials are invalid."""

    default_message = "Sessao encerrada pelo dispositivo"


class QrUnavailable(GatewayError):
    """No pairing QR is waiting to be scanned."""

    status_tag = "not_found"
    http_status = 404
    default_message = "QR ainda nao gerado"
