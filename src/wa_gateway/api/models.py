"""Pydantic models for gateway request bodies."""

from pydantic import BaseModel


class SendTokenRequest(BaseModel):
    """Body of ``POST /enviar``."""

    telefone: str | int | None = None
    token: str | int | None = None


class RegisterContactRequest(BaseModel):
    """Body of ``POST /cadastro-medico``."""

    telefone: str | int | None = None
    nome_medico: str | None = None
    link: str | None = None
