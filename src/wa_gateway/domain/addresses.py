"""WhatsApp address helpers."""

import re

from wa_gateway.domain.errors import InvalidRequest

USER_SERVER = "s.whatsapp.net"

_NON_DIGITS = re.compile(r"\D")


def phone_to_jid(phone: str) -> str:
    """Build a user JID from a free-form phone number."""
    digits = _NON_DIGITS.sub("", phone)
    if not digits:
        raise InvalidRequest("Telefone invalido")
    return f"{digits}@{USER_SERVER}"


def normalize_jid(jid: str) -> str:
    """Drop the device part of a JID (``user:device@server``)."""
    user, sep, server = jid.partition("@")
    if not sep:
        return jid
    user = user.split(":", maxsplit=1)[0]
    return f"{user}@{server}"
