"""QR code rendering for device pairing."""

import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M


def render_qr_png(token: str, box_size: int = 10, border: int = 4) -> bytes:
    """Render a pairing token as PNG bytes."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    qr.add_data(token)
    qr.make(fit=True)
    image = qr.make_image(fill_color="#000000", back_color="#FFFFFF")
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_qr_ascii(token: str) -> str:
    """Render a pairing token as a compact text block for the terminal."""
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, border=1)
    qr.add_data(token)
    qr.make(fit=True)
    out = io.StringIO()
    qr.print_ascii(out=out, invert=True)
    return out.getvalue()
