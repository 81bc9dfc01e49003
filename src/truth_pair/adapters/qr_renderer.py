"""Render raw WhatsApp QR payloads as PNG data URIs."""

import base64
from io import BytesIO

import qrcode
from qrcode.exceptions import DataOverflowError


def render_qr_data_uri(payload: str, box_size: int = 8, border: int = 2) -> str:
    """Return a ``data:image/png;base64,...`` URI for a QR payload."""
    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=box_size,
        border=border,
    )
    qr.add_data(payload)
    try:
        qr.make(fit=True)
    except DataOverflowError as exc:
        raise ValueError("QR payload is too large to render") from exc
    buffer = BytesIO()
    qr.make_image(fill_color="black", back_color="white").save(buffer, format="PNG")
    encoded = base64.b64encode(buffer.getvalue()).decode("ascii")
    return f"data:image/png;base64,{encoded}"
