import base64
from io import BytesIO

import qrcode


def render_provisioning_uri(provisioning_uri: str) -> str:
    """Render a provisioning URI as a base64-encoded PNG QR code."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(provisioning_uri)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white")

    buffer = BytesIO()
    img.save(buffer, format="PNG")

    return base64.b64encode(buffer.getvalue()).decode("utf-8")


def as_data_url(png_base64: str) -> str:
    return f"data:image/png;base64,{png_base64}"
