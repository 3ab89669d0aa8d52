import io

import qrcode

import models


def barcode_payload(member: models.Member) -> str:
    """Value printed into the guest's QR/barcode. Legacy guests carry their id."""
    return member.ticket_number or member.id


def qr_png_bytes(payload: str, box_size: int = 8) -> bytes:
    """Return raw PNG bytes of a QR code encoding payload."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_H,
        box_size=box_size,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()
