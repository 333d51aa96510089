"""QR identity passes: the payload printed on a pet's QR code, what a scanner
makes of scanned text, and the printable PDF pass."""
import io
import json
from xml.sax.saxutils import escape
from dataclasses import dataclass, field
from typing import Optional

from models import Pet

SHARE_URL = "https://petroll.co/pet/view?token={token}"


class InvalidQRCode(ValueError):
    pass


@dataclass
class ScanResult:
    url: Optional[str] = None  # set when the code is a plain link
    pet_id: Optional[int] = None
    owner_id: Optional[int] = None
    pet_name: Optional[str] = None
    data: dict = field(default_factory=dict)

    @property
    def is_link(self) -> bool:
        return self.url is not None


def share_url(pet: Pet) -> str:
    return SHARE_URL.format(token=pet.secure_token or "")


def qr_payload(pet: Pet) -> str:
    owner = pet.owner
    return json.dumps({
        "petId": pet.pet_id,
        "petName": pet.pet_name,
        "ownerName": owner.user_name if owner else None,
        "ownerId": owner.user_id if owner else None,
        "address": (owner.address if owner else None) or "",
        "token": pet.secure_token,
    })


def parse_scan(text: str) -> ScanResult:
    text = (text or "").strip()
    if text.startswith("http://") or text.startswith("https://"):
        return ScanResult(url=text)
    try:
        data = json.loads(text)
    except ValueError:
        raise InvalidQRCode("Invalid QR Code")
    if not isinstance(data, dict):
        raise InvalidQRCode("Invalid QR Code")
    try:
        pet_id = _as_id(data.get("petId"))
        owner_id = _as_id(data.get("ownerId"))
    except (TypeError, ValueError):
        raise InvalidQRCode("Invalid QR Code")
    return ScanResult(
        pet_id=pet_id,
        owner_id=owner_id,
        pet_name=data.get("petName"),
        data=data,
    )


def _as_id(value) -> int:
    # bool is an int subclass but never an id
    if isinstance(value, bool) or (isinstance(value, float) and not value.is_integer()):
        raise ValueError(f"Not an id: {value!r}")
    return int(value)


def render_pass_pdf(pet: Pet, size: float = 180) -> bytes:
    """Render a one-page QR pass for ``pet`` and return the PDF bytes."""
    from reportlab.graphics.barcode.qr import QrCodeWidget
    from reportlab.graphics.shapes import Drawing
    from reportlab.lib.pagesizes import A6
    from reportlab.lib.styles import getSampleStyleSheet
    from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

    widget = QrCodeWidget(qr_payload(pet))
    x1, y1, x2, y2 = widget.getBounds()
    drawing = Drawing(size, size, transform=[size / (x2 - x1), 0, 0, size / (y2 - y1), 0, 0])
    drawing.add(widget)

    owner = pet.owner
    styles = getSampleStyleSheet()
    flowables = [
        Paragraph(f"Petroll QR Pass - {escape(pet.pet_name or 'Pet')}", styles["Title"]),
        drawing,
        Spacer(1, 8),
        Paragraph(f"Owner: {escape(owner.user_name) if owner and owner.user_name else '-'}", styles["Normal"]),
        Paragraph(f"Address: {escape(owner.address) if owner and owner.address else '-'}", styles["Normal"]),
        Paragraph(escape(share_url(pet)), styles["Normal"]),
    ]

    buffer = io.BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=A6, leftMargin=18, rightMargin=18, topMargin=18, bottomMargin=18)
    doc.build(flowables)
    pdf_bytes = buffer.getvalue()
    buffer.close()
    return pdf_bytes
