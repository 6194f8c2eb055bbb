"""Personal referral posters: an event template with the staff member's QR code pasted in.

The QR code encodes the event's landing URL with ``ref=<referral code>`` and
is scaled into the event's QR box, which is stored in percent so the same
event works for templates of any resolution.
"""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import qrcode
from PIL import Image
from qrcode.constants import ERROR_CORRECT_M
from qrcode.image.pil import PilImage

from database import Event
from events import QrBox, event_qr_box, referral_link

logger = logging.getLogger(__name__)

QR_BORDER = 1


def make_qr_image(data: str) -> Image.Image:
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=10, border=QR_BORDER)
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(image_factory=PilImage, fill_color="black", back_color="white").get_image().convert("RGB")


def compose_poster(template: Image.Image, data: str, box: QrBox) -> Image.Image:
    box.validate()
    poster = template.convert("RGB")
    left, top, width, height = box.pixel_box(poster.size)
    code = make_qr_image(data).resize((width, height), Image.Resampling.NEAREST)
    poster.paste(code, (left, top))
    return poster


def poster_filename(referral_code: str) -> str:
    return f"my_qr_{referral_code}.png"


def render_referral_poster(
    event: Event,
    user: Dict,
    *,
    template_dir: Optional[Union[str, Path]] = None,
) -> bytes:
    """PNG bytes of ``event``'s poster carrying ``user``'s referral link."""
    code = user.get("referral_code")
    if not code:
        raise ValueError("Your account has no referral code.")
    path = Path(event.template_path)
    if template_dir and not path.is_absolute():
        path = Path(template_dir) / path
    if not path.is_file():
        raise FileNotFoundError(f"Template image for '{event.name}' is missing: {path}")

    with Image.open(path) as template:
        poster = compose_poster(template, referral_link(event.landing_url, code), event_qr_box(event))
    buffer = io.BytesIO()
    poster.save(buffer, format="PNG")
    logger.info("Rendered referral poster for %s on event %s", code, event.id)
    return buffer.getvalue()
