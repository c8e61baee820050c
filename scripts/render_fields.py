"""Draw field values into resolved boxes on a reportlab canvas.

Every drawing function takes the canvas for one overlay page and a box in
PDF points (bottom-left origin). Text is shrunk to fit, checkboxes become a
drawn checkmark, and signatures are decoded images scaled into the box with
a placeholder fallback.
"""

import base64
import binascii
import io
import logging
import math
import re
from dataclasses import dataclass
from typing import Union

from PIL import Image, UnidentifiedImageError
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import getAscentDescent, stringWidth

from affine import Point
from form_errors import SignatureEmbedFailure

logger = logging.getLogger(__name__)

DEFAULT_FONT = "Helvetica"
MAX_FONT_SIZE = 12.0
MIN_FONT_SIZE = 6.0
FONT_STEP = 0.5
WIDTH_MARGIN = 0.9
TEXT_PAD = 2.0

MULTILINE_MAX_FONT = 10.0
LINE_HEIGHT_FACTOR = 1.3

CHECK_FRACTION = 0.75
CHECK_LINE_WIDTH = 2.0

SIGNATURE_FIT = 0.95
SIGNATURE_PLACEHOLDER = "[Signature]"
SIGNATURE_FORMATS = ("PNG", "JPEG")

_DATA_URL = re.compile(r"^data:image/[\w.+-]+;base64,", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Text
# ---------------------------------------------------------------------------

def text_width(text, font, size):
    return stringWidth(text, font, size)


def fit_font_size(text, width, height, font=DEFAULT_FONT,
                  max_size=MAX_FONT_SIZE, min_size=MIN_FONT_SIZE, margin=WIDTH_MARGIN):
    """Largest size (0.5pt steps, floor min_size) whose text width fits width*margin."""
    size = max(min(height * 0.7, max_size), min_size)
    limit = width * margin
    while size > min_size and text_width(text, font, size) > limit:
        size = max(size - FONT_STEP, min_size)
    return size


def _baseline(box, font, size):
    """Baseline that vertically centres the glyph extent in the box."""
    ascent, descent = getAscentDescent(font, size)
    return box.y + (box.height - (ascent - descent)) / 2.0 - descent


def draw_text_field(c, text, box, align="left", font=DEFAULT_FONT):
    """Draw single-line text auto-fitted into box. Returns the font size used."""
    if text is None:
        return None
    text = str(text).strip()
    if not text:
        return None

    size = fit_font_size(text, box.width, box.height, font)
    width = text_width(text, font, size)
    if align == "right":
        x = box.x + box.width - width - TEXT_PAD
    elif align == "center":
        x = box.x + (box.width - width) / 2.0
    else:
        x = box.x + TEXT_PAD
    y = _baseline(box, font, size)

    c.setFillColorRGB(0, 0, 0)
    c.setFont(font, size)
    c.drawString(x, y, text)
    return size


def truncate_to_width(word, max_width, font, size):
    """Longest prefix of word that fits max_width (at least one character)."""
    for end in range(len(word), 0, -1):
        if text_width(word[:end], font, size) <= max_width:
            return word[:end]
    return word[:1]


def wrap_lines(text, max_width, font, size, max_lines=None):
    """Greedy word wrap; words wider than max_width are hard-truncated."""
    lines = []
    current = ""
    for word in str(text).split():
        if text_width(word, font, size) > max_width:
            word = truncate_to_width(word, max_width, font, size)
        trial = word if not current else f"{current} {word}"
        if text_width(trial, font, size) <= max_width:
            current = trial
        else:
            lines.append(current)
            current = word
    if current:
        lines.append(current)
    if max_lines is not None:
        lines = lines[:max_lines]
    return lines


def draw_multiline_text(c, text, box, font=DEFAULT_FONT):
    """Word-wrapped text rendered top-down, capped to the lines the box can hold."""
    if text is None or not str(text).strip():
        return []

    size = max(min(box.height / 4.0, MULTILINE_MAX_FONT), MIN_FONT_SIZE)
    line_height = size * LINE_HEIGHT_FACTOR
    max_lines = max(1, int(math.floor(box.height / line_height)))
    lines = wrap_lines(text, box.width * WIDTH_MARGIN, font, size, max_lines)

    c.setFillColorRGB(0, 0, 0)
    c.setFont(font, size)
    for i, line in enumerate(lines):
        y = box.y + box.height - size - i * line_height - TEXT_PAD
        c.drawString(box.x + TEXT_PAD, y, line)
    return lines


# ---------------------------------------------------------------------------
# Checkbox
# ---------------------------------------------------------------------------

def checkmark_points(box):
    """Three points of a two-segment checkmark centred in the box."""
    s = CHECK_FRACTION * min(box.width, box.height)
    cx = box.x + box.width / 2.0
    cy = box.y + box.height / 2.0
    return [
        Point(x=cx - s / 3.0, y=cy - s / 8.0),
        Point(x=cx - s / 8.0, y=cy - s / 3.0),
        Point(x=cx + s / 3.0, y=cy + s / 5.0),
    ]


def draw_checkbox(c, checked, box):
    if not checked:
        return
    s = CHECK_FRACTION * min(box.width, box.height)
    start, mid, end = checkmark_points(box)
    c.setStrokeColorRGB(0, 0, 0)
    c.setLineWidth(min(CHECK_LINE_WIDTH, s / 6.0))
    path = c.beginPath()
    path.moveTo(start.x, start.y)
    path.lineTo(mid.x, mid.y)
    path.lineTo(end.x, end.y)
    c.drawPath(path, stroke=1, fill=0)


# ---------------------------------------------------------------------------
# Signature
# ---------------------------------------------------------------------------

@dataclass
class DecodedImage:
    image: Image.Image
    format: str
    width: int
    height: int


@dataclass
class DecodeError:
    reason: str


def decode_signature_image(data) -> Union[DecodedImage, DecodeError]:
    """Decode a base64 (or data URL) PNG/JPEG signature without raising."""
    if not data or not str(data).strip():
        return DecodeError("empty signature")
    payload = _DATA_URL.sub("", str(data).strip())
    payload = re.sub(r"\s+", "", payload)
    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        return DecodeError(f"invalid base64: {e}")
    if not raw:
        return DecodeError("empty image data")

    try:
        image = Image.open(io.BytesIO(raw))
        image.load()
    except (UnidentifiedImageError, OSError, ValueError) as e:
        return DecodeError(f"undecodable image: {e}")

    if image.format not in SIGNATURE_FORMATS:
        return DecodeError(f"unsupported image format: {image.format}")
    return DecodedImage(image=image, format=image.format, width=image.width, height=image.height)


def fit_image(img_width, img_height, box, fit=SIGNATURE_FIT):
    """Aspect-preserving rectangle (x, y, w, h) centred in box."""
    scale = min(box.width / img_width, box.height / img_height) * fit
    w = img_width * scale
    h = img_height * scale
    return box.x + (box.width - w) / 2.0, box.y + (box.height - h) / 2.0, w, h


def draw_signature(c, signature, box, placeholder=SIGNATURE_PLACEHOLDER):
    """Draw the signature image, or placeholder text on failure.

    Returns None on success, else a SignatureEmbedFailure describing why the
    placeholder was used. Never raises for bad image data.
    """
    decoded = decode_signature_image(signature)
    if isinstance(decoded, DecodeError):
        failure = SignatureEmbedFailure(f"Signature not embedded: {decoded.reason}")
    else:
        x, y, w, h = fit_image(decoded.width, decoded.height, box)
        image = decoded.image
        if image.mode not in ("RGB", "RGBA", "L"):
            image = image.convert("RGBA")
        try:
            c.drawImage(ImageReader(image), x, y, width=w, height=h, mask="auto")
            return None
        except Exception as e:  # any embed error degrades to the placeholder
            failure = SignatureEmbedFailure(f"Signature embedding failed: {e}")

    logger.warning("%s; drawing placeholder", failure)
    draw_text_field(c, placeholder, box, align="center")
    return failure
