"""Debug rendering of a resolved template.

Draws onto a copy of the template:
  - a light coordinate grid
  - detected reference anchors (blue) and their canonical positions (green),
    joined by magenta lines
  - label anchors (blue outline) and field boxes (red) with their keys
  - an info box with the alignment residual, scale, rotation and matrix
"""

import logging

import pymupdf as fitz

from extract import mupdf_lock, open_document

logger = logging.getLogger(__name__)

GRID_STEP = 25
GRID_COLOR = (0.9, 0.9, 0.9)
DETECTED_COLOR = (0, 0, 1)
CANONICAL_COLOR = (0, 0.6, 0)
LINK_COLOR = (1, 0, 1)
FIELD_COLOR = (1, 0, 0)
MARKER_RADIUS = 3


def _mu_point(point, page_height):
    return fitz.Point(point.x, page_height - point.y)


def _mu_rect(x, y, width, height, page_height):
    return fitz.Rect(x, page_height - y - height, x + width, page_height - y)


def _draw_grid(page, step=GRID_STEP):
    pw, ph = page.rect.width, page.rect.height
    for x in range(0, int(pw) + 1, step):
        page.draw_line(fitz.Point(x, 0), fitz.Point(x, ph), color=GRID_COLOR, width=0.3)
    for y in range(0, int(ph) + 1, step):
        page.draw_line(fitz.Point(0, y), fitz.Point(pw, y), color=GRID_COLOR, width=0.3)


def _info_lines(coord_map):
    lines = [f"Form {coord_map.form_type.value}  source={coord_map.source}  fields={len(coord_map.fields)}"]
    if coord_map.rms_error is not None:
        lines.append(f"RMS error: {coord_map.rms_error:.3f}pt")
    m = coord_map.matrix
    if m is not None:
        lines.append(f"Scale: {m.scale():.4f}  Rotation: {m.rotation_degrees():.2f}deg")
        lines.append(f"[{m.a:.4f} {m.b:.4f} {m.c:.2f}]")
        lines.append(f"[{m.d:.4f} {m.e:.4f} {m.f:.2f}]")
    return lines


def render_debug_pdf(template_bytes, coord_map, canonical_anchors=None, timeout=None):
    """PDF bytes of the template with the resolution drawn on top.

    canonical_anchors maps reference text to its canonical position; each is
    linked to the matching reference anchor measured on the template. Raises
    TemplateProcessingTimeout when PyMuPDF stays busy for longer than timeout.
    """
    canonical_anchors = canonical_anchors or {}
    with mupdf_lock(timeout):
        doc = open_document(template_bytes)
        page = doc[0]
        ph = page.rect.height

        _draw_grid(page)

        for name, anchor in coord_map.reference_anchors.items():
            canonical = canonical_anchors.get(name)
            d = _mu_point(anchor.center(), ph)
            page.draw_circle(d, MARKER_RADIUS, color=DETECTED_COLOR, fill=DETECTED_COLOR)
            if canonical is not None:
                c = _mu_point(canonical, ph)
                page.draw_circle(c, MARKER_RADIUS, color=CANONICAL_COLOR, fill=CANONICAL_COLOR)
                page.draw_line(c, d, color=LINK_COLOR, width=0.8)

        for anchor in coord_map.anchors.values():
            page.draw_rect(_mu_rect(anchor.x, anchor.y, anchor.width, anchor.height, ph),
                           color=DETECTED_COLOR, width=0.5)

        for key, box in coord_map.fields.items():
            rect = _mu_rect(box.x, box.y, box.width, box.height, ph)
            page.draw_rect(rect, color=FIELD_COLOR, width=0.6)
            page.insert_text(fitz.Point(rect.x0 + 1, rect.y0 - 1), key.value,
                             fontsize=4, color=FIELD_COLOR)

        lines = _info_lines(coord_map)
        info = fitz.Rect(10, 10, 260, 14 + 9 * len(lines))
        page.draw_rect(info, color=(0, 0, 0), fill=(1, 1, 1), width=0.5)
        for i, line in enumerate(lines):
            page.insert_text(fitz.Point(14, 19 + 9 * i), line, fontsize=6, color=(0, 0, 0))

        data = doc.tobytes()
        doc.close()

    logger.debug("Rendered debug overlay with %d fields", len(coord_map.fields))
    return data
