#!/usr/bin/env python3
"""Detect form-field input boxes on a template from its printed labels.

Pipeline:
1. Text extraction: positioned text runs (PyMuPDF words)
2. Phrase grouping: runs on the same line merged into phrases
3. Label anchors: fuzzy match of each field's label synonyms
4. Input boxes: per-kind placement rules relative to each anchor

Also re-validates a cached coordinate map against the current file: any
anchor that disappeared or moved by more than DRIFT_TOLERANCE points is
reported as drift.

Usage:
    python detect_fields.py <template.pdf> --form-type 15G [--pretty] [--annotate out.png]
    python detect_fields.py <template.pdf> --grid-overlay out.png   # coordinate grid for visual positioning

Output: JSON coordinate map with, per field key:
  - x, y, width, height: box in PDF points (bottom-left origin)
  - x_pct, y_pct, w_pct, h_pct: the same box as fractions of the page
"""

import argparse
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pymupdf as fitz

from affine import Rect, clamp
from coordinate_map import CoordinateMap, InputBox, hash_template
from extract import MUPDF_LOCK, extract_text_runs, open_document, read_bytes
from form_data import FieldKind, FormType, field_kind
from form_errors import AnchorDriftError, FormFillError
from label_anchors import (
    LABEL_DICTIONARIES,
    detect_label_anchors,
    group_into_phrases,
    match_reference_anchors,
)

logger = logging.getLogger(__name__)

PAGE_MARGIN = 10.0
LABEL_GAP = 10.0
DRIFT_TOLERANCE = 5.0

SIGNATURE_BOX = (200.0, 50.0)
CHECKBOX_SIZE = 12.0
NO_VARIANT_OFFSET = 60.0
MULTILINE_BOX = (400.0, 60.0)
TEXT_BOX = (150.0, 20.0)
MIN_TEXT_WIDTH = 40.0
MIN_RIGHT_ROOM = 60.0


# ---------------------------------------------------------------------------
# Input box discovery
# ---------------------------------------------------------------------------

def _box_for_anchor(key, anchor, page_width, page_height):
    kind = field_kind(key)
    m = PAGE_MARGIN

    if kind is FieldKind.SIGNATURE:
        # Signed above the caption, starting at its left edge
        w, h = SIGNATURE_BOX
        x = clamp(anchor.x, m, page_width - w - m)
        y = clamp(anchor.y + anchor.height + LABEL_GAP, m, page_height - h - m)
        return Rect(x=x, y=y, width=w, height=h)

    if kind is FieldKind.CHECKBOX:
        s = CHECKBOX_SIZE
        x = anchor.x + anchor.width + LABEL_GAP
        if key.value.endswith("_no"):
            x += NO_VARIANT_OFFSET
        return Rect(
            x=clamp(x, m, page_width - s - m),
            y=clamp(anchor.y, m, page_height - s - m),
            width=s, height=s,
        )

    if kind is FieldKind.MULTILINE:
        w, h = MULTILINE_BOX
        x = clamp(anchor.x, m, page_width - w - m)
        y = clamp(anchor.y - LABEL_GAP - h, m, page_height - h - m)
        return Rect(x=x, y=y, width=w, height=h)

    w, h = TEXT_BOX
    x = anchor.x + anchor.width + LABEL_GAP
    room = page_width - x - m
    width = clamp(w, MIN_TEXT_WIDTH, room)
    if room < MIN_RIGHT_ROOM:
        # Not enough room right of the label: place the box on its left
        width = w
        x = clamp(anchor.x - width - LABEL_GAP, m, page_width - width - m)
    return Rect(
        x=clamp(x, m, page_width - width - m),
        y=clamp(anchor.y, m, page_height - h - m),
        width=width, height=h,
    )


def discover_input_boxes(anchors, page_width, page_height):
    """One InputBox per anchored field, clamped inside the page margins."""
    boxes = {}
    for key, anchor in anchors.items():
        rect = _box_for_anchor(key, anchor, page_width, page_height)
        boxes[key] = InputBox.from_rect(rect, page_width, page_height)
    logger.debug("Discovered %d input boxes from %d anchors", len(boxes), len(anchors))
    return boxes


def detect_coordinates(pdf_bytes, form_type, extraction=None, timeout=None):
    """Full label-driven detection: extraction, phrases, anchors, boxes."""
    form_type = FormType.parse(form_type)
    if extraction is None:
        extraction = extract_text_runs(pdf_bytes, timeout=timeout)

    phrases = group_into_phrases(extraction.runs)
    anchors = detect_label_anchors(phrases, LABEL_DICTIONARIES[form_type])
    fields = discover_input_boxes(anchors, extraction.page_width, extraction.page_height)

    return CoordinateMap(
        pdf_hash=hash_template(pdf_bytes),
        form_type=form_type,
        page_width=extraction.page_width,
        page_height=extraction.page_height,
        fields=fields,
        anchors=anchors,
        source="detected",
    )


# ---------------------------------------------------------------------------
# Anchor validation
# ---------------------------------------------------------------------------

@dataclass
class AnchorValidation:
    valid: bool
    drifts: List[AnchorDriftError] = field(default_factory=list)


def compare_anchors(cached, current, tolerance=DRIFT_TOLERANCE):
    """Drift errors for cached anchors that vanished or moved beyond tolerance."""
    drifts = []
    for key, old in cached.items():
        label = getattr(key, "value", key)
        new = current.get(key)
        if new is None:
            drifts.append(AnchorDriftError(f"Anchor '{label}' not found in current template", anchor=label))
            continue
        dx = abs(new.x - old.x)
        dy = abs(new.y - old.y)
        if dx > tolerance or dy > tolerance:
            drifts.append(AnchorDriftError(
                f"Anchor '{label}' moved by ({dx:.1f}, {dy:.1f})pt",
                anchor=label, dx=round(dx, 2), dy=round(dy, 2),
            ))
    return drifts


def validate_anchors(pdf_bytes, cached_map, extraction=None, timeout=None):
    """Re-detect anchors on the current file and compare with a cached map."""
    try:
        if extraction is None:
            extraction = extract_text_runs(pdf_bytes, timeout=timeout)
    except FormFillError as e:
        logger.warning("Anchor validation could not read template: %s", e)
        return AnchorValidation(valid=False, drifts=[
            AnchorDriftError(f"Template could not be re-read: {e}", reason=e.code)])

    phrases = group_into_phrases(extraction.runs)
    drifts = []
    if cached_map.anchors:
        current = detect_label_anchors(phrases, LABEL_DICTIONARIES[cached_map.form_type])
        drifts.extend(compare_anchors(cached_map.anchors, current))
    if cached_map.reference_anchors:
        current_refs = match_reference_anchors(phrases, list(cached_map.reference_anchors))
        drifts.extend(compare_anchors(cached_map.reference_anchors, current_refs))

    for drift in drifts:
        logger.warning("Anchor drift: %s", drift)
    return AnchorValidation(valid=not drifts, drifts=drifts)


# ---------------------------------------------------------------------------
# Visualization
# ---------------------------------------------------------------------------

def annotate_page(pdf_bytes, coord_map, output_png, dpi=200):
    """Render the page with anchors (blue) and field boxes (red)."""
    with MUPDF_LOCK:
        doc = open_document(pdf_bytes)
        page = doc[0]
        ph = page.rect.height

        for anchor in coord_map.anchors.values():
            page.draw_rect(fitz.Rect(anchor.x, ph - anchor.y - anchor.height,
                                     anchor.x + anchor.width, ph - anchor.y),
                           color=(0, 0, 1), width=0.5)
        for key, box in coord_map.fields.items():
            mu_rect = fitz.Rect(box.x, ph - box.y - box.height, box.x + box.width, ph - box.y)
            page.draw_rect(mu_rect, color=(1, 0, 0), width=0.5)
            page.insert_text(fitz.Point(mu_rect.x0 + 1, mu_rect.y0 - 1), key.value,
                             fontsize=4, color=(1, 0, 0))

        pix = page.get_pixmap(dpi=dpi)
        pix.save(output_png)
        doc.close()


def grid_overlay(pdf_bytes, output_png, dpi=150, step=50):
    """Render the page with a coordinate grid for visual positioning."""
    with MUPDF_LOCK:
        doc = open_document(pdf_bytes)
        page = doc[0]
        pw = page.rect.width
        ph = page.rect.height

        for x in range(0, int(pw) + 1, step):
            color = (0.7, 0.7, 1.0) if x % 100 else (0.3, 0.3, 1.0)
            width = 0.3 if x % 100 else 0.5
            page.draw_line(fitz.Point(x, 0), fitz.Point(x, ph), color=color, width=width)
            if x % 100 == 0:
                page.insert_text(fitz.Point(x + 1, 8), str(x), fontsize=6, color=(0, 0, 1))

        for y_mu in range(0, int(ph) + 1, step):
            pdf_y = ph - y_mu
            color = (1.0, 0.7, 0.7) if y_mu % 100 else (1.0, 0.3, 0.3)
            width = 0.3 if y_mu % 100 else 0.5
            page.draw_line(fitz.Point(0, y_mu), fitz.Point(pw, y_mu), color=color, width=width)
            if y_mu % 100 == 0:
                page.insert_text(fitz.Point(1, y_mu + 8), f"y={int(pdf_y)}", fontsize=6, color=(1, 0, 0))

        pix = page.get_pixmap(dpi=dpi)
        pix.save(output_png)
        doc.close()

    return {
        "page_size": {"width": round(pw, 1), "height": round(ph, 1)},
        "grid_step": step,
        "dpi": dpi,
        "output": str(output_png),
        "note": "X labels in blue (PDF x-coordinate). Y labels in red (PDF y-coordinate, bottom-up).",
    }


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Detect form-field input boxes from printed labels")
    parser.add_argument("input_pdf", help="Path to template PDF")
    parser.add_argument("--form-type", default="15G", help="15G or 15H (default: 15G)")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    parser.add_argument("--annotate", help="Save annotated PNG showing anchors and boxes")
    parser.add_argument("--grid-overlay", help="Save coordinate grid overlay PNG")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="[%(levelname)s] %(name)s: %(message)s", stream=sys.stderr)

    if not Path(args.input_pdf).exists():
        print(json.dumps({"error": f"PDF not found: {args.input_pdf}"}), file=sys.stderr)
        sys.exit(1)

    pdf_bytes = read_bytes(args.input_pdf)
    try:
        if args.grid_overlay:
            print(json.dumps(grid_overlay(pdf_bytes, args.grid_overlay)))
            return
        coord_map = detect_coordinates(pdf_bytes, args.form_type)
        if args.annotate:
            annotate_page(pdf_bytes, coord_map, args.annotate)
            print(f"Annotated image saved to {args.annotate}", file=sys.stderr)
    except (FormFillError, ValueError) as e:
        print(json.dumps({"error": str(e), "code": getattr(e, "code", "INVALID_ARGUMENT")}), file=sys.stderr)
        sys.exit(1)

    indent = 2 if args.pretty else None
    print(coord_map.model_dump_json(indent=indent))


if __name__ == "__main__":
    main()
