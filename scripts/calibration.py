#!/usr/bin/env python3
"""Versioned coordinate tables and template calibration.

The tables file holds, per form type:
  - manual tables: absolute boxes measured on a specific template version
  - canonical templates: reference anchor positions plus percent boxes, used
    by the affine alignment and the direct percentage placement
  - AcroForm aliases: field names a fillable template may use for each key

Calibration measures the canonical anchors on a reference template, and can
build a fillable AcroForm "shell" of a template from percent boxes.

Usage:
    python calibration.py show [--tables path.json]
    python calibration.py calibrate <reference.pdf> --form-type 15G [--version v1]
    python calibration.py build-shell <template.pdf> <shell.pdf> --form-type 15G [--record record.json]
"""

import argparse
import datetime as dt
import functools
import json
import logging
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional

import pymupdf as fitz
from pydantic import BaseModel, Field, model_validator

from affine import PercentRect, Point, Rect, percentage_to_points
from coordinate_map import CoordinateMap, InputBox, hash_template
from extract import MUPDF_LOCK, extract_acroform_fields, extract_text_runs, open_document, open_reader, read_bytes
from form_data import FieldKey, FieldKind, FormType, check_field_keys, field_kind
from form_errors import (
    FormFillError,
    InsufficientAnchorsError,
    StrategyUnavailableError,
    TemplateMismatchError,
)
from label_anchors import group_into_phrases, match_reference_anchors

logger = logging.getLogger(__name__)

TABLES_ENV = "FORM15_TABLES"
DEFAULT_TABLES_PATH = Path(__file__).parent / "tables" / "form15_tables.json"
SHELL_FONT_SIZE = 10


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ManualTable(BaseModel):
    form_type: FormType
    version: str
    default: bool = False
    template_sha256: Optional[str] = None
    page_width: float
    page_height: float
    fields: Dict[FieldKey, Rect]

    @model_validator(mode="after")
    def _known_keys(self):
        check_field_keys(self.form_type, self.fields.keys())
        return self


class CanonicalTemplate(BaseModel):
    form_type: FormType
    version: str
    template_sha256: Optional[str] = None
    page_width: float
    page_height: float
    anchors: Dict[str, Point]
    fields: Dict[FieldKey, PercentRect]

    @model_validator(mode="after")
    def _known_keys(self):
        check_field_keys(self.form_type, self.fields.keys())
        return self

    def field_rect(self, key):
        """Canonical-page rectangle in points for a field."""
        return percentage_to_points(self.fields[key], self.page_width, self.page_height)


class CoordinateTables(BaseModel):
    manual: List[ManualTable] = []
    canonical: List[CanonicalTemplate] = []
    acroform: Dict[FormType, Dict[FieldKey, List[str]]] = {}

    def manual_table(self, form_type, pdf_hash=None):
        """Table pinned to pdf_hash if any, else the form type's default version."""
        form_type = FormType.parse(form_type)
        candidates = [t for t in self.manual if t.form_type is form_type]
        if not candidates:
            raise StrategyUnavailableError(f"No manual coordinate table for Form {form_type.value}")
        pinned = self.pinned_manual_table(form_type, pdf_hash)
        if pinned is not None:
            return pinned
        defaults = [t for t in candidates if t.default]
        return (defaults or candidates)[-1]

    def pinned_manual_table(self, form_type, pdf_hash):
        if not pdf_hash:
            return None
        for table in self.manual:
            if table.form_type is FormType.parse(form_type) and table.template_sha256 == pdf_hash:
                return table
        return None

    def canonical_template(self, form_type):
        form_type = FormType.parse(form_type)
        candidates = [t for t in self.canonical if t.form_type is form_type]
        if not candidates:
            raise StrategyUnavailableError(f"No canonical template for Form {form_type.value}")
        return candidates[-1]

    def acroform_names(self, form_type, key):
        """Field names a fillable template may use for a key, preferred first."""
        aliases = self.acroform.get(FormType.parse(form_type), {})
        return aliases.get(FieldKey(key), [FieldKey(key).value])


class CalibrationRecord(BaseModel):
    """Calibration that produced an AcroForm shell, pinned to its template."""

    form_type: FormType
    template_hash: str
    page_width: float
    page_height: float
    fields: Dict[FieldKey, PercentRect]
    calibrated_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

@functools.lru_cache(maxsize=8)
def _load_tables_file(path):
    logger.debug("Loading coordinate tables from %s", path)
    return CoordinateTables.model_validate_json(Path(path).read_text())


def load_tables(path=None) -> CoordinateTables:
    """Coordinate tables from path, $FORM15_TABLES, or the bundled file."""
    path = path or os.environ.get(TABLES_ENV) or DEFAULT_TABLES_PATH
    return _load_tables_file(str(Path(path).resolve()))


# ---------------------------------------------------------------------------
# Coordinate maps from tables
# ---------------------------------------------------------------------------

def manual_coordinate_map(table, page_width, page_height, pdf_hash):
    """Manual table boxes, rescaled when the page size differs from the table's."""
    sx = page_width / table.page_width
    sy = page_height / table.page_height
    fields = {}
    for key, rect in table.fields.items():
        scaled = Rect(x=rect.x * sx, y=rect.y * sy, width=rect.width * sx, height=rect.height * sy)
        fields[key] = InputBox.from_rect(scaled, page_width, page_height)
    return CoordinateMap(
        pdf_hash=pdf_hash, form_type=table.form_type,
        page_width=page_width, page_height=page_height,
        fields=fields, source="manual",
    )


def percent_coordinate_map(canonical, page_width, page_height, pdf_hash):
    """Canonical percent boxes placed directly on the page."""
    fields = {
        key: InputBox.from_rect(percentage_to_points(pct, page_width, page_height), page_width, page_height)
        for key, pct in canonical.fields.items()
    }
    return CoordinateMap(
        pdf_hash=pdf_hash, form_type=canonical.form_type,
        page_width=page_width, page_height=page_height,
        fields=fields, source="percent",
    )


# ---------------------------------------------------------------------------
# Calibration
# ---------------------------------------------------------------------------

def calibrate_reference(pdf_bytes, form_type, fields, reference_texts, version="calibrated"):
    """Measure reference anchor centres on a reference template.

    fields are the percent boxes to store with the measured anchors.
    """
    form_type = FormType.parse(form_type)
    extraction = extract_text_runs(pdf_bytes)
    phrases = group_into_phrases(extraction.runs)
    matches = match_reference_anchors(phrases, reference_texts)
    if len(matches) < 3:
        raise InsufficientAnchorsError(
            f"Only {len(matches)} reference anchors found on the reference template",
            found=sorted(matches))

    anchors = {}
    for text, anchor in matches.items():
        anchors[text] = anchor.center()
    logger.info("Calibrated %d reference anchors for Form %s", len(anchors), form_type.value)

    return CanonicalTemplate(
        form_type=form_type,
        version=version,
        template_sha256=hash_template(pdf_bytes),
        page_width=extraction.page_width,
        page_height=extraction.page_height,
        anchors=anchors,
        fields=fields,
    )


def build_acroform_shell(template_bytes, form_type, fields):
    """Add one widget per field to the template.

    Checkbox keys get checkbox widgets, signature is left for image drawing,
    everything else becomes a text widget. Returns (shell bytes, record).
    """
    form_type = FormType.parse(form_type)
    check_field_keys(form_type, fields.keys())

    with MUPDF_LOCK:
        doc = open_document(template_bytes)
        page = doc[0]
        pw, ph = page.rect.width, page.rect.height

        for key, pct in fields.items():
            kind = field_kind(key)
            if kind is FieldKind.SIGNATURE:
                continue
            rect = percentage_to_points(pct, pw, ph)
            widget = fitz.Widget()
            widget.field_name = FieldKey(key).value
            widget.rect = fitz.Rect(rect.x, ph - rect.top, rect.right, ph - rect.y)
            if kind is FieldKind.CHECKBOX:
                widget.field_type = fitz.PDF_WIDGET_TYPE_CHECKBOX
                widget.field_value = False
            else:
                widget.field_type = fitz.PDF_WIDGET_TYPE_TEXT
                widget.text_fontsize = SHELL_FONT_SIZE
                if kind is FieldKind.MULTILINE:
                    widget.field_flags |= fitz.PDF_TX_FIELD_IS_MULTILINE
            page.add_widget(widget)

        shell = doc.tobytes()
        doc.close()

    record = CalibrationRecord(
        form_type=form_type,
        template_hash=hash_template(template_bytes),
        page_width=pw,
        page_height=ph,
        fields=fields,
    )
    logger.info("Built AcroForm shell with %d fields for Form %s", len(fields), form_type.value)
    return shell, record


def validate_acroform_shell(template_bytes, shell_bytes, record=None, accept_any=False,
                            expected_names=()):
    """Check a shell may be used for this template; returns its field names.

    Valid when the calibration record was made from this exact template, or,
    with accept_any, when the shell carries at least one expected field name.
    """
    names = {f["name"] for f in extract_acroform_fields(open_reader(shell_bytes))}
    if not names:
        raise StrategyUnavailableError("AcroForm shell has no form fields")

    if record is not None and record.template_hash == hash_template(template_bytes):
        return names
    if accept_any and names & set(expected_names):
        return names
    if record is not None:
        raise TemplateMismatchError("Template has changed since calibration",
                                    expected=record.template_hash)
    raise StrategyUnavailableError("AcroForm shell has no calibration record and no expected fields")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main():
    parser = argparse.ArgumentParser(description="Coordinate tables and template calibration")
    parser.add_argument("--tables", help="Coordinate tables JSON (default: bundled)")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("show", help="Print the coordinate tables")

    p_cal = sub.add_parser("calibrate", help="Measure reference anchors on a reference template")
    p_cal.add_argument("pdf", help="Reference template PDF")
    p_cal.add_argument("--form-type", default="15G")
    p_cal.add_argument("--version", default="calibrated")

    p_shell = sub.add_parser("build-shell", help="Build a fillable AcroForm shell")
    p_shell.add_argument("pdf", help="Template PDF")
    p_shell.add_argument("output", help="Shell PDF to write")
    p_shell.add_argument("--form-type", default="15G")
    p_shell.add_argument("--record", help="Write the calibration record JSON here")

    args = parser.parse_args()
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="[%(levelname)s] %(name)s: %(message)s", stream=sys.stderr)

    try:
        tables = load_tables(args.tables)
        if args.command == "show":
            print(tables.model_dump_json(indent=2))
            return

        if not Path(args.pdf).exists():
            print(json.dumps({"error": f"PDF not found: {args.pdf}"}), file=sys.stderr)
            sys.exit(1)
        pdf_bytes = read_bytes(args.pdf)
        canonical = tables.canonical_template(args.form_type)

        if args.command == "calibrate":
            result = calibrate_reference(pdf_bytes, args.form_type, canonical.fields,
                                         list(canonical.anchors), args.version)
            print(result.model_dump_json(indent=2))
        else:
            shell, record = build_acroform_shell(pdf_bytes, args.form_type, canonical.fields)
            Path(args.output).write_bytes(shell)
            if args.record:
                Path(args.record).write_text(record.model_dump_json(indent=2))
            print(json.dumps({
                "status": "success",
                "output": str(args.output),
                "template_hash": record.template_hash,
                "fields": len(record.fields),
            }))
    except (FormFillError, ValueError) as e:
        print(json.dumps({"error": str(e), "code": getattr(e, "code", "INVALID_ARGUMENT")}), file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
