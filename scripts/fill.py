#!/usr/bin/env python3
"""Fill a Form 15G/15H template, choosing how to locate its fields.

Supports four strategies:
1. "acroform": sets values on interactive form fields (the template's own,
   or a calibrated shell), then flattens them into the page
2. "manual": draws at absolute positions from a versioned coordinate table
3. "anchors": aligns the canonical field table to the template's printed
   reference phrases, completed by label-anchor detection (cached)
4. "percent": draws at canonical page-fraction positions

With --strategy auto they are tried in order, falling through on failure:
acroform, manual (when the template hash is pinned), anchors, percent (when
the hash check is skipped), manual.

Usage:
    python fill.py <template.pdf> <data.json> <output.pdf> --form-type 15G [--strategy auto]
        [--shell shell.pdf --calibration record.json] [--debug-output debug.pdf]
        [--skip-hash-check] [--no-flatten] [--report report.json]

The data.json format is either a flat record keyed by field key:
{
    "name": "Asha Rao",
    "pan": "ABCDE1234F",
    "resident_yes": true,
    "income_amount": "Rs. 1,50,000.00",
    "signature": "<base64 PNG or JPEG>"
}
or a stored profile with a dividend row (the form type is then chosen from
the declarant's age unless --form-type is given):
{"profile": {...}, "dividend": {"total": 15000}}
"""

import argparse
import io
import json
import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, ValidationError
from pypdf import PdfReader, PdfWriter
from pypdf.generic import ArrayObject, NameObject
from reportlab.pdfgen import canvas

from affine import Rect, clamp_rect, percentage_to_points
from calibration import (
    CalibrationRecord,
    CoordinateTables,
    load_tables,
    manual_coordinate_map,
    percent_coordinate_map,
    validate_acroform_shell,
)
from coordinate_map import CoordinateMap, InputBox, hash_template
from debug_overlay import render_debug_pdf
from extract import extract_acroform_fields, open_reader, read_bytes, resolve
from form_data import (
    FORM_FIELD_KEYS,
    FieldKey,
    FieldKind,
    FormData,
    FormType,
    field_alignment,
    field_kind,
    form_type_for_profile,
    make_form_data,
    profile_to_form_data,
)
from form_errors import (
    FieldNotFoundError,
    FormFillError,
    NoUsableStrategyError,
    StrategyUnavailableError,
    TemplateMismatchError,
    TemplateProcessingTimeout,
)
from render_fields import draw_checkbox, draw_multiline_text, draw_signature, draw_text_field
from template_cache import InMemoryCoordinateCache, JsonFileCoordinateCache, TemplateManager, aligned_detector

logger = logging.getLogger(__name__)

STRATEGIES = ("acroform", "manual", "anchors", "percent")
DEFAULT_TIMEOUT = 20.0


class FillOptions(BaseModel):
    """How fill_form places values.

    template_manager caches anchor-detected maps across fills. Without one
    each fill detects afresh and nothing outlives the call.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    strategies: Optional[List[str]] = None
    shell_bytes: Optional[bytes] = None
    calibration_record: Optional[CalibrationRecord] = None
    accept_any_acroform: bool = False
    skip_hash_check: bool = False
    flatten: bool = True
    debug: bool = False
    timeout: Optional[float] = DEFAULT_TIMEOUT
    tables: Optional[CoordinateTables] = None
    template_manager: Optional[Any] = None


@dataclass
class FillResult:
    pdf_bytes: bytes
    strategy: str
    coordinate_map: Optional[CoordinateMap] = None
    warnings: List[FormFillError] = field(default_factory=list)
    attempts: List[Dict] = field(default_factory=list)
    debug_pdf: Optional[bytes] = None
    filled: List[str] = field(default_factory=list)
    acroform_names: Dict[str, str] = field(default_factory=dict)
    flattened: bool = False

    def report(self, data):
        """JSON-ready description of where every value was placed."""
        fields = []
        for key, value in data.filled_items():
            kind = field_kind(key)
            entry = {"key": key.value, "kind": kind.value,
                     "value": None if kind is FieldKind.SIGNATURE else value}
            box = self.coordinate_map.fields.get(key) if self.coordinate_map else None
            if box is not None:
                entry["rect"] = [round(box.x, 2), round(box.y, 2),
                                 round(box.x + box.width, 2), round(box.y + box.height, 2)]
            if key.value in self.acroform_names:
                entry["acroform_name"] = self.acroform_names[key.value]
            fields.append(entry)
        return {
            "strategy": self.strategy,
            "flattened": self.flattened,
            "fields": fields,
            "warnings": [w.to_dict() for w in self.warnings],
            "attempts": self.attempts,
        }


@dataclass
class _Placement:
    pdf_bytes: bytes
    coordinate_map: Optional[CoordinateMap]
    warnings: List[FormFillError]
    filled: List[str]
    acroform_names: Dict[str, str] = field(default_factory=dict)
    flattened: bool = False
    canonical_anchors: Optional[Dict] = None


@dataclass
class _FillContext:
    template_bytes: bytes
    form_type: FormType
    data: FormData
    options: FillOptions
    tables: CoordinateTables
    pdf_hash: str
    page_width: float
    page_height: float


# ---------------------------------------------------------------------------
# Overlay filling
# ---------------------------------------------------------------------------

def create_overlay(coord_map, data, page_width, page_height, keys=None):
    """Render data values into their boxes on a one-page overlay.

    Returns (overlay buffer, filled keys, warnings).
    """
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_width, page_height))
    filled = []
    warnings = []

    for key, value in data.filled_items():
        if keys is not None and key not in keys:
            continue
        box = coord_map.fields.get(key)
        if box is None:
            warnings.append(FieldNotFoundError(f"No position for field '{key.value}'", field=key.value))
            continue

        kind = field_kind(key)
        rect = box.rect()
        if kind is FieldKind.CHECKBOX:
            draw_checkbox(c, bool(value), rect)
        elif kind is FieldKind.SIGNATURE:
            failure = draw_signature(c, value, rect)
            if failure is not None:
                warnings.append(failure)
        elif kind is FieldKind.MULTILINE:
            draw_multiline_text(c, value, rect)
        else:
            draw_text_field(c, value, rect, align=field_alignment(key))
        filled.append(key.value)

    c.showPage()
    c.save()
    buf.seek(0)
    return buf, filled, warnings


def merge_overlay(template_bytes, overlay_buf):
    """Stamp the overlay onto the first page of the template."""
    reader = PdfReader(io.BytesIO(template_bytes))
    writer = PdfWriter()
    overlay_page = PdfReader(overlay_buf).pages[0]

    for pg_idx, page in enumerate(reader.pages):
        if pg_idx == 0:
            page.merge_page(overlay_page)
        writer.add_page(page)

    out = io.BytesIO()
    writer.write(out)
    return out.getvalue()


def fill_overlay(ctx, coord_map):
    buf, filled, warnings = create_overlay(coord_map, ctx.data, ctx.page_width, ctx.page_height)
    return _Placement(
        pdf_bytes=merge_overlay(ctx.template_bytes, buf),
        coordinate_map=coord_map,
        warnings=warnings,
        filled=filled,
    )


# ---------------------------------------------------------------------------
# AcroForm filling
# ---------------------------------------------------------------------------

def _strip_xfa(writer):
    # XFA overrides AcroForm rendering and pypdf only updates AcroForm values
    root = writer._root_object
    if "/AcroForm" in root:
        af = resolve(root["/AcroForm"])
        if "/XFA" in af:
            del af["/XFA"]


def flatten_form(writer):
    """Remove widget annotations and the AcroForm dictionary."""
    for page in writer.pages:
        if "/Annots" not in page:
            continue
        kept = ArrayObject(a for a in resolve(page["/Annots"]) if resolve(a).get("/Subtype") != "/Widget")
        if kept:
            page[NameObject("/Annots")] = kept
        else:
            del page["/Annots"]
    if "/AcroForm" in writer._root_object:
        del writer._root_object["/AcroForm"]


def _signature_rect(ctx):
    """Calibrated signature rectangle: the shell's record, else the manual table."""
    record = ctx.options.calibration_record
    if record is not None and FieldKey.SIGNATURE in record.fields:
        return percentage_to_points(record.fields[FieldKey.SIGNATURE], ctx.page_width, ctx.page_height)
    try:
        table = ctx.tables.manual_table(ctx.form_type, ctx.pdf_hash)
    except StrategyUnavailableError:
        return None
    rect = table.fields.get(FieldKey.SIGNATURE)
    if rect is None:
        return None
    sx = ctx.page_width / table.page_width
    sy = ctx.page_height / table.page_height
    return Rect(x=rect.x * sx, y=rect.y * sy, width=rect.width * sx, height=rect.height * sy)


def fill_acroform(ctx):
    """Fill form fields by name, drawing the signature at its calibrated rectangle."""
    shell = ctx.options.shell_bytes
    expected = {name for key in FORM_FIELD_KEYS[ctx.form_type]
                for name in ctx.tables.acroform_names(ctx.form_type, key)}
    if shell is not None:
        validate_acroform_shell(ctx.template_bytes, shell, ctx.options.calibration_record,
                                ctx.options.accept_any_acroform, expected)
        source = shell
    else:
        source = ctx.template_bytes

    reader = open_reader(source)
    fields = {f["name"]: f for f in extract_acroform_fields(reader)}
    if not fields:
        raise StrategyUnavailableError("Template has no AcroForm fields")

    values = {}
    names = {}
    boxes = {}
    warnings = []
    for key, value in ctx.data.filled_items():
        if field_kind(key) is FieldKind.SIGNATURE:
            continue
        name = next((n for n in ctx.tables.acroform_names(ctx.form_type, key) if n in fields), None)
        if name is None:
            warnings.append(FieldNotFoundError(f"No form field for '{key.value}'", field=key.value))
            continue
        info = fields[name]
        if info["type"] == "button":
            values[name] = info.get("on_state") or "/Yes"
        else:
            values[name] = str(value)
        names[key.value] = name
        x0, y0, x1, y1 = info["rect"]
        rect = clamp_rect(Rect(x=x0, y=y0, width=x1 - x0, height=y1 - y0), ctx.page_width, ctx.page_height)
        boxes[key] = InputBox.from_rect(rect, ctx.page_width, ctx.page_height)

    if not values:
        raise StrategyUnavailableError("No data field matches an AcroForm field name")

    writer = PdfWriter()
    writer.clone_reader_document_root(reader)
    _strip_xfa(writer)
    for page in writer.pages:
        writer.update_page_form_field_values(page, values, auto_regenerate=False)

    if ctx.data.signature:
        sig_rect = _signature_rect(ctx)
        if sig_rect is None:
            warnings.append(FieldNotFoundError("No calibrated signature position", field="signature"))
        else:
            boxes[FieldKey.SIGNATURE] = InputBox.from_rect(
                clamp_rect(sig_rect, ctx.page_width, ctx.page_height), ctx.page_width, ctx.page_height)

    coord_map = CoordinateMap(
        pdf_hash=ctx.pdf_hash, form_type=ctx.form_type,
        page_width=ctx.page_width, page_height=ctx.page_height,
        fields=boxes, source="acroform",
    )

    # Flattening draws every value into the page; otherwise only the signature
    drawn = set(boxes) if ctx.options.flatten else set(boxes) & {FieldKey.SIGNATURE}
    buf, filled, overlay_warnings = create_overlay(coord_map, ctx.data, ctx.page_width, ctx.page_height, drawn)
    warnings.extend(overlay_warnings)
    writer.pages[0].merge_page(PdfReader(buf).pages[0])
    if ctx.options.flatten:
        flatten_form(writer)

    out = io.BytesIO()
    writer.write(out)
    filled = sorted(set(filled) | set(names))
    logger.info("Filled %d AcroForm fields (flatten=%s)", len(values), ctx.options.flatten)
    return _Placement(
        pdf_bytes=out.getvalue(),
        coordinate_map=coord_map,
        warnings=warnings,
        filled=filled,
        acroform_names=names,
        flattened=ctx.options.flatten,
    )


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def fill_manual(ctx):
    table = ctx.tables.manual_table(ctx.form_type, ctx.pdf_hash)
    logger.debug("Using manual table %s for Form %s", table.version, ctx.form_type.value)
    coord_map = manual_coordinate_map(table, ctx.page_width, ctx.page_height, ctx.pdf_hash)
    return fill_overlay(ctx, coord_map)


def fill_anchors(ctx):
    manager = ctx.options.template_manager or TemplateManager(
        InMemoryCoordinateCache(), ctx.tables.canonical_template, aligned_detector)
    coord_map, drifts = manager.get_coordinate_map(ctx.template_bytes, ctx.form_type, timeout=ctx.options.timeout)
    placement = fill_overlay(ctx, coord_map)
    placement.warnings = list(drifts) + placement.warnings
    placement.canonical_anchors = ctx.tables.canonical_template(ctx.form_type).anchors
    return placement


def fill_percent(ctx):
    canonical = ctx.tables.canonical_template(ctx.form_type)
    if not ctx.options.skip_hash_check and canonical.template_sha256 != ctx.pdf_hash:
        raise TemplateMismatchError(
            f"Template does not match the canonical Form {ctx.form_type.value} template",
            expected=canonical.template_sha256, actual=ctx.pdf_hash,
        )
    coord_map = percent_coordinate_map(canonical, ctx.page_width, ctx.page_height, ctx.pdf_hash)
    placement = fill_overlay(ctx, coord_map)
    placement.canonical_anchors = canonical.anchors
    return placement


STRATEGY_FUNCTIONS = {
    "acroform": fill_acroform,
    "manual": fill_manual,
    "anchors": fill_anchors,
    "percent": fill_percent,
}


def strategy_plan(options, tables, form_type, pdf_hash):
    """Ordered strategies to try for this template."""
    if options.strategies:
        unknown = [s for s in options.strategies if s not in STRATEGY_FUNCTIONS]
        if unknown:
            raise ValueError(f"Unknown strategy: {', '.join(unknown)}")
        return list(options.strategies)

    plan = ["acroform"]
    if tables.pinned_manual_table(form_type, pdf_hash) is not None:
        plan.append("manual")
    plan.append("anchors")
    canonical_pinned = any(t.form_type is form_type and t.template_sha256 == pdf_hash for t in tables.canonical)
    if options.skip_hash_check or canonical_pinned:
        plan.append("percent")
    if "manual" not in plan:
        plan.append("manual")
    return plan


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def fill_form(template_bytes, form_type, data, options=None) -> FillResult:
    """Fill the template with data using the first strategy that succeeds."""
    options = options or FillOptions()
    form_type = FormType.parse(form_type)
    if isinstance(data, FormData):
        data = make_form_data(form_type, data.model_dump())
    else:
        data = make_form_data(form_type, data)

    reader = open_reader(template_bytes)
    box = reader.pages[0].mediabox
    tables = options.tables or load_tables()
    ctx = _FillContext(
        template_bytes=template_bytes,
        form_type=form_type,
        data=data,
        options=options,
        tables=tables,
        pdf_hash=hash_template(template_bytes),
        page_width=float(box.width),
        page_height=float(box.height),
    )

    plan = strategy_plan(options, tables, form_type, ctx.pdf_hash)
    attempts = []
    last_error = None
    for name in plan:
        try:
            placement = STRATEGY_FUNCTIONS[name](ctx)
        except FormFillError as e:
            logger.warning("Strategy %s failed: %s", name, e)
            attempts.append({"strategy": name, **e.to_dict()})
            last_error = e
            continue
        except ValidationError as e:
            logger.warning("Strategy %s produced invalid coordinates: %s", name, e)
            attempts.append({"strategy": name, "code": "INVALID_COORDINATES", "message": str(e)})
            last_error = e
            continue

        attempts.append({"strategy": name, "code": "OK"})
        debug_pdf = None
        if options.debug and placement.coordinate_map is not None:
            try:
                debug_pdf = render_debug_pdf(template_bytes, placement.coordinate_map,
                                             placement.canonical_anchors, timeout=options.timeout)
            except TemplateProcessingTimeout as e:
                logger.warning("Skipped debug render: %s", e)
                placement.warnings.append(e)
        logger.info("Filled Form %s with strategy %s (%d fields, %d warnings)",
                    form_type.value, name, len(placement.filled), len(placement.warnings))
        return FillResult(
            pdf_bytes=placement.pdf_bytes,
            strategy=name,
            coordinate_map=placement.coordinate_map,
            warnings=placement.warnings,
            attempts=attempts,
            debug_pdf=debug_pdf,
            filled=placement.filled,
            acroform_names=placement.acroform_names,
            flattened=placement.flattened,
        )

    if len(plan) == 1 and isinstance(last_error, FormFillError):
        raise last_error
    raise NoUsableStrategyError(
        f"No strategy could fill Form {form_type.value} (tried {', '.join(plan)})",
        attempts=attempts,
    ) from last_error


def load_form_data(spec, form_type=None):
    """Form type and record from a data.json document."""
    if "profile" in spec:
        form_type = FormType.parse(form_type) if form_type else form_type_for_profile(spec["profile"])
        return form_type, profile_to_form_data(form_type, spec["profile"], spec.get("dividend", {}))
    if not form_type:
        raise ValueError("--form-type is required when data.json is a field record")
    form_type = FormType.parse(form_type)
    return form_type, make_form_data(form_type, spec)


def main():
    parser = argparse.ArgumentParser(description="Fill a Form 15G/15H template")
    parser.add_argument("input_pdf", help="Path to template PDF")
    parser.add_argument("data", help="Path to JSON field record or profile")
    parser.add_argument("output_pdf", help="Path for output PDF")
    parser.add_argument("--form-type", help="15G or 15H (default: from the profile's age)")
    parser.add_argument("--strategy", default="auto", choices=("auto",) + STRATEGIES,
                        help="Fill strategy")
    parser.add_argument("--shell", help="Calibrated AcroForm shell PDF")
    parser.add_argument("--calibration", help="Calibration record JSON for --shell")
    parser.add_argument("--accept-any-acroform", action="store_true",
                        help="Use a shell without a matching calibration record")
    parser.add_argument("--skip-hash-check", action="store_true",
                        help="Allow percentage placement on templates that are not the canonical file")
    parser.add_argument("--no-flatten", action="store_true", help="Keep AcroForm fields editable")
    parser.add_argument("--debug-output", help="Write a debug PDF with anchors and field boxes")
    parser.add_argument("--report", help="Write a JSON placement report (input for verify.py)")
    parser.add_argument("--tables", help="Coordinate tables JSON (default: bundled)")
    parser.add_argument("--cache-dir", help="Persist coordinate maps in this directory")
    parser.add_argument("--timeout", type=float, default=DEFAULT_TIMEOUT, help="Text extraction time limit")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="[%(levelname)s] %(name)s: %(message)s", stream=sys.stderr)

    for path in (args.input_pdf, args.data, args.shell, args.calibration):
        if path and not Path(path).exists():
            print(json.dumps({"error": f"File not found: {path}"}), file=sys.stderr)
            sys.exit(1)

    try:
        with open(args.data, "r") as f:
            spec = json.load(f)
        form_type, data = load_form_data(spec, args.form_type)

        tables = load_tables(args.tables)
        manager = None
        if args.cache_dir:
            manager = TemplateManager(JsonFileCoordinateCache(args.cache_dir),
                                      tables.canonical_template, aligned_detector)
        record = None
        if args.calibration:
            record = CalibrationRecord.model_validate_json(Path(args.calibration).read_text())

        options = FillOptions(
            strategies=None if args.strategy == "auto" else [args.strategy],
            shell_bytes=read_bytes(args.shell) if args.shell else None,
            calibration_record=record,
            accept_any_acroform=args.accept_any_acroform,
            skip_hash_check=args.skip_hash_check,
            flatten=not args.no_flatten,
            debug=bool(args.debug_output),
            timeout=args.timeout,
            tables=tables,
            template_manager=manager,
        )
        result = fill_form(read_bytes(args.input_pdf), form_type, data, options)
    except FormFillError as e:
        print(json.dumps({"error": str(e), **e.to_dict()}), file=sys.stderr)
        sys.exit(1)
    except (ValueError, json.JSONDecodeError) as e:
        print(json.dumps({"error": str(e), "code": "INVALID_ARGUMENT"}), file=sys.stderr)
        sys.exit(1)

    Path(args.output_pdf).write_bytes(result.pdf_bytes)
    if args.debug_output and result.debug_pdf is not None:
        Path(args.debug_output).write_bytes(result.debug_pdf)
    if args.report:
        report = result.report(data)
        report["form_type"] = form_type.value
        Path(args.report).write_text(json.dumps(report, indent=2))

    print(json.dumps({
        "status": "success",
        "output": str(args.output_pdf),
        "form_type": form_type.value,
        "strategy": result.strategy,
        "fields_filled": len(result.filled),
        "warnings": [w.to_dict() for w in result.warnings],
        "attempts": result.attempts,
    }))


if __name__ == "__main__":
    main()
