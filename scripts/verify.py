#!/usr/bin/env python3
"""Verify that a filled PDF has every value inside its field box.

Checks both:
1. Drawn text: locates each value among the page's word boxes and checks it
   lies within the reported field rectangle
2. AcroForm fields: checks that field values are set (unflattened fills)

Usage:
    python verify.py <filled.pdf> <report.json> [--tolerance 5]

The report is the JSON written by ``fill.py --report``. Outputs a JSON
report with pass/fail for each field.
"""

import argparse
import json
import sys
from pathlib import Path

from pypdf.generic import DictionaryObject

from extract import extract_text_runs, open_reader, read_bytes, resolve
from form_errors import EmptyOrImageOnlyPdfError, FormFillError

CHECKED_ONLY_KINDS = ("checkbox", "signature")


def extract_word_boxes(pdf_bytes, page_num=0):
    """Words of a page with boxes in PDF points (bottom-left origin)."""
    try:
        extraction = extract_text_runs(pdf_bytes, page_num)
    except EmptyOrImageOnlyPdfError:
        return []
    return [run.to_dict() for run in extraction.runs]


def _union(words):
    x0 = min(w["x"] for w in words)
    y0 = min(w["y"] for w in words)
    x1 = max(w["x"] + w["width"] for w in words)
    y1 = max(w["y"] + w["height"] for w in words)
    return {"text": " ".join(w["text"] for w in words), "x": x0, "y": y0,
            "width": x1 - x0, "height": y1 - y0}


def check_text_in_bounds(text_box, target_rect, tolerance=5):
    """True when the text box lies inside target_rect [x0, y0, x1, y1] grown by tolerance."""
    rx0, ry0, rx1, ry1 = target_rect
    if rx1 < rx0:
        rx0, rx1 = rx1, rx0
    if ry1 < ry0:
        ry0, ry1 = ry1, ry0

    in_x = rx0 - tolerance <= text_box["x"] and text_box["x"] + text_box["width"] <= rx1 + tolerance
    in_y = ry0 - tolerance <= text_box["y"] and text_box["y"] + text_box["height"] <= ry1 + tolerance
    return in_x and in_y


def find_text_box(words, expected, target_rect=None, tolerance=5):
    """Box of the word sequence spelling expected; prefers an occurrence inside target_rect."""
    tokens = str(expected).split()
    if not tokens:
        return None
    n = len(tokens)
    candidates = []
    for i in range(len(words) - n + 1):
        if [w["text"] for w in words[i:i + n]] == tokens:
            candidates.append(_union(words[i:i + n]))
    if not candidates:
        return None
    if target_rect is not None:
        for box in candidates:
            if check_text_in_bounds(box, target_rect, tolerance):
                return box
    return candidates[0]


# ---------------------------------------------------------------------------
# AcroForm
# ---------------------------------------------------------------------------

def _collect_field_values(fields, result, prefix=""):
    for field_ref in fields:
        field = resolve(field_ref)
        if not isinstance(field, DictionaryObject):
            continue
        name = str(field.get("/T", ""))
        full_name = f"{prefix}.{name}" if prefix else name
        value = field.get("/V")
        if value is not None:
            result[full_name] = str(value)
        if "/Kids" in field:
            _collect_field_values(resolve(field["/Kids"]), result, prefix=full_name)


def verify_acroform(pdf_bytes, report_fields):
    """Verify AcroForm field values against the report."""
    reader = open_reader(pdf_bytes)
    results = []
    targets = [f for f in report_fields if f.get("acroform_name")]

    root = reader.trailer.get("/Root", {})
    if "/AcroForm" not in root:
        for field in targets:
            results.append({"field": field["key"], "status": "fail", "reason": "No AcroForm in PDF"})
        return results

    form_fields = {}
    acroform = resolve(root["/AcroForm"])
    if "/Fields" in acroform:
        _collect_field_values(resolve(acroform["/Fields"]), form_fields)

    for field in targets:
        name = field["acroform_name"]
        expected = field.get("value")
        actual = form_fields.get(name)
        if field["kind"] == "checkbox":
            ok = (actual not in (None, "/Off")) == bool(expected)
        else:
            ok = actual is not None and str(actual) == str(expected)
        results.append({
            "field": field["key"],
            "status": "pass" if ok else "fail",
            "reason": None if ok else ("Field not found in PDF" if actual is None else "Value mismatch"),
            "expected": expected,
            "actual": actual,
        })
    return results


# ---------------------------------------------------------------------------
# Drawn text
# ---------------------------------------------------------------------------

def verify_overlay(pdf_bytes, report_fields, tolerance=5):
    """Verify drawn text positions against the reported field rectangles."""
    words = extract_word_boxes(pdf_bytes)
    results = []

    for field in report_fields:
        key = field["key"]
        rect = field.get("rect")
        if field["kind"] in CHECKED_ONLY_KINDS:
            results.append({"field": key, "status": "skip", "reason": "Not text"})
            continue
        if rect is None:
            results.append({"field": key, "status": "fail", "reason": "Field was not placed"})
            continue

        box = find_text_box(words, field["value"], rect, tolerance)
        if box is None:
            results.append({"field": key, "status": "fail", "reason": "Text not found in page",
                            "target_rect": rect})
            continue

        in_bounds = check_text_in_bounds(box, rect, tolerance)
        results.append({
            "field": key,
            "status": "pass" if in_bounds else "fail",
            "reason": None if in_bounds else "Text outside target rect",
            "text_box": {k: round(box[k], 2) for k in ("x", "y", "width", "height")},
            "target_rect": rect,
        })

    return results


def verify_fill(pdf_bytes, report, tolerance=5):
    """Run full verification of a filled PDF against its fill report."""
    fields = report.get("fields", [])
    result = {
        "strategy": report.get("strategy"),
        "results": [],
        "summary": {"total": 0, "pass": 0, "fail": 0, "skip": 0},
    }

    if report.get("strategy") == "acroform" and not report.get("flattened"):
        result["results"].extend(verify_acroform(pdf_bytes, fields))
    else:
        result["results"].extend(verify_overlay(pdf_bytes, fields, tolerance))

    for r in result["results"]:
        result["summary"]["total"] += 1
        status = r.get("status", "fail")
        if status in result["summary"]:
            result["summary"][status] += 1

    result["all_passed"] = result["summary"]["fail"] == 0
    return result


def main():
    parser = argparse.ArgumentParser(description="Verify PDF fill accuracy")
    parser.add_argument("filled_pdf", help="Path to filled PDF")
    parser.add_argument("report", help="Path to the fill report JSON")
    parser.add_argument("--tolerance", type=float, default=5, help="Position tolerance in points")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON")
    args = parser.parse_args()

    for path in (args.filled_pdf, args.report):
        if not Path(path).exists():
            print(json.dumps({"error": f"File not found: {path}"}), file=sys.stderr)
            sys.exit(1)

    with open(args.report) as f:
        report = json.load(f)
    try:
        result = verify_fill(read_bytes(args.filled_pdf), report, args.tolerance)
    except FormFillError as e:
        print(json.dumps({"error": str(e), "code": e.code}), file=sys.stderr)
        sys.exit(1)

    indent = 2 if args.pretty else None
    print(json.dumps(result, indent=indent, ensure_ascii=False))

    sys.exit(0 if result["all_passed"] else 1)


if __name__ == "__main__":
    main()
