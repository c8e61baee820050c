#!/usr/bin/env python3
"""Extract structure from a form template: positioned text runs and AcroForm fields.

Text comes from PyMuPDF word boxes, converted to PDF points with a
bottom-left origin. AcroForm fields come from the pypdf field tree.

Usage:
    python extract.py <template.pdf> [--page N] [--pretty] [--timeout 20]

Outputs JSON to stdout with the full structure.
"""

import argparse
import io
import json
import logging
import sys
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

import pymupdf as fitz
from pypdf import PdfReader
from pypdf.errors import PdfReadError
from pypdf.generic import ArrayObject, DictionaryObject, IndirectObject

from form_errors import (
    EmptyOrImageOnlyPdfError,
    FormFillError,
    TemplateProcessingTimeout,
    TemplateUnreadableError,
)
from label_anchors import TextRun, group_into_phrases

logger = logging.getLogger(__name__)

# MuPDF is not safe to drive from several threads at once
MUPDF_LOCK = threading.RLock()


@contextmanager
def mupdf_lock(timeout=None):
    """Hold MUPDF_LOCK, waiting at most timeout seconds when one is given."""
    if not MUPDF_LOCK.acquire(timeout=-1 if timeout is None else timeout):
        raise TemplateProcessingTimeout(f"PyMuPDF still busy after {timeout:g}s")
    try:
        yield
    finally:
        MUPDF_LOCK.release()


def resolve(obj):
    """Recursively resolve indirect references."""
    while isinstance(obj, IndirectObject):
        obj = obj.get_object()
    return obj


def read_bytes(path):
    with open(path, "rb") as f:
        return f.read()


# ---------------------------------------------------------------------------
# Text runs
# ---------------------------------------------------------------------------

@dataclass
class TextExtraction:
    page_width: float
    page_height: float
    runs: List[TextRun] = field(default_factory=list)


def open_document(pdf_bytes):
    """Open a PDF with PyMuPDF, mapping parse failures to TemplateUnreadableError."""
    try:
        doc = fitz.open(stream=pdf_bytes, filetype="pdf")
    except (RuntimeError, ValueError, TypeError) as e:
        raise TemplateUnreadableError(f"Cannot parse template PDF: {e}") from e
    if doc.page_count == 0:
        doc.close()
        raise TemplateUnreadableError("Template PDF has no pages")
    return doc


def _extract_text_runs(pdf_bytes, page_num, lock_timeout=None):
    with mupdf_lock(lock_timeout):
        doc = open_document(pdf_bytes)
        try:
            if page_num >= doc.page_count:
                raise TemplateUnreadableError(
                    f"Page {page_num} does not exist (template has {doc.page_count})")
            page = doc[page_num]
            page_width = page.rect.width
            page_height = page.rect.height
            words = page.get_text("words")
        finally:
            doc.close()

    runs = []
    for x0, y0, x1, y1, text, *_ in words:
        text = text.strip()
        if not text:
            continue
        runs.append(TextRun(
            text=text,
            x=x0,
            y=page_height - y1,
            width=x1 - x0,
            height=y1 - y0,
        ))

    if not runs:
        raise EmptyOrImageOnlyPdfError("No text content detected in template (empty or image-only PDF)")

    logger.debug("Extracted %d text runs from page %d (%.2f x %.2f)",
                 len(runs), page_num, page_width, page_height)
    return TextExtraction(page_width=page_width, page_height=page_height, runs=runs)


def extract_text_runs(pdf_bytes, page_num=0, timeout=None):
    """Positioned text runs of one page, optionally bounded by a timeout in seconds."""
    if timeout is None:
        return _extract_text_runs(pdf_bytes, page_num)

    executor = ThreadPoolExecutor(max_workers=1)
    # A worker still queued on the lock gives up with the caller
    future = executor.submit(_extract_text_runs, pdf_bytes, page_num, timeout)
    try:
        return future.result(timeout=timeout)
    except FuturesTimeout:
        raise TemplateProcessingTimeout(
            f"Text extraction did not finish within {timeout:g}s") from None
    finally:
        executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# AcroForm field extraction
# ---------------------------------------------------------------------------

FIELD_TYPE_MAP = {
    "/Tx": "text",
    "/Btn": "button",  # checkbox or radio
    "/Ch": "choice",
    "/Sig": "signature",
}


def open_reader(pdf_bytes):
    """pypdf reader over template bytes, mapping parse failures to TemplateUnreadableError."""
    try:
        reader = PdfReader(io.BytesIO(pdf_bytes))
        page_count = len(reader.pages)
    except (PdfReadError, ValueError, KeyError, TypeError) as e:
        raise TemplateUnreadableError(f"Cannot parse template PDF: {e}") from e
    if page_count == 0:
        raise TemplateUnreadableError("Template PDF has no pages")
    return reader


def has_acroform(reader):
    root = reader.trailer.get("/Root", {})
    if "/AcroForm" not in root:
        return False
    return bool(resolve(resolve(root["/AcroForm"]).get("/Fields", [])))


def widget_on_state(widget):
    """Name of a checkbox widget's 'on' appearance state, e.g. '/Yes'."""
    ap = resolve(widget.get("/AP"))
    if not isinstance(ap, DictionaryObject) or "/N" not in ap:
        return None
    normal = resolve(ap["/N"])
    if not isinstance(normal, DictionaryObject):
        return None
    for state in normal.keys():
        if state != "/Off":
            return str(state)
    return None


def extract_acroform_fields(reader):
    """Leaf AcroForm fields with name, type, value, rect and page."""
    fields = []
    if not has_acroform(reader):
        return fields

    acroform = resolve(reader.trailer["/Root"]["/AcroForm"])
    page_refs = {}
    for i, page in enumerate(reader.pages):
        if page.indirect_reference is not None:
            page_refs[page.indirect_reference.idnum] = i
    _walk_fields(resolve(acroform["/Fields"]), fields, page_refs)
    return fields


def _walk_fields(field_list, results, page_refs, parent_name="", parent_type=""):
    for field_ref in field_list:
        node = resolve(field_ref)
        if not isinstance(node, DictionaryObject):
            continue

        partial_name = node.get("/T")
        if partial_name is None:
            full_name = parent_name
        else:
            full_name = f"{parent_name}.{partial_name}" if parent_name else str(partial_name)
        ft = str(node.get("/FT", parent_type))
        field_type = FIELD_TYPE_MAP.get(ft, ft.lstrip("/").lower() if ft else "unknown")

        kids = resolve(node.get("/Kids"))
        named_kids = isinstance(kids, ArrayObject) and any(
            "/T" in resolve(k) for k in kids if isinstance(resolve(k), DictionaryObject))
        if named_kids:
            _walk_fields(kids, results, page_refs, full_name, ft)
            continue

        widgets = [resolve(k) for k in kids] if isinstance(kids, ArrayObject) else [node]
        for widget in widgets:
            if "/Rect" not in widget:
                continue
            rect = [float(resolve(v)) for v in resolve(widget["/Rect"])]
            page_ref = widget.get("/P")
            page_index = page_refs.get(page_ref.idnum) if isinstance(page_ref, IndirectObject) else None

            flags = int(node.get("/Ff", 0))
            value = node.get("/V")
            entry = {
                "name": full_name,
                "type": field_type,
                "value": str(value) if value is not None else None,
                "rect": [min(rect[0], rect[2]), min(rect[1], rect[3]),
                         max(rect[0], rect[2]), max(rect[1], rect[3])],
                "page": page_index,
                "readonly": bool(flags & (1 << 0)),
            }
            if field_type == "text":
                entry["multiline"] = bool(flags & (1 << 12))
            if field_type == "button":
                entry["is_radio"] = bool(flags & (1 << 15))
                entry["on_state"] = widget_on_state(widget)
            results.append(entry)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def extract_structure(pdf_bytes, page_num=0, timeout=None):
    """Full structure of a template as a JSON-ready dict."""
    reader = open_reader(pdf_bytes)
    result = {
        "num_pages": len(reader.pages),
        "has_acroform": False,
        "acroform_fields": [],
    }

    acroform_fields = extract_acroform_fields(reader)
    if acroform_fields:
        result["has_acroform"] = True
        result["acroform_fields"] = acroform_fields

    extraction = extract_text_runs(pdf_bytes, page_num, timeout=timeout)
    phrases = group_into_phrases(extraction.runs)
    result["page"] = {
        "page_index": page_num,
        "width": extraction.page_width,
        "height": extraction.page_height,
        "text_runs": [r.to_dict() for r in extraction.runs],
        "phrases": [p.to_dict() for p in phrases],
    }
    result["recommended_strategy"] = "acroform" if acroform_fields else "anchors"
    return result


def main():
    parser = argparse.ArgumentParser(description="Extract form template structure")
    parser.add_argument("pdf", help="Path to PDF file")
    parser.add_argument("--page", type=int, default=0, help="Page to read text from (0-indexed)")
    parser.add_argument("--timeout", type=float, default=None, help="Text extraction time limit in seconds")
    parser.add_argument("--pretty", action="store_true", help="Pretty-print JSON output")
    parser.add_argument("--verbose", action="store_true", help="Log debug output to stderr")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING,
                        format="[%(levelname)s] %(name)s: %(message)s", stream=sys.stderr)

    if not Path(args.pdf).exists():
        print(json.dumps({"error": f"File not found: {args.pdf}"}), file=sys.stderr)
        sys.exit(1)

    try:
        result = extract_structure(read_bytes(args.pdf), args.page, args.timeout)
    except FormFillError as e:
        print(json.dumps({"error": str(e), "code": e.code}), file=sys.stderr)
        sys.exit(1)

    indent = 2 if args.pretty else None
    print(json.dumps(result, indent=indent, ensure_ascii=False))


if __name__ == "__main__":
    main()
