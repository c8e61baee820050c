"""Pytest configuration and shared fixtures for form15 tests."""

import base64
import io
import json
import subprocess
import sys
import threading
from pathlib import Path

import pytest
from PIL import Image
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

# Add scripts to path
FORM15_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(FORM15_ROOT / "scripts"))

SCRIPTS = FORM15_ROOT / "scripts"

PAGE_WIDTH, PAGE_HEIGHT = A4

# Printed phrases of the reference template; the 15G canonical anchors
REFERENCE_LABELS = [
    ("Name of Assessee", 60, 760),
    ("PAN of the Assessee", 380, 760),
    ("Residential Status", 380, 660),
    ("Identification Number", 60, 320),
    ("Amount of Income", 380, 320),
    ("Signature of the Declarant", 60, 180),
]
REFERENCE_TEXTS = [text.lower() for text, _, _ in REFERENCE_LABELS]


# --- PDF builders ---

def make_template_pdf(labels=REFERENCE_LABELS, translate=(0, 0), scale=1.0,
                      text_fields=(), checkboxes=(), font_size=9):
    """One-page A4 template with printed labels and optional AcroForm fields.

    translate/scale move every printed label, simulating a re-rendered copy
    of the same form. With no labels the page only carries a drawn frame.
    """
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4)
    c.saveState()
    c.translate(*translate)
    c.scale(scale, scale)
    c.setFont("Helvetica", font_size)
    for text, x, y in labels:
        c.drawString(x, y, text)
    c.restoreState()

    if not labels:
        c.rect(100, 100, 300, 300)
    for name, x, y, w, h in text_fields:
        c.acroForm.textfield(name=name, x=x, y=y, width=w, height=h, borderWidth=0, fontSize=10)
    for name, x, y in checkboxes:
        c.acroForm.checkbox(name=name, x=x, y=y, size=12)

    c.showPage()
    c.save()
    return buf.getvalue()


def png_base64(size=(60, 20), color=(0, 0, 0, 255)):
    image = Image.new("RGBA", size, color)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return base64.b64encode(buf.getvalue()).decode("ascii")


def page_words(pdf_bytes):
    from verify import extract_word_boxes

    return extract_word_boxes(pdf_bytes)


@pytest.fixture
def reference_pdf():
    return make_template_pdf()


@pytest.fixture
def shifted_pdf():
    return make_template_pdf(translate=(15, -10), scale=0.97)


@pytest.fixture
def image_only_pdf():
    return make_template_pdf(labels=[])


@pytest.fixture
def acroform_pdf():
    return make_template_pdf(
        text_fields=[("name", 150, 730, 200, 20), ("pan", 400, 730, 120, 20)],
        checkboxes=[("resident_yes", 150, 640)],
    )


@pytest.fixture
def tmp_output(tmp_path):
    return tmp_path


@pytest.fixture
def busy_mupdf():
    """Hold the shared MuPDF lock from another thread for the test's duration."""
    from extract import MUPDF_LOCK

    held = threading.Event()
    release = threading.Event()

    def hold():
        with MUPDF_LOCK:
            held.set()
            release.wait(10)

    holder = threading.Thread(target=hold, daemon=True)
    holder.start()
    assert held.wait(5)
    yield
    release.set()
    holder.join(5)


# --- Helpers used across test files ---

def run_script(script, args, expect_success=True):
    """Run a script and return (parsed stdout JSON or None, CompletedProcess)."""
    cmd = [sys.executable, str(SCRIPTS / script)] + [str(a) for a in args]
    result = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
    if expect_success:
        assert result.returncode == 0, f"{script} failed:\n{result.stderr}"
    return parse_json_output(result.stdout), result


def parse_json_output(stdout):
    """The JSON document a script printed, ignoring any library chatter before it."""
    lines = stdout.splitlines()
    for i, line in enumerate(lines):
        if line.startswith("{"):
            try:
                return json.loads("\n".join(lines[i:]))
            except json.JSONDecodeError:
                continue
    return None


def run_extract(pdf_path, extra_args=None):
    """Run extract.py and return parsed JSON output."""
    output, _ = run_script("extract.py", [pdf_path, "--pretty"] + (extra_args or []))
    return output


def run_fill(input_pdf, data_path, output_pdf, extra_args=None):
    """Run fill.py and return parsed JSON output."""
    output, _ = run_script("fill.py", [input_pdf, data_path, output_pdf] + (extra_args or []))
    return output


def run_verify(filled_pdf, report_path, tolerance=5):
    """Run verify.py and return (report, exitcode)."""
    output, result = run_script(
        "verify.py", [filled_pdf, report_path, "--tolerance", tolerance, "--pretty"],
        expect_success=False)
    return output, result.returncode


def write_json(tmp_path, name, data):
    path = tmp_path / name
    path.write_text(json.dumps(data))
    return path
