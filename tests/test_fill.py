"""Tests for the Form 15G/15H filler."""

import io
import json

import pytest
from pypdf import PdfReader

from affine import PercentRect, Rect, points_to_percentage
from calibration import CoordinateTables, build_acroform_shell, calibrate_reference, load_tables
from conftest import (
    PAGE_HEIGHT,
    PAGE_WIDTH,
    REFERENCE_LABELS,
    REFERENCE_TEXTS,
    make_template_pdf,
    page_words,
    png_base64,
    run_fill,
    run_script,
    write_json,
)
from coordinate_map import hash_template
from fill import FillOptions, fill_form, load_form_data, strategy_plan
from form_data import FieldKey, FormType
from form_errors import (
    NoUsableStrategyError,
    TemplateMismatchError,
    TemplateUnreadableError,
    UnknownFieldKeyError,
)
from template_cache import InMemoryCoordinateCache, TemplateManager, aligned_detector
from verify import check_text_in_bounds, find_text_box, verify_acroform

DATA = {
    "name": "Asha Rao",
    "pan": "ABCDE1234F",
    "resident_yes": True,
    "income_amount": "Rs. 1,50,000.00",
}

NAME_RECT = Rect(x=60, y=730, width=200, height=24)
INCOME_RECT = Rect(x=380, y=290, width=150, height=24)


def words_text(pdf_bytes):
    return [w["text"] for w in page_words(pdf_bytes)]


def attempt_codes(result_or_error):
    return [a["code"] for a in result_or_error.attempts]


@pytest.fixture
def calibrated_tables(reference_pdf):
    fields = {
        FieldKey.NAME: points_to_percentage(NAME_RECT, PAGE_WIDTH, PAGE_HEIGHT),
        FieldKey.INCOME_AMOUNT: points_to_percentage(INCOME_RECT, PAGE_WIDTH, PAGE_HEIGHT),
    }
    canonical = calibrate_reference(reference_pdf, "15G", fields, REFERENCE_TEXTS)
    return CoordinateTables(manual=load_tables().manual, canonical=[canonical])


def fresh_manager(tables):
    return TemplateManager(InMemoryCoordinateCache(), tables.canonical_template, aligned_detector)


# ---------------------------------------------------------------------------
# Strategy plan
# ---------------------------------------------------------------------------

class TestStrategyPlan:

    def test_default_order(self, reference_pdf):
        plan = strategy_plan(FillOptions(), load_tables(), FormType.FORM_15G, hash_template(reference_pdf))
        assert plan == ["acroform", "anchors", "manual"]

    def test_pinned_manual_table_goes_first(self, reference_pdf):
        pdf_hash = hash_template(reference_pdf)
        bundled = load_tables()
        pinned = bundled.manual_table("15G").model_copy(
            update={"version": "pinned", "default": False, "template_sha256": pdf_hash})
        tables = CoordinateTables(manual=bundled.manual + [pinned], canonical=bundled.canonical)
        assert strategy_plan(FillOptions(), tables, FormType.FORM_15G, pdf_hash) == \
            ["acroform", "manual", "anchors"]

    def test_skip_hash_check_adds_percent(self):
        plan = strategy_plan(FillOptions(skip_hash_check=True), load_tables(), FormType.FORM_15G, "x")
        assert plan == ["acroform", "anchors", "percent", "manual"]

    def test_explicit_strategies(self):
        assert strategy_plan(FillOptions(strategies=["manual"]), load_tables(), FormType.FORM_15G, "x") == ["manual"]
        with pytest.raises(ValueError):
            strategy_plan(FillOptions(strategies=["overlay"]), load_tables(), FormType.FORM_15G, "x")


# ---------------------------------------------------------------------------
# AcroForm
# ---------------------------------------------------------------------------

class TestAcroFormFill:

    def test_flattened_fill(self, acroform_pdf):
        result = fill_form(acroform_pdf, "15G", DATA)
        assert result.strategy == "acroform"
        assert result.flattened
        assert "/AcroForm" not in PdfReader(io.BytesIO(result.pdf_bytes)).trailer["/Root"]
        words = words_text(result.pdf_bytes)
        assert "Asha" in words and "ABCDE1234F" in words
        assert set(result.filled) >= {"name", "pan", "resident_yes"}

    def test_unflattened_keeps_values(self, acroform_pdf):
        data = {"name": "Asha Rao", "resident_yes": True}
        result = fill_form(acroform_pdf, "15G", data, FillOptions(flatten=False))
        assert not result.flattened
        report = result.report(load_form_data(data, "15G")[1])
        checks = verify_acroform(result.pdf_bytes, report["fields"])
        assert {c["field"] for c in checks} == {"name", "resident_yes"}
        assert all(c["status"] == "pass" for c in checks)

    def test_unflattened_text_only(self, acroform_pdf):
        result = fill_form(acroform_pdf, "15G", {"name": "Asha Rao"}, FillOptions(flatten=False))
        assert result.strategy == "acroform"
        assert attempt_codes(result) == ["OK"]
        assert result.filled == ["name"]
        fields = PdfReader(io.BytesIO(result.pdf_bytes)).get_fields()
        assert fields["name"].get("/V") == "Asha Rao"

    def test_uncalibrated_signature_warns_once(self, acroform_pdf):
        tables = CoordinateTables(canonical=load_tables().canonical)
        options = FillOptions(flatten=False, tables=tables)
        result = fill_form(acroform_pdf, "15G", {"name": "Asha Rao", "signature": png_base64()}, options)
        assert result.strategy == "acroform"
        assert [(w.code, w.details["field"]) for w in result.warnings] == [("FIELD_NOT_FOUND", "signature")]
        assert "signature" not in result.filled

    def test_unticked_checkbox_left_alone(self, acroform_pdf):
        result = fill_form(acroform_pdf, "15G", {"name": "Asha Rao", "resident_no": False})
        assert result.warnings == []
        assert result.filled == ["name"]

    def test_missing_form_field_warns(self, acroform_pdf):
        result = fill_form(acroform_pdf, "15G", {**DATA, "email": "a@b.in"})
        assert result.strategy == "acroform"
        assert {w.details["field"] for w in result.warnings if w.code == "FIELD_NOT_FOUND"} == {"email", "income_amount"}

    def test_calibrated_shell(self, reference_pdf):
        fields = {
            FieldKey.NAME: PercentRect(x_pct=0.25, y_pct=0.86, w_pct=0.35, h_pct=0.025),
            FieldKey.SIGNATURE: PercentRect(x_pct=0.10, y_pct=0.15, w_pct=0.30, h_pct=0.05),
        }
        shell, record = build_acroform_shell(reference_pdf, "15G", fields)
        options = FillOptions(shell_bytes=shell, calibration_record=record)
        result = fill_form(reference_pdf, "15G", {"name": "Asha Rao", "signature": png_base64()}, options)

        assert result.strategy == "acroform"
        assert result.warnings == []
        assert "Asha" in words_text(result.pdf_bytes)
        sig = result.coordinate_map.fields[FieldKey.SIGNATURE]
        assert sig.x == pytest.approx(0.10 * PAGE_WIDTH, abs=0.1)

    def test_shell_for_other_template_falls_through(self, reference_pdf, shifted_pdf):
        shell, record = build_acroform_shell(
            reference_pdf, "15G", {FieldKey.NAME: PercentRect(x_pct=0.25, y_pct=0.86, w_pct=0.35, h_pct=0.025)})
        options = FillOptions(shell_bytes=shell, calibration_record=record, strategies=["acroform", "manual"])
        result = fill_form(shifted_pdf, "15G", DATA, options)
        assert result.strategy == "manual"
        assert attempt_codes(result) == ["TEMPLATE_MISMATCH", "OK"]


# ---------------------------------------------------------------------------
# Anchors
# ---------------------------------------------------------------------------

class TestAnchorFill:

    def test_shifted_template_aligned(self, shifted_pdf, calibrated_tables):
        options = FillOptions(strategies=["anchors"], tables=calibrated_tables,
                              template_manager=fresh_manager(calibrated_tables))
        result = fill_form(shifted_pdf, "15G", {"name": "Asha Rao", "income_amount": "150000"}, options)

        assert result.strategy == "anchors"
        box = result.coordinate_map.fields[FieldKey.NAME]
        assert box.x == pytest.approx(0.97 * NAME_RECT.x + 15, abs=0.5)
        assert box.y == pytest.approx(0.97 * NAME_RECT.y - 10, abs=0.5)

        words = page_words(result.pdf_bytes)
        rect = [box.x, box.y, box.x + box.width, box.y + box.height]
        text_box = find_text_box(words, "Asha Rao", rect)
        assert text_box is not None
        assert check_text_in_bounds(text_box, rect, tolerance=2)

    def test_cached_map_reused(self, shifted_pdf, calibrated_tables):
        calls = []

        def detector(*args):
            calls.append(args)
            return aligned_detector(*args)

        manager = TemplateManager(InMemoryCoordinateCache(), calibrated_tables.canonical_template, detector)
        options = FillOptions(strategies=["anchors"], tables=calibrated_tables, template_manager=manager)
        fill_form(shifted_pdf, "15G", DATA, options)
        fill_form(shifted_pdf, "15G", DATA, options)
        assert len(calls) == 1

    def test_no_cache_shared_without_manager(self, shifted_pdf, calibrated_tables, monkeypatch):
        import fill

        calls = []

        def detector(*args):
            calls.append(args)
            return aligned_detector(*args)

        monkeypatch.setattr(fill, "aligned_detector", detector)
        options = FillOptions(strategies=["anchors"], tables=calibrated_tables)
        fill_form(shifted_pdf, "15G", DATA, options)
        fill_form(shifted_pdf, "15G", DATA, options)
        assert len(calls) == 2

    def test_too_few_anchors_falls_back_to_manual(self, calibrated_tables):
        pdf = make_template_pdf(labels=REFERENCE_LABELS[:2])
        options = FillOptions(tables=calibrated_tables, template_manager=fresh_manager(calibrated_tables))
        result = fill_form(pdf, "15G", DATA, options)
        assert result.strategy == "manual"
        assert "INSUFFICIENT_ANCHORS" in attempt_codes(result)
        assert "Asha" in words_text(result.pdf_bytes)


# ---------------------------------------------------------------------------
# Fallbacks and failures
# ---------------------------------------------------------------------------

class TestFallback:

    def test_image_only_uses_manual(self, image_only_pdf):
        result = fill_form(image_only_pdf, "15G", DATA)
        assert result.strategy == "manual"
        assert "EMPTY_OR_IMAGE_ONLY_PDF" in attempt_codes(result)
        assert result.attempts[-1] == {"strategy": "manual", "code": "OK"}

    def test_nothing_to_draw(self, reference_pdf):
        result = fill_form(reference_pdf, "15G", {"resident_yes": False}, FillOptions(strategies=["manual"]))
        assert result.strategy == "manual"
        assert result.filled == []
        assert result.warnings == []
        assert len(PdfReader(io.BytesIO(result.pdf_bytes)).pages) == 1

    def test_garbage_template_rejected(self):
        with pytest.raises(TemplateUnreadableError):
            fill_form(b"%PDF-1.4 garbage", "15G", DATA)

    def test_percent_requires_canonical_template(self, reference_pdf):
        with pytest.raises(TemplateMismatchError):
            fill_form(reference_pdf, "15G", DATA, FillOptions(strategies=["percent"]))

    def test_percent_with_skip_hash_check(self, reference_pdf):
        options = FillOptions(strategies=["percent"], skip_hash_check=True)
        result = fill_form(reference_pdf, "15G", DATA, options)
        assert result.strategy == "percent"
        assert result.coordinate_map.source == "percent"

    def test_all_strategies_fail(self, image_only_pdf):
        options = FillOptions(strategies=["acroform", "percent"])
        with pytest.raises(NoUsableStrategyError) as exc:
            fill_form(image_only_pdf, "15G", DATA, options)
        assert [a["code"] for a in exc.value.details["attempts"]] == ["STRATEGY_UNAVAILABLE", "TEMPLATE_MISMATCH"]

    def test_unknown_key_rejected(self, reference_pdf):
        with pytest.raises(UnknownFieldKeyError):
            fill_form(reference_pdf, "15H", {"status_huf": True})


# ---------------------------------------------------------------------------
# Signature and debug output
# ---------------------------------------------------------------------------

class TestSignature:

    def test_png_signature_embedded(self, reference_pdf):
        result = fill_form(reference_pdf, "15G", {**DATA, "signature": png_base64()},
                           FillOptions(strategies=["manual"]))
        assert result.warnings == []
        assert "signature" in result.filled
        assert "[Signature]" not in words_text(result.pdf_bytes)

    def test_bad_signature_placeholder(self, reference_pdf):
        result = fill_form(reference_pdf, "15G", {**DATA, "signature": "not an image"},
                           FillOptions(strategies=["manual"]))
        assert "[Signature]" in words_text(result.pdf_bytes)
        assert [w.code for w in result.warnings] == ["SIGNATURE_EMBED_FAILURE"]


class TestDebugOutput:

    def test_debug_pdf_separate_from_output(self, reference_pdf):
        result = fill_form(reference_pdf, "15G", DATA, FillOptions(strategies=["manual"], debug=True))
        assert result.debug_pdf is not None
        assert "source=manual" in words_text(result.debug_pdf)
        assert "source=manual" not in words_text(result.pdf_bytes)

    def test_no_debug_by_default(self, reference_pdf):
        assert fill_form(reference_pdf, "15G", DATA, FillOptions(strategies=["manual"])).debug_pdf is None

    def test_debug_render_skipped_when_mupdf_busy(self, reference_pdf, busy_mupdf):
        options = FillOptions(strategies=["manual"], debug=True, timeout=0.2)
        result = fill_form(reference_pdf, "15G", DATA, options)
        assert result.strategy == "manual"
        assert result.debug_pdf is None
        assert [w.code for w in result.warnings] == ["TEMPLATE_PROCESSING_TIMEOUT"]
        assert "resident_yes" in result.filled


# ---------------------------------------------------------------------------
# Data loading
# ---------------------------------------------------------------------------

PROFILE = {
    "name": "Asha Rao",
    "pan": "ABCDE1234F",
    "dob_ddmmyyyy": "15/08/1990",
    "addr_city": "Pune",
    "addr_pin": "411001",
}


class TestLoadFormData:

    def test_flat_record_needs_form_type(self):
        with pytest.raises(ValueError):
            load_form_data(DATA)
        form_type, data = load_form_data(DATA, "15g")
        assert form_type is FormType.FORM_15G
        assert data.name == "Asha Rao"

    def test_profile_picks_form_by_age(self):
        form_type, data = load_form_data({"profile": PROFILE, "dividend": {"total": 15000}})
        assert form_type is FormType.FORM_15G
        assert data.income_amount == "Rs. 15,000.00"
        senior = {**PROFILE, "dob_ddmmyyyy": "01/01/1940"}
        assert load_form_data({"profile": senior})[0] is FormType.FORM_15H


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class TestFillCLI:

    def test_fill_with_report(self, reference_pdf, tmp_output):
        template = tmp_output / "template.pdf"
        template.write_bytes(reference_pdf)
        data = write_json(tmp_output, "data.json", DATA)
        output = tmp_output / "filled.pdf"
        report = tmp_output / "report.json"

        result = run_fill(template, data, output,
                          ["--form-type", "15G", "--strategy", "manual", "--report", report])
        assert result["status"] == "success"
        assert result["strategy"] == "manual"
        assert result["fields_filled"] == 4
        assert output.exists()

        placed = json.loads(report.read_text())
        assert placed["form_type"] == "15G"
        name = next(f for f in placed["fields"] if f["key"] == "name")
        assert len(name["rect"]) == 4

    def test_profile_data_and_debug_output(self, reference_pdf, tmp_output):
        template = tmp_output / "template.pdf"
        template.write_bytes(reference_pdf)
        data = write_json(tmp_output, "data.json", {"profile": PROFILE, "dividend": {"total": 15000}})
        debug = tmp_output / "debug.pdf"

        result = run_fill(template, data, tmp_output / "filled.pdf",
                          ["--strategy", "manual", "--debug-output", debug])
        assert result["form_type"] == "15G"
        assert debug.exists()

    def test_unreadable_template_exit_code(self, tmp_output):
        template = tmp_output / "broken.pdf"
        template.write_bytes(b"not a pdf")
        data = write_json(tmp_output, "data.json", DATA)
        _, proc = run_script("fill.py", [template, data, tmp_output / "out.pdf", "--form-type", "15G"],
                             expect_success=False)
        assert proc.returncode == 1
        assert "TEMPLATE_UNREADABLE" in proc.stderr
