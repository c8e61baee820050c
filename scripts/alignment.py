"""Canonical alignment: place canonical field boxes on a shifted or scaled template.

Reference phrases printed on every copy of the form are located on the
template and paired with their canonical positions. A least-squares affine
fit maps the canonical page onto the template, and every canonical field box
is carried through it.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict

from affine import (
    MAX_RMS_ERROR,
    MIN_CORRESPONDENCES,
    AffineMatrix,
    Point,
    clamp_rect,
    solve_affine_transform,
    transform_rectangle,
)
from coordinate_map import CoordinateMap, InputBox, hash_template
from detect_fields import discover_input_boxes
from extract import extract_text_runs
from form_data import FORM_FIELD_KEYS, FormType
from form_errors import AlignmentTooImpreciseError, InsufficientAnchorsError
from label_anchors import LABEL_DICTIONARIES, detect_label_anchors, group_into_phrases, match_reference_anchors

logger = logging.getLogger(__name__)


@dataclass
class AlignmentResult:
    coordinate_map: CoordinateMap
    matrix: AffineMatrix
    rms_error: float
    detected: Dict[str, Point] = field(default_factory=dict)
    canonical: Dict[str, Point] = field(default_factory=dict)


def align_template(pdf_bytes, form_type, canonical, extraction=None, timeout=None):
    """Fit canonical reference anchors to the template and transform the field table."""
    form_type = FormType.parse(form_type)
    if extraction is None:
        extraction = extract_text_runs(pdf_bytes, timeout=timeout)
    pw, ph = extraction.page_width, extraction.page_height

    phrases = group_into_phrases(extraction.runs)
    matches = match_reference_anchors(phrases, list(canonical.anchors))
    if len(matches) < MIN_CORRESPONDENCES:
        raise InsufficientAnchorsError(
            f"Found {len(matches)} of {len(canonical.anchors)} reference anchors, "
            f"need at least {MIN_CORRESPONDENCES}",
            found=sorted(matches),
        )

    names = list(matches)
    canonical_points = [canonical.anchors[name] for name in names]
    measured_points = [matches[name].center() for name in names]
    matrix, rms = solve_affine_transform(canonical_points, measured_points)
    logger.debug("Affine fit over %d anchors: scale=%.4f rotation=%.2fdeg rms=%.3fpt",
                 len(names), matrix.scale(), matrix.rotation_degrees(), rms)
    if rms > MAX_RMS_ERROR:
        raise AlignmentTooImpreciseError(
            f"Alignment residual {rms:.2f}pt exceeds {MAX_RMS_ERROR:g}pt",
            rms_error=round(rms, 3),
        )

    fields = {}
    for key in canonical.fields:
        rect = clamp_rect(transform_rectangle(matrix, canonical.field_rect(key)), pw, ph)
        fields[key] = InputBox.from_rect(rect, pw, ph)

    coord_map = CoordinateMap(
        pdf_hash=hash_template(pdf_bytes),
        form_type=form_type,
        page_width=pw,
        page_height=ph,
        fields=fields,
        reference_anchors=matches,
        matrix=matrix,
        rms_error=rms,
        source="aligned",
    )
    return AlignmentResult(
        coordinate_map=coord_map,
        matrix=matrix,
        rms_error=rms,
        detected=dict(zip(names, measured_points)),
        canonical=dict(zip(names, canonical_points)),
    )


def build_coordinate_map(pdf_bytes, form_type, canonical, timeout=None):
    """Aligned canonical boxes, completed by label-anchor discovery.

    Label anchors are kept on the map so a cached copy can later be checked
    for drift, and supply boxes for form keys the canonical table lacks.
    """
    form_type = FormType.parse(form_type)
    extraction = extract_text_runs(pdf_bytes, timeout=timeout)
    result = align_template(pdf_bytes, form_type, canonical, extraction=extraction)
    coord_map = result.coordinate_map

    phrases = group_into_phrases(extraction.runs)
    anchors = detect_label_anchors(phrases, LABEL_DICTIONARIES[form_type])
    missing = {k: a for k, a in anchors.items()
               if k not in coord_map.fields and k in FORM_FIELD_KEYS[form_type]}
    fields = dict(coord_map.fields)
    if missing:
        logger.debug("Discovering %d fields outside the canonical table: %s",
                     len(missing), ", ".join(k.value for k in missing))
        fields.update(discover_input_boxes(missing, coord_map.page_width, coord_map.page_height))

    return coord_map.model_copy(update={"fields": fields, "anchors": anchors}), result
