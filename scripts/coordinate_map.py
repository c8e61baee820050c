"""Coordinate map models shared by detection, caching and filling."""

import datetime as dt
import hashlib
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from affine import AffineMatrix, PercentRect, Rect, points_to_percentage
from form_data import FieldKey, FormType, check_field_keys

# Rounding slack when checking that boxes lie on the page
PAGE_EPSILON = 0.01


def hash_template(pdf_bytes):
    """SHA-256 hex digest identifying a template file."""
    return hashlib.sha256(pdf_bytes).hexdigest()


class LabelAnchor(BaseModel):
    """A text phrase on the page matched to a field label."""

    model_config = ConfigDict(frozen=True)

    text: str
    x: float
    y: float
    width: float
    height: float
    confidence: float = Field(ge=0.0, le=1.0)

    def rect(self):
        return Rect(x=self.x, y=self.y, width=self.width, height=self.height)

    def center(self):
        return self.rect().center()


class InputBox(BaseModel):
    """Absolute field rectangle plus its percent-of-page equivalent."""

    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float
    x_pct: float
    y_pct: float
    w_pct: float
    h_pct: float

    @classmethod
    def from_rect(cls, rect: Rect, page_width, page_height):
        pct = points_to_percentage(rect, page_width, page_height)
        return cls(
            x=rect.x, y=rect.y, width=rect.width, height=rect.height,
            x_pct=pct.x_pct, y_pct=pct.y_pct, w_pct=pct.w_pct, h_pct=pct.h_pct,
        )

    def rect(self):
        return Rect(x=self.x, y=self.y, width=self.width, height=self.height)

    def percent(self):
        return PercentRect(x_pct=self.x_pct, y_pct=self.y_pct, w_pct=self.w_pct, h_pct=self.h_pct)


class CoordinateMap(BaseModel):
    pdf_hash: str
    form_type: FormType
    page_width: float
    page_height: float
    fields: Dict[FieldKey, InputBox] = {}
    anchors: Dict[FieldKey, LabelAnchor] = {}
    reference_anchors: Dict[str, LabelAnchor] = {}
    matrix: Optional[AffineMatrix] = None
    rms_error: Optional[float] = None
    source: str = "detected"
    last_detected: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    @model_validator(mode="after")
    def _check_fields(self):
        check_field_keys(self.form_type, self.fields.keys())
        for key, box in self.fields.items():
            if (box.x < -PAGE_EPSILON or box.y < -PAGE_EPSILON
                    or box.x + box.width > self.page_width + PAGE_EPSILON
                    or box.y + box.height > self.page_height + PAGE_EPSILON):
                raise ValueError(
                    f"Field {key.value} box ({box.x:.1f}, {box.y:.1f}, {box.width:.1f}x{box.height:.1f}) "
                    f"lies outside the {self.page_width:.0f}x{self.page_height:.0f} page"
                )
        return self
