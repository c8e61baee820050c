"""Geometry primitives and the least-squares affine solver.

All coordinates are PDF points with a bottom-left origin. Percent rectangles
store the same region as fractions (0..1) of the page width and height.
"""

import math
from typing import Sequence, Tuple

import numpy as np
from pydantic import BaseModel, ConfigDict

from form_errors import DegenerateCorrespondenceError, InsufficientCorrespondenceError

MIN_CORRESPONDENCES = 3
MAX_RMS_ERROR = 4.0  # points


class Point(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float


class Rect(BaseModel):
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float

    @property
    def right(self):
        return self.x + self.width

    @property
    def top(self):
        return self.y + self.height

    def corners(self):
        return [
            Point(x=self.x, y=self.y),
            Point(x=self.right, y=self.y),
            Point(x=self.right, y=self.top),
            Point(x=self.x, y=self.top),
        ]

    def center(self):
        return Point(x=self.x + self.width / 2, y=self.y + self.height / 2)


class PercentRect(BaseModel):
    model_config = ConfigDict(frozen=True)

    x_pct: float
    y_pct: float
    w_pct: float
    h_pct: float


class AffineMatrix(BaseModel):
    """x' = a*x + b*y + c, y' = d*x + e*y + f"""

    model_config = ConfigDict(frozen=True)

    a: float
    b: float
    c: float
    d: float
    e: float
    f: float

    @classmethod
    def identity(cls):
        return cls(a=1.0, b=0.0, c=0.0, d=0.0, e=1.0, f=0.0)

    def scale(self):
        return math.sqrt(abs(self.a * self.e - self.b * self.d))

    def rotation_degrees(self):
        return math.degrees(math.atan2(self.d, self.a))


def clamp(value, low, high):
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Affine fit
# ---------------------------------------------------------------------------

def _gauss_jordan_inverse(matrix):
    """Invert a square matrix with Gauss-Jordan elimination and partial pivoting."""
    n = matrix.shape[0]
    aug = np.hstack([matrix.astype(float), np.eye(n)])
    tolerance = 1e-12 * max(1.0, float(np.abs(matrix).max()))

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(aug[col:, col])))
        if abs(aug[pivot_row, col]) < tolerance:
            raise DegenerateCorrespondenceError("Singular normal matrix in affine fit")
        if pivot_row != col:
            aug[[col, pivot_row]] = aug[[pivot_row, col]]
        aug[col] = aug[col] / aug[col, col]
        for row in range(n):
            if row != col:
                aug[row] = aug[row] - aug[row, col] * aug[col]

    return aug[:, n:]


def solve_affine_transform(
    canonical_points: Sequence[Point],
    measured_points: Sequence[Point],
) -> Tuple[AffineMatrix, float]:
    """Fit the affine transform mapping canonical points onto measured points.

    Returns the matrix and the RMS residual distance in points. Callers
    decide whether the residual is acceptable (see ``MAX_RMS_ERROR``).
    """
    if len(canonical_points) != len(measured_points):
        raise InsufficientCorrespondenceError(
            f"Point count mismatch: {len(canonical_points)} canonical vs "
            f"{len(measured_points)} measured"
        )
    n = len(canonical_points)
    if n < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondenceError(
            f"Need at least {MIN_CORRESPONDENCES} correspondences, got {n}"
        )

    src = np.array([[p.x, p.y, 1.0] for p in canonical_points], dtype=float)
    if np.linalg.matrix_rank(src) < 3:
        raise DegenerateCorrespondenceError("Canonical points are collinear")

    A = np.zeros((2 * n, 6), dtype=float)
    B = np.zeros((2 * n,), dtype=float)
    for i, (cp, mp) in enumerate(zip(canonical_points, measured_points)):
        A[2 * i, :] = [cp.x, cp.y, 1.0, 0.0, 0.0, 0.0]
        A[2 * i + 1, :] = [0.0, 0.0, 0.0, cp.x, cp.y, 1.0]
        B[2 * i] = mp.x
        B[2 * i + 1] = mp.y

    ata_inv = _gauss_jordan_inverse(A.T @ A)
    params = ata_inv @ (A.T @ B)
    a, b, c, d, e, f = (float(v) for v in params)
    matrix = AffineMatrix(a=a, b=b, c=c, d=d, e=e, f=f)

    squared = []
    for cp, mp in zip(canonical_points, measured_points):
        tp = apply_affine(matrix, cp)
        squared.append((tp.x - mp.x) ** 2 + (tp.y - mp.y) ** 2)
    rms = math.sqrt(sum(squared) / n)

    return matrix, rms


def apply_affine(matrix: AffineMatrix, point: Point) -> Point:
    return Point(
        x=matrix.a * point.x + matrix.b * point.y + matrix.c,
        y=matrix.d * point.x + matrix.e * point.y + matrix.f,
    )


def transform_rectangle(matrix: AffineMatrix, rect: Rect) -> Rect:
    """Axis-aligned bounding box of the four transformed corners."""
    transformed = [apply_affine(matrix, p) for p in rect.corners()]
    xs = [p.x for p in transformed]
    ys = [p.y for p in transformed]
    return Rect(x=min(xs), y=min(ys), width=max(xs) - min(xs), height=max(ys) - min(ys))


# ---------------------------------------------------------------------------
# Percent <-> points
# ---------------------------------------------------------------------------

def percentage_to_points(percent: PercentRect, page_width, page_height) -> Rect:
    return Rect(
        x=percent.x_pct * page_width,
        y=percent.y_pct * page_height,
        width=percent.w_pct * page_width,
        height=percent.h_pct * page_height,
    )


def points_to_percentage(rect: Rect, page_width, page_height) -> PercentRect:
    return PercentRect(
        x_pct=rect.x / page_width,
        y_pct=rect.y / page_height,
        w_pct=rect.width / page_width,
        h_pct=rect.height / page_height,
    )


def clamp_rect(rect: Rect, page_width, page_height) -> Rect:
    """Shrink a rectangle so it lies within the page."""
    x0 = clamp(rect.x, 0.0, page_width)
    y0 = clamp(rect.y, 0.0, page_height)
    x1 = clamp(rect.right, 0.0, page_width)
    y1 = clamp(rect.top, 0.0, page_height)
    return Rect(x=x0, y=y0, width=x1 - x0, height=y1 - y0)
