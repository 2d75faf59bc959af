from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional, Tuple

import numpy as np


@dataclass(frozen=True, order=False)
class Detection:
    """A point source found in one channel. Coordinates are (x=column, y=row), pixel centres on integers."""
    x: float
    y: float
    flux: float
    radius: float
    peak: float = 0.0

    @property
    def position(self) -> Tuple[float, float]:
        return (self.x, self.y)


@dataclass(frozen=True)
class CorrespondencePair:
    """An accepted match: the same physical star seen in the reference and in the target channel."""
    reference: Detection
    target: Detection


class TransformClass(str, Enum):
    """Admissible geometric models, ordered by increasing degrees of freedom."""
    TRANSLATION = "translation"
    SIMILARITY = "similarity"
    AFFINE = "affine"
    PROJECTIVE = "projective"

    @property
    def n_params(self) -> int:
        return {"translation": 2, "similarity": 4, "affine": 6, "projective": 8}[self.value]

    @property
    def min_pairs(self) -> int:
        """Smallest number of point pairs that fully constrains the model."""
        return {"translation": 1, "similarity": 2, "affine": 3, "projective": 4}[self.value]

    @classmethod
    def parse(cls, value) -> "TransformClass":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            supported = ", ".join(c.value for c in cls)
            raise ValueError(f"Unsupported transform class: {value}. Supported: {supported}") from None


@dataclass(frozen=True, eq=False)
class Transform:
    """
    Immutable geometric mapping of target-channel coordinates onto reference-channel
    coordinates, stored as a 3x3 homogeneous matrix.

    Parameter vectors per class:
        translation: (tx, ty)
        similarity:  (a, b, tx, ty)   with x' = a*x - b*y + tx, y' = b*x + a*y + ty
        affine:      (a00, a01, tx, a10, a11, ty)
        projective:  (h00, h01, h02, h10, h11, h12, h20, h21), h22 fixed to 1
    """
    transform_class: TransformClass
    matrix: np.ndarray

    def __post_init__(self):
        cls = TransformClass.parse(self.transform_class)
        matrix = np.array(self.matrix, dtype=np.float64)
        if matrix.shape == (2, 3):
            matrix = np.vstack([matrix, [0.0, 0.0, 1.0]])
        if matrix.shape != (3, 3):
            raise ValueError(f"Transform matrix must be 3x3 (or 2x3), got shape {matrix.shape}")
        if cls is not TransformClass.PROJECTIVE and not np.allclose(matrix[2], [0.0, 0.0, 1.0]):
            raise ValueError(f"A {cls.value} transform must have a last row of (0, 0, 1).")
        if matrix[2, 2] == 0 or not np.all(np.isfinite(matrix)):
            raise ValueError("Transform matrix is not finite or has h22 == 0.")
        matrix = matrix / matrix[2, 2]
        matrix.setflags(write=False)
        object.__setattr__(self, "transform_class", cls)
        object.__setattr__(self, "matrix", matrix)

    @classmethod
    def identity(cls, transform_class=TransformClass.AFFINE) -> "Transform":
        return cls(TransformClass.parse(transform_class), np.eye(3))

    @classmethod
    def from_parameters(cls, transform_class, params) -> "Transform":
        tc = TransformClass.parse(transform_class)
        p = np.asarray(params, dtype=np.float64).ravel()
        if p.size != tc.n_params:
            raise ValueError(f"A {tc.value} transform takes {tc.n_params} parameters, got {p.size}")
        if tc is TransformClass.TRANSLATION:
            m = [[1.0, 0.0, p[0]], [0.0, 1.0, p[1]], [0.0, 0.0, 1.0]]
        elif tc is TransformClass.SIMILARITY:
            a, b, tx, ty = p
            m = [[a, -b, tx], [b, a, ty], [0.0, 0.0, 1.0]]
        elif tc is TransformClass.AFFINE:
            m = [p[0:3], p[3:6], [0.0, 0.0, 1.0]]
        else:
            m = [p[0:3], p[3:6], [p[6], p[7], 1.0]]
        return cls(tc, np.array(m, dtype=np.float64))

    @property
    def parameters(self) -> Tuple[float, ...]:
        m = self.matrix
        if self.transform_class is TransformClass.TRANSLATION:
            values = (m[0, 2], m[1, 2])
        elif self.transform_class is TransformClass.SIMILARITY:
            values = (m[0, 0], m[1, 0], m[0, 2], m[1, 2])
        elif self.transform_class is TransformClass.AFFINE:
            values = (m[0, 0], m[0, 1], m[0, 2], m[1, 0], m[1, 1], m[1, 2])
        else:
            values = tuple(m.ravel()[:8])
        return tuple(float(v) for v in values)

    @property
    def translation(self) -> Tuple[float, float]:
        return (float(self.matrix[0, 2]), float(self.matrix[1, 2]))

    @property
    def scale(self) -> float:
        """Geometric-mean scale of the linear part."""
        return float(np.sqrt(abs(np.linalg.det(self.matrix[:2, :2]))))

    @property
    def rotation_deg(self) -> float:
        return float(np.degrees(np.arctan2(self.matrix[1, 0], self.matrix[0, 0])))

    def apply(self, points) -> np.ndarray:
        """Maps (N, 2) or (2,) points (x, y) through the transform."""
        pts = np.asarray(points, dtype=np.float64)
        single = pts.ndim == 1
        pts = np.atleast_2d(pts)
        homogeneous = np.hstack([pts, np.ones((pts.shape[0], 1))]) @ self.matrix.T
        mapped = homogeneous[:, :2] / homogeneous[:, 2:3]
        return mapped[0] if single else mapped

    def inverse(self) -> "Transform":
        return Transform(self.transform_class, np.linalg.inv(self.matrix))

    def is_identity(self, tolerance: float = 1e-6) -> bool:
        return bool(np.allclose(self.matrix, np.eye(3), atol=tolerance))

    def __repr__(self) -> str:
        params = ", ".join(f"{v:.6g}" for v in self.parameters)
        return f"Transform({self.transform_class.value}, [{params}])"


@dataclass(frozen=True, eq=False)
class TransformFit:
    """Result of a robust fit: the transform plus its quality figures."""
    transform: Transform
    inlier_mask: np.ndarray
    residuals: np.ndarray
    rms_residual: float
    iterations: int = 1

    @property
    def inlier_count(self) -> int:
        return int(np.count_nonzero(self.inlier_mask))

    @property
    def outlier_count(self) -> int:
        return int(self.inlier_mask.size - np.count_nonzero(self.inlier_mask))


@dataclass
class AlignmentDiagnostics:
    """Per-channel record the orchestration layer may log or reject on."""
    channel: str
    transform_class: str
    parameters: Optional[Tuple[float, ...]] = None
    inlier_count: int = 0
    outlier_count: int = 0
    rms_residual: Optional[float] = None
    reference_detections: int = 0
    target_detections: int = 0
    pair_count: int = 0
    coarse_offset: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "transform_class": self.transform_class,
            "parameters": list(self.parameters) if self.parameters is not None else None,
            "inlier_count": self.inlier_count,
            "outlier_count": self.outlier_count,
            "rms_residual": self.rms_residual,
            "reference_detections": self.reference_detections,
            "target_detections": self.target_detections,
            "pair_count": self.pair_count,
            "coarse_offset": list(self.coarse_offset) if self.coarse_offset is not None else None,
        }


@dataclass(eq=False)
class ChannelAlignment:
    """Outcome of one successful alignment job (one target channel)."""
    channel: str
    image: np.ndarray
    fit: TransformFit
    pairs: FrozenSet[CorrespondencePair]
    diagnostics: AlignmentDiagnostics

    @property
    def transform(self) -> Transform:
        return self.fit.transform


@dataclass(eq=False)
class ChannelResult:
    """Structured per-channel result: either an aligned image or the error that stopped it."""
    channel: str
    image: Optional[np.ndarray]
    diagnostics: Optional[AlignmentDiagnostics]
    error: Optional[Exception] = None
    alignment: Optional[ChannelAlignment] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.image is not None
