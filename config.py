import os
from dataclasses import dataclass, fields, replace as dataclass_replace, asdict
from typing import Any, Dict, Mapping, Optional

# Logging
# Level name for the backend logger (DEBUG, INFO, WARNING, ...).
LOG_LEVEL = os.environ.get("CA_REDUCER_LOG_LEVEL", "INFO").upper()
# Optional log file. Unset means console only; the core never writes files on its own.
LOG_FILE = os.environ.get("CA_REDUCER_LOG_FILE") or None

# Channel conventions of the calling scripts: RGB image, green is the reference.
DEFAULT_CHANNEL_NAMES = "RGB"
DEFAULT_REFERENCE_CHANNEL = "G"

# Star detection
DEFAULT_MIN_SNR = 5.0            # Peak must exceed this many local noise sigmas
DEFAULT_MAX_DETECTIONS = 200     # Cap on detections kept per channel (brightest first)
DEFAULT_BACKGROUND_WINDOW = 64   # Box size (px) for the local background/noise mesh
DEFAULT_CENTROID_RADIUS = 4      # Half-size of the centroid window, 4 -> 9x9 stamp
DEFAULT_MIN_STAR_RADIUS = 0.6    # Narrower detections (px) are hot pixels or cosmic ray hits
CENTROID_METHODS = ("moment", "gaussian")

# Star matching
DEFAULT_MAX_INITIAL_OFFSET = 20.0  # Search radius (px) for the coarse global shift
DEFAULT_MAX_RESIDUAL = 2.0         # Vote tolerance and acceptance radius after the coarse shift
MIN_MATCHES_FLOOR = 3              # Never attempt a fit with fewer pairs than this

# Transform estimation
TRANSFORM_CLASSES = ("translation", "similarity", "affine", "projective")
DEFAULT_TRANSFORM_CLASS = "affine"
ROBUST_METHODS = ("clip", "ransac")
DEFAULT_ROBUST_THRESHOLD = 1.0   # Pairs with a reprojection error above this (px) are outliers
DEFAULT_CLIP_SIGMA = 3.0         # MAD multiplier used while the robust loop converges
DEFAULT_MAX_ITERATIONS = 10
DEFAULT_RESIDUAL_CEILING = 0.5   # RMS (px) above which a fit is rejected

# Resampling
INTERPOLATION_KERNELS = ("nearest", "bilinear", "bicubic", "lanczos4")
DEFAULT_INTERPOLATION_KERNEL = "bicubic"
DEFAULT_FILL_VALUE = 0.0         # Value for output pixels that map outside the source image

# Concurrency
DEFAULT_RESAMPLE_WORKERS = 1     # Row-band threads inside one resample call
DEFAULT_CHANNEL_WORKERS = 2      # Non-reference channels aligned concurrently


@dataclass(frozen=True)
class AlignmentConfig:
    """
    Tunables for one chromatic aberration reduction job.
    All fields have defaults; callers override what they need.
    """
    min_snr: float = DEFAULT_MIN_SNR
    max_detections: int = DEFAULT_MAX_DETECTIONS
    background_window: int = DEFAULT_BACKGROUND_WINDOW
    centroid_radius: int = DEFAULT_CENTROID_RADIUS
    centroid_method: str = "moment"
    min_star_radius: float = DEFAULT_MIN_STAR_RADIUS
    saturation_level: Optional[float] = None
    max_initial_offset: float = DEFAULT_MAX_INITIAL_OFFSET
    max_residual: float = DEFAULT_MAX_RESIDUAL
    min_matches: Optional[int] = None
    transform_class: str = DEFAULT_TRANSFORM_CLASS
    robust_method: str = "clip"
    robust_threshold: float = DEFAULT_ROBUST_THRESHOLD
    clip_sigma: float = DEFAULT_CLIP_SIGMA
    max_iterations: int = DEFAULT_MAX_ITERATIONS
    residual_ceiling: float = DEFAULT_RESIDUAL_CEILING
    interpolation_kernel: str = DEFAULT_INTERPOLATION_KERNEL
    fill_value: float = DEFAULT_FILL_VALUE
    resample_workers: int = DEFAULT_RESAMPLE_WORKERS
    channel_workers: int = DEFAULT_CHANNEL_WORKERS

    def __post_init__(self):
        if self.min_snr <= 0:
            raise ValueError(f"min_snr must be positive, got {self.min_snr}")
        if self.max_detections < 1:
            raise ValueError(f"max_detections must be at least 1, got {self.max_detections}")
        if self.background_window < 3:
            raise ValueError(f"background_window must be at least 3 px, got {self.background_window}")
        if self.centroid_radius < 1:
            raise ValueError(f"centroid_radius must be at least 1 px, got {self.centroid_radius}")
        if self.centroid_method not in CENTROID_METHODS:
            raise ValueError(f"Unsupported centroid method: {self.centroid_method}. Supported: {', '.join(CENTROID_METHODS)}")
        if self.min_star_radius < 0:
            raise ValueError(f"min_star_radius must not be negative, got {self.min_star_radius}")
        if self.max_initial_offset < 0:
            raise ValueError(f"max_initial_offset must not be negative, got {self.max_initial_offset}")
        if self.max_residual <= 0:
            raise ValueError(f"max_residual must be positive, got {self.max_residual}")
        if self.min_matches is not None and self.min_matches < 1:
            raise ValueError(f"min_matches must be at least 1, got {self.min_matches}")
        if self.transform_class not in TRANSFORM_CLASSES:
            raise ValueError(f"Unsupported transform class: {self.transform_class}. Supported: {', '.join(TRANSFORM_CLASSES)}")
        if self.robust_method not in ROBUST_METHODS:
            raise ValueError(f"Unsupported robust method: {self.robust_method}. Supported: {', '.join(ROBUST_METHODS)}")
        if self.robust_threshold <= 0 or self.clip_sigma <= 0 or self.residual_ceiling <= 0:
            raise ValueError("robust_threshold, clip_sigma and residual_ceiling must be positive.")
        if self.max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {self.max_iterations}")
        if self.interpolation_kernel not in INTERPOLATION_KERNELS:
            raise ValueError(f"Unsupported interpolation kernel: {self.interpolation_kernel}. Supported: {', '.join(INTERPOLATION_KERNELS)}")
        if self.resample_workers < 1 or self.channel_workers < 1:
            raise ValueError("resample_workers and channel_workers must be at least 1.")

    @classmethod
    def from_dict(cls, overrides: Optional[Mapping[str, Any]] = None) -> "AlignmentConfig":
        """Builds a config from a plain mapping, rejecting unknown keys."""
        overrides = dict(overrides or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValueError(f"Unknown configuration keys: {', '.join(unknown)}")
        return cls(**overrides)

    def replace(self, **changes) -> "AlignmentConfig":
        return dataclass_replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
