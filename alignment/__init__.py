# Channel registration core: detect -> match -> fit -> resample.

# Import the main aligner class (orchestrates one target channel)
from .star_aligner import StarAligner

# Import the modular components
from .star_detector import StarDetector
from .centroid_refiner import CentroidRefiner
from .matcher import StarMatcher
from .transform_solver import TransformSolver
from .resampler import Resampler

from .models import (
    AlignmentDiagnostics,
    ChannelAlignment,
    ChannelResult,
    CorrespondencePair,
    Detection,
    Transform,
    TransformClass,
    TransformFit,
)
from errors import (
    AlignmentError,
    DegenerateFit,
    DimensionMismatch,
    ExcessiveResidual,
    InputShapeMismatch,
    InsufficientCorrespondences,
    InsufficientDetections,
)
