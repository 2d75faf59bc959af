import numpy as np
from typing import List, Optional, Sequence
from logger.backend_logger import backend_logger
from utils import ImageUtils
from config import AlignmentConfig
from validation.input_validator import InputValidator

from errors import AlignmentError, InsufficientDetections
from alignment.models import AlignmentDiagnostics, ChannelAlignment, Detection, TransformClass
from alignment.star_detector import StarDetector
from alignment.matcher import StarMatcher, required_matches
from alignment.transform_solver import TransformSolver
from alignment.resampler import Resampler


class StarAligner:
    """
    Aligns one target channel onto a reference channel:
    1. Star detection with sub-pixel centroids.
    2. Two-phase star matching (coarse offset vote, then one-to-one nearest neighbour).
    3. Robust transform estimation.
    4. Resampling onto the reference pixel grid.
    Holds no per-job state, so one instance can serve several channels concurrently.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()
        self.star_detector = StarDetector(self.config)
        self.star_matcher = StarMatcher(self.config)
        self.transform_solver = TransformSolver(self.config)
        self.resampler = Resampler(self.config)

    def detect_reference(self, reference: np.ndarray) -> List[Detection]:
        """Detection pass on the reference channel, shareable read-only across jobs."""
        return self.star_detector.detect_stars(reference)

    def _check_detections(self, detections: Sequence[Detection], channel: str, role: str,
                          diagnostics: AlignmentDiagnostics) -> None:
        minimum = required_matches(self.config)
        if len(detections) < minimum:
            raise InsufficientDetections(
                f"Only {len(detections)} stars detected in {role} channel {channel}; at least {minimum} are required.",
                found=len(detections), required=minimum, channel=channel, diagnostics=diagnostics
            )

    def align(
        self,
        reference: np.ndarray,
        target: np.ndarray,
        channel: str = "target",
        reference_detections: Optional[Sequence[Detection]] = None
    ) -> ChannelAlignment:
        """
        Runs one alignment job.

        Args:
            reference (np.ndarray): Reference channel (read only).
            target (np.ndarray): Channel to align.
            channel (str): Name of the target channel, used in logs and diagnostics.
            reference_detections (Optional[Sequence[Detection]]): Precomputed reference detections.

        Returns:
            ChannelAlignment: Warped image with the reference's shape, the fit, pairs and diagnostics.

        Raises:
            InputShapeMismatch, InsufficientDetections, InsufficientCorrespondences,
            DegenerateFit, ExcessiveResidual: with channel and diagnostics attached.
        """
        InputValidator.validate_channels(reference, {channel: target})
        reference = ImageUtils.as_single_channel(reference)
        target = ImageUtils.as_single_channel(target)
        transform_class = TransformClass.parse(self.config.transform_class)
        diagnostics = AlignmentDiagnostics(channel=channel, transform_class=transform_class.value)

        backend_logger.info(f"Aligning channel {channel} ({transform_class.value} model).")
        try:
            if reference_detections is None:
                reference_detections = self.detect_reference(reference)
            diagnostics.reference_detections = len(reference_detections)
            self._check_detections(reference_detections, channel, "reference", diagnostics)

            target_detections = self.star_detector.detect_stars(target)
            diagnostics.target_detections = len(target_detections)
            self._check_detections(target_detections, channel, "target", diagnostics)

            pairs, offset = self.star_matcher.match_with_offset(reference_detections, target_detections)
            diagnostics.pair_count = len(pairs)
            diagnostics.coarse_offset = offset
            self.star_matcher.require_pairs(pairs)

            fit = self.transform_solver.estimate(pairs, transform_class)
            diagnostics.parameters = fit.transform.parameters
            diagnostics.inlier_count = fit.inlier_count
            diagnostics.outlier_count = fit.outlier_count
            diagnostics.rms_residual = fit.rms_residual
        except AlignmentError as e:
            fit = getattr(e, "fit", None)
            if fit is not None:
                diagnostics.parameters = fit.transform.parameters
                diagnostics.inlier_count = fit.inlier_count
                diagnostics.outlier_count = fit.outlier_count
                diagnostics.rms_residual = fit.rms_residual
            backend_logger.warning(f"Alignment of channel {channel} failed: {e}")
            e.with_context(channel=channel, diagnostics=diagnostics)
            raise

        warped = self.resampler.resample(target, fit.transform, reference.shape)
        backend_logger.info(f"Channel {channel} aligned: {diagnostics.to_dict()}")
        return ChannelAlignment(channel=channel, image=warped, fit=fit, pairs=pairs, diagnostics=diagnostics)
