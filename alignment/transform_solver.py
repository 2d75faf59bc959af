import numpy as np
import cv2
from typing import Iterable, List, Optional, Tuple
from logger.backend_logger import backend_logger
from config import AlignmentConfig
from errors import DegenerateFit, ExcessiveResidual
from alignment.models import CorrespondencePair, Transform, TransformClass, TransformFit

MAD_TO_SIGMA = 1.4826          # Scales a median absolute deviation to a Gaussian sigma
CONDITION_LIMIT = 1e10         # Design matrices worse conditioned than this are degenerate
RANSAC_MAX_ITERS = 2000
RANSAC_CONFIDENCE = 0.999


def ordered_pairs(pairs: Iterable[CorrespondencePair]) -> List[CorrespondencePair]:
    """Deterministic order for a pair set (by reference position, then target position)."""
    return sorted(pairs, key=lambda p: (p.reference.y, p.reference.x, p.target.y, p.target.x))


class TransformSolver:
    """
    Estimates the geometric transformation mapping target-channel coordinates onto
    reference-channel coordinates from matched star pairs.
    Linear least squares wrapped in an iterative outlier-rejecting loop,
    optionally seeded by OpenCV RANSAC.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    @staticmethod
    def _normalization(points: np.ndarray, transform_class: TransformClass) -> np.ndarray:
        """Isotropic conditioning shared by both point sets: centroid to origin, mean distance sqrt(2)."""
        centroid = points.mean(axis=0)
        mean_dist = float(np.mean(np.hypot(*(points - centroid).T)))
        if mean_dist <= np.finfo(np.float64).eps:
            if transform_class is not TransformClass.TRANSLATION:
                raise DegenerateFit(f"All points coincide; a {transform_class.value} transform is undetermined.")
            mean_dist = np.sqrt(2.0)
        s = np.sqrt(2.0) / mean_dist
        return np.array([[s, 0.0, -s * centroid[0]], [0.0, s, -s * centroid[1]], [0.0, 0.0, 1.0]])

    @staticmethod
    def _design(src: np.ndarray, dst: np.ndarray, transform_class: TransformClass) -> Tuple[np.ndarray, np.ndarray]:
        """Builds the linear system A @ p = b; x- and y-equations are interleaved per pair."""
        n = src.shape[0]
        x, y = src[:, 0], src[:, 1]
        u, v = dst[:, 0], dst[:, 1]
        ones, zeros = np.ones(n), np.zeros(n)

        if transform_class is TransformClass.TRANSLATION:
            rows_u = np.column_stack([ones, zeros])
            rows_v = np.column_stack([zeros, ones])
            b = np.column_stack([u - x, v - y]).ravel()
        elif transform_class is TransformClass.SIMILARITY:
            rows_u = np.column_stack([x, -y, ones, zeros])
            rows_v = np.column_stack([y, x, zeros, ones])
            b = np.column_stack([u, v]).ravel()
        elif transform_class is TransformClass.AFFINE:
            rows_u = np.column_stack([x, y, ones, zeros, zeros, zeros])
            rows_v = np.column_stack([zeros, zeros, zeros, x, y, ones])
            b = np.column_stack([u, v]).ravel()
        else:
            rows_u = np.column_stack([x, y, ones, zeros, zeros, zeros, -x * u, -y * u])
            rows_v = np.column_stack([zeros, zeros, zeros, x, y, ones, -x * v, -y * v])
            b = np.column_stack([u, v]).ravel()

        A = np.empty((2 * n, rows_u.shape[1]))
        A[0::2] = rows_u
        A[1::2] = rows_v
        return A, b

    def _fit(self, src: np.ndarray, dst: np.ndarray, transform_class: TransformClass) -> Transform:
        """Plain least-squares fit on the given pairs."""
        if src.shape[0] < transform_class.min_pairs:
            raise DegenerateFit(
                f"{src.shape[0]} pairs cannot constrain a {transform_class.value} transform "
                f"(minimum {transform_class.min_pairs})."
            )

        N = self._normalization(np.vstack([src, dst]), transform_class)
        src_n = src @ N[:2, :2].T + N[:2, 2]
        dst_n = dst @ N[:2, :2].T + N[:2, 2]

        A, b = self._design(src_n, dst_n, transform_class)
        singular_values = np.linalg.svd(A, compute_uv=False)
        if singular_values[-1] <= singular_values[0] / CONDITION_LIMIT:
            raise DegenerateFit(
                f"Point configuration is degenerate for a {transform_class.value} transform "
                f"(collinear or coincident points)."
            )

        params, _, _, _ = np.linalg.lstsq(A, b, rcond=None)
        normalized = Transform.from_parameters(transform_class, params).matrix

        # back to pixel coordinates
        matrix = np.linalg.inv(N) @ normalized @ N
        if not np.all(np.isfinite(matrix)) or abs(matrix[2, 2]) <= np.finfo(np.float64).eps:
            raise DegenerateFit(f"Least-squares {transform_class.value} fit produced a singular matrix.")
        if transform_class is not TransformClass.PROJECTIVE:
            matrix[2] = [0.0, 0.0, 1.0]
        return Transform(transform_class, matrix)

    @staticmethod
    def _residuals(transform: Transform, src: np.ndarray, dst: np.ndarray) -> np.ndarray:
        mapped = transform.apply(src)
        return np.hypot(mapped[:, 0] - dst[:, 0], mapped[:, 1] - dst[:, 1])

    def _ransac_seed(self, src: np.ndarray, dst: np.ndarray, transform_class: TransformClass) -> Optional[np.ndarray]:
        """Inlier mask from OpenCV RANSAC, or None when it cannot be computed for this class."""
        threshold = self.config.robust_threshold
        src32 = src.astype(np.float32)
        dst32 = dst.astype(np.float32)

        if transform_class is TransformClass.SIMILARITY:
            M, mask = cv2.estimateAffinePartial2D(src32, dst32, method=cv2.RANSAC, ransacReprojThreshold=threshold,
                                                  maxIters=RANSAC_MAX_ITERS, confidence=RANSAC_CONFIDENCE)
        elif transform_class is TransformClass.AFFINE:
            M, mask = cv2.estimateAffine2D(src32, dst32, method=cv2.RANSAC, ransacReprojThreshold=threshold,
                                           maxIters=RANSAC_MAX_ITERS, confidence=RANSAC_CONFIDENCE)
        elif transform_class is TransformClass.PROJECTIVE:
            M, mask = cv2.findHomography(src32, dst32, cv2.RANSAC, threshold,
                                         maxIters=RANSAC_MAX_ITERS, confidence=RANSAC_CONFIDENCE)
        else:
            return None

        if M is None or mask is None:
            backend_logger.warning(f"RANSAC could not seed a {transform_class.value} fit. Starting from all pairs.")
            return None
        return mask.ravel().astype(bool)

    def estimate_points(
        self,
        target_points: np.ndarray,
        ref_points: np.ndarray,
        transform_class=None
    ) -> TransformFit:
        """
        Estimates the transform mapping target_points onto ref_points.

        Args:
            target_points (np.ndarray): (N, 2) positions (x, y) in the target channel.
            ref_points (np.ndarray): (N, 2) matching positions in the reference channel.
            transform_class: TransformClass or its name; defaults to the configured class.

        Returns:
            TransformFit: Transform, inlier mask (in input order), residuals and RMS over inliers.

        Raises:
            DegenerateFit: Too few or geometrically degenerate (inlier) pairs.
            ExcessiveResidual: RMS residual over inliers above residual_ceiling.
        """
        cfg = self.config
        tc = TransformClass.parse(transform_class or cfg.transform_class)
        src = np.asarray(target_points, dtype=np.float64).reshape(-1, 2)
        dst = np.asarray(ref_points, dtype=np.float64).reshape(-1, 2)
        if src.shape != dst.shape:
            raise ValueError(f"Point sets differ in size: {src.shape} vs {dst.shape}")
        if src.shape[0] < tc.min_pairs:
            raise DegenerateFit(f"{src.shape[0]} pairs cannot constrain a {tc.value} transform (minimum {tc.min_pairs}).")

        backend_logger.info(f"Estimating {tc.value} transformation from {src.shape[0]} pairs ({cfg.robust_method}).")

        mask = np.ones(src.shape[0], dtype=bool)
        if cfg.robust_method == "ransac":
            seed = self._ransac_seed(src, dst, tc)
            if seed is not None and seed.sum() >= tc.min_pairs:
                mask = seed

        transform = self._fit(src[mask], dst[mask], tc)
        residuals = self._residuals(transform, src, dst)
        iterations = 1

        # First shrink a MAD-scaled cut towards the threshold, then enforce the hard threshold.
        for hard_cut in (False, True):
            for _ in range(cfg.max_iterations):
                if hard_cut:
                    cut = cfg.robust_threshold
                else:
                    sigma = MAD_TO_SIGMA * float(np.median(residuals[mask]))
                    cut = max(cfg.robust_threshold, cfg.clip_sigma * sigma)
                new_mask = residuals <= cut
                if new_mask.sum() < tc.min_pairs:
                    raise DegenerateFit(
                        f"Only {int(new_mask.sum())} pairs within {cut:.3f} px; "
                        f"a {tc.value} transform needs {tc.min_pairs}."
                    )
                if np.array_equal(new_mask, mask):
                    break
                mask = new_mask
                transform = self._fit(src[mask], dst[mask], tc)
                residuals = self._residuals(transform, src, dst)
                iterations += 1

        rms = float(np.sqrt(np.mean(residuals[mask] ** 2)))
        fit = TransformFit(
            transform=transform,
            inlier_mask=mask.copy(),
            residuals=residuals,
            rms_residual=rms,
            iterations=iterations,
        )
        backend_logger.info(
            f"Estimated {transform!r} with {fit.inlier_count} inliers, {fit.outlier_count} outliers, "
            f"RMS {rms:.4f} px after {iterations} iteration(s)."
        )

        if rms > cfg.residual_ceiling:
            raise ExcessiveResidual(
                f"RMS residual {rms:.4f} px exceeds the ceiling of {cfg.residual_ceiling} px.",
                fit=fit
            )
        return fit

    def estimate(self, pairs: Iterable[CorrespondencePair], transform_class=None) -> TransformFit:
        """
        Estimates the transform from a set of correspondences.
        The inlier mask follows ordered_pairs(pairs).
        """
        ordered = ordered_pairs(pairs)
        target_points = np.array([p.target.position for p in ordered], dtype=np.float64).reshape(-1, 2)
        ref_points = np.array([p.reference.position for p in ordered], dtype=np.float64).reshape(-1, 2)
        return self.estimate_points(target_points, ref_points, transform_class)
