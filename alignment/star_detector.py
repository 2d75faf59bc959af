import warnings
import numpy as np
from typing import List, Optional
from photutils.detection import find_peaks
from photutils.utils.exceptions import NoDetectionsWarning
from logger.backend_logger import backend_logger
from utils import ImageUtils
from config import AlignmentConfig
from background.background_estimator import BackgroundEstimator
from alignment.centroid_refiner import CentroidRefiner
from alignment.models import Detection

PEAK_FOOTPRINT = 3            # Local maxima are searched in a 3x3 neighbourhood
CANDIDATE_OVERSAMPLING = 5    # Measure at most this many times max_detections peaks


def sort_detections(detections: List[Detection]) -> List[Detection]:
    """Orders detections by descending flux; ties go to smaller y, then smaller x."""
    return sorted(detections, key=lambda d: (-d.flux, d.y, d.x))


class StarDetector:
    """
    Detects point sources in a single-channel image:
    background/noise estimation, thresholded local maxima, sub-pixel centroids.
    Pure function of (image, config); safe to share between threads.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()
        self.centroid_refiner = CentroidRefiner(self.config.centroid_radius, self.config.centroid_method)

    def detect_stars(self, image: np.ndarray, config: Optional[AlignmentConfig] = None) -> List[Detection]:
        """
        Detects stars in the input image.

        Args:
            image (np.ndarray): Single-channel image, any numeric dtype and value range.
            config (Optional[AlignmentConfig]): Overrides the detector's configuration for this call.

        Returns:
            List[Detection]: At most max_detections detections, brightest first.
                             An empty list is a valid result.
        """
        cfg = config or self.config
        refiner = self.centroid_refiner
        if cfg is not self.config:
            refiner = CentroidRefiner(cfg.centroid_radius, cfg.centroid_method)

        data = ImageUtils.as_single_channel(image)
        backend_logger.info(f"Starting star detection on a {data.shape[1]}x{data.shape[0]} image.")

        model = BackgroundEstimator.estimate(data, cfg.background_window)
        data_sub = np.nan_to_num(model.subtract(data.astype(np.float64)), nan=0.0, posinf=0.0, neginf=0.0)
        threshold = cfg.min_snr * model.noise

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", NoDetectionsWarning)
            peaks = find_peaks(data_sub, threshold, box_size=PEAK_FOOTPRINT, border_width=cfg.centroid_radius)

        if peaks is None or len(peaks) == 0:
            backend_logger.warning(f"No peaks above {cfg.min_snr} sigma found.")
            return []

        x_peaks = np.asarray(peaks["x_peak"], dtype=int)
        y_peaks = np.asarray(peaks["y_peak"], dtype=int)
        peak_values = np.asarray(peaks["peak_value"], dtype=np.float64)
        # brightest peaks first, ties by row then column
        order = np.lexsort((x_peaks, y_peaks, -peak_values))
        candidate_cap = cfg.max_detections * CANDIDATE_OVERSAMPLING
        if len(order) > candidate_cap:
            backend_logger.debug(f"Measuring the {candidate_cap} brightest of {len(order)} peaks.")
            order = order[:candidate_cap]

        accepted: List[Detection] = []
        rejected_saturated = 0
        rejected_narrow = 0
        for idx in order:
            x_peak, y_peak = int(x_peaks[idx]), int(y_peaks[idx])

            if cfg.saturation_level is not None and data[y_peak, x_peak] >= cfg.saturation_level:
                rejected_saturated += 1
                continue

            detection = refiner.measure(data_sub, x_peak, y_peak)
            if detection is None:
                continue
            if detection.radius < cfg.min_star_radius:
                rejected_narrow += 1
                continue
            # plateaus and double peaks of one star: keep the brighter one only
            if any(abs(d.x - detection.x) <= cfg.centroid_radius and abs(d.y - detection.y) <= cfg.centroid_radius
                   for d in accepted):
                continue
            accepted.append(detection)

        if rejected_saturated or rejected_narrow:
            backend_logger.debug(f"Rejected {rejected_saturated} saturated and {rejected_narrow} too narrow peaks.")

        detections = sort_detections(accepted)[:cfg.max_detections]
        backend_logger.info(f"Detected {len(detections)} stars (from {len(peaks)} peaks above {cfg.min_snr} sigma).")
        return detections
