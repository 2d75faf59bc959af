import numpy as np
from dataclasses import dataclass
from typing import Optional
from astropy.stats import SigmaClip
from photutils.background import Background2D, MedianBackground, MADStdBackgroundRMS
from logger.backend_logger import backend_logger

BACKGROUND_CLIP_SIGMA = 3.0   # Sigma clipping applied inside each mesh box
MESH_FILTER_SIZE = 3          # Median filter over the low-resolution mesh (boxes)
NOISE_FLOOR_FRACTION = 1e-6   # Noise never drops below this fraction of the peak |value|


@dataclass(frozen=True, eq=False)
class BackgroundModel:
    """Smooth background and per-pixel noise estimated for one channel."""
    background: np.ndarray
    noise: np.ndarray

    def subtract(self, image: np.ndarray) -> np.ndarray:
        return image - self.background


class BackgroundEstimator:
    """
    Estimates the smooth sky background and noise floor of a single-channel image
    with a block-wise sigma-clipped median / MAD estimator (photutils Background2D).
    """

    @staticmethod
    def estimate(image: np.ndarray, window: int, mask: Optional[np.ndarray] = None) -> BackgroundModel:
        """
        Estimates background and noise maps with the same shape as the image.

        Args:
            image (np.ndarray): Single-channel float image, any value range.
            window (int): Box size in pixels of the background mesh. Clamped to the image size.
            mask (Optional[np.ndarray]): Pixels to ignore (True = ignored). Non-finite pixels are always ignored.

        Returns:
            BackgroundModel: Background and noise maps.
        """
        data = np.asarray(image, dtype=np.float64)
        height, width = data.shape
        invalid = ~np.isfinite(data)
        if mask is not None:
            invalid |= np.asarray(mask, dtype=bool)

        if invalid.all():
            backend_logger.warning("No valid pixels for background estimation. Using a zero background.")
            zeros = np.zeros_like(data)
            return BackgroundModel(background=zeros, noise=np.ones_like(data))

        box_y = max(1, min(int(window), height))
        box_x = max(1, min(int(window), width))
        n_boxes_y = -(-height // box_y)
        n_boxes_x = -(-width // box_x)
        filter_size = (
            MESH_FILTER_SIZE if n_boxes_y >= MESH_FILTER_SIZE else 1,
            MESH_FILTER_SIZE if n_boxes_x >= MESH_FILTER_SIZE else 1,
        )

        bkg = Background2D(
            data,
            (box_y, box_x),
            mask=invalid if invalid.any() else None,
            filter_size=filter_size,
            sigma_clip=SigmaClip(sigma=BACKGROUND_CLIP_SIGMA),
            bkg_estimator=MedianBackground(),
            bkg_rms_estimator=MADStdBackgroundRMS(),
        )
        background = np.asarray(bkg.background, dtype=np.float64)
        noise = np.asarray(bkg.background_rms, dtype=np.float64)

        finite_values = np.abs(data[~invalid])
        floor = max(float(finite_values.max()) * NOISE_FLOOR_FRACTION, np.finfo(np.float32).tiny)
        noise = np.where(np.isfinite(noise), np.maximum(noise, floor), floor)
        background = np.where(np.isfinite(background), background, float(np.median(data[~invalid])))

        backend_logger.debug(
            f"Background estimated with {n_boxes_y}x{n_boxes_x} mesh of {box_y}x{box_x} px boxes: "
            f"median level {bkg.background_median:.6g}, median noise {bkg.background_rms_median:.6g}."
        )
        return BackgroundModel(background=background, noise=noise)
