import numpy as np
import cv2
from concurrent.futures import ThreadPoolExecutor
from typing import Optional, Tuple
from scipy import ndimage
from logger.backend_logger import backend_logger
from utils import ImageUtils
from config import AlignmentConfig, INTERPOLATION_KERNELS
from alignment.models import Transform

# Spline orders used by scipy.ndimage for each kernel name
SPLINE_ORDERS = {"nearest": 0, "bilinear": 1, "bicubic": 3}
# Source coordinates this far past the border (px) still sample the edge pixel
EDGE_TOLERANCE = 1e-6


class Resampler:
    """
    Warps a target channel onto the reference pixel grid.

    Edge policy: an output pixel whose source coordinate falls outside
    [0, width - 1] x [0, height - 1] (pixel centres on integers) gets fill_value.
    The policy is the same for every kernel.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    @staticmethod
    def source_coordinates(transform: Transform, rows: range, width: int) -> Tuple[np.ndarray, np.ndarray]:
        """Source (x, y) for every output pixel of the given rows, through the inverse mapping."""
        yy, xx = np.meshgrid(np.arange(rows.start, rows.stop, dtype=np.float64),
                             np.arange(width, dtype=np.float64), indexing="ij")
        inverse = transform.inverse().matrix
        w = inverse[2, 0] * xx + inverse[2, 1] * yy + inverse[2, 2]
        src_x = (inverse[0, 0] * xx + inverse[0, 1] * yy + inverse[0, 2]) / w
        src_y = (inverse[1, 0] * xx + inverse[1, 1] * yy + inverse[1, 2]) / w
        return src_x, src_y

    @staticmethod
    def _sample(image: np.ndarray, src_x: np.ndarray, src_y: np.ndarray, kernel: str,
                fill_value: float, coefficients: Optional[np.ndarray]) -> np.ndarray:
        height, width = image.shape
        finite = np.isfinite(src_x) & np.isfinite(src_y)
        outside = ~finite | (src_x < -EDGE_TOLERANCE) | (src_x > width - 1 + EDGE_TOLERANCE) \
            | (src_y < -EDGE_TOLERANCE) | (src_y > height - 1 + EDGE_TOLERANCE)
        # coordinates within EDGE_TOLERANCE of the border are snapped onto it
        src_x = np.clip(np.where(outside, 0.0, src_x), 0.0, width - 1)
        src_y = np.clip(np.where(outside, 0.0, src_y), 0.0, height - 1)

        if kernel == "lanczos4":
            sampled = cv2.remap(image, src_x.astype(np.float32), src_y.astype(np.float32),
                                interpolation=cv2.INTER_LANCZOS4, borderMode=cv2.BORDER_REFLECT_101)
        else:
            coords = np.stack([src_y, src_x])
            source = coefficients if coefficients is not None else image
            sampled = ndimage.map_coordinates(source, coords, order=SPLINE_ORDERS[kernel],
                                              mode="mirror", prefilter=False)

        sampled = np.asarray(sampled, dtype=image.dtype)
        sampled[outside] = fill_value
        return sampled

    def resample(
        self,
        image: np.ndarray,
        transform: Transform,
        output_shape: Tuple[int, int],
        kernel: Optional[str] = None,
        fill_value: Optional[float] = None
    ) -> np.ndarray:
        """
        Resamples the image through the transform.

        Args:
            image (np.ndarray): Single-channel source (target channel) image.
            transform (Transform): Mapping from source coordinates to output (reference) coordinates.
            output_shape (Tuple[int, int]): (height, width) of the output, normally the reference shape.
            kernel (Optional[str]): 'nearest', 'bilinear', 'bicubic' or 'lanczos4'. Defaults to the config.
            fill_value (Optional[float]): Value for pixels mapping outside the source. Defaults to the config.

        Returns:
            np.ndarray: New array of exactly output_shape, same float dtype as the (float-converted) input.
        """
        kernel = kernel or self.config.interpolation_kernel
        if kernel not in INTERPOLATION_KERNELS:
            raise ValueError(f"Unsupported interpolation kernel: {kernel}. Supported: {', '.join(INTERPOLATION_KERNELS)}")
        fill_value = self.config.fill_value if fill_value is None else float(fill_value)

        height, width = int(output_shape[0]), int(output_shape[1])
        if height < 1 or width < 1:
            raise ValueError(f"Output shape must be positive, got {output_shape}")

        source = ImageUtils.as_single_channel(image)
        source = np.ascontiguousarray(np.nan_to_num(source, nan=fill_value, posinf=fill_value, neginf=fill_value))
        backend_logger.debug(f"Resampling {source.shape[1]}x{source.shape[0]} -> {width}x{height} with {kernel} ({transform!r}).")

        # spline coefficients are computed once over the whole source, then shared by all row bands
        coefficients = None
        if kernel in SPLINE_ORDERS and SPLINE_ORDERS[kernel] > 1:
            coefficients = ndimage.spline_filter(source, order=SPLINE_ORDERS[kernel], mode="mirror",
                                                 output=np.float64)

        output = np.empty((height, width), dtype=source.dtype)
        workers = min(self.config.resample_workers, height)

        def _band(rows: range) -> None:
            src_x, src_y = self.source_coordinates(transform, rows, width)
            output[rows.start:rows.stop] = self._sample(source, src_x, src_y, kernel, fill_value, coefficients)

        if workers <= 1:
            _band(range(0, height))
        else:
            bounds = np.linspace(0, height, workers + 1).astype(int)
            bands = [range(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]
            with ThreadPoolExecutor(max_workers=workers) as executor:
                # list() re-raises any worker exception before the output is used
                list(executor.map(_band, bands))

        return output
