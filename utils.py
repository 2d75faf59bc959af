import numpy as np
from typing import Tuple


class ImageUtils:
    """
    A collection of static utility methods for common image processing tasks.
    These functions operate on NumPy arrays representing image data.
    """

    @staticmethod
    def as_float_image(img: np.ndarray) -> np.ndarray:
        """
        Returns the image as a floating-point array without rescaling.
        Sample values are kept as they are: detection thresholds come from local
        statistics, so nothing downstream assumes a 0-1 range.

        Args:
            img (np.ndarray): The input image array. Any numeric dtype.

        Returns:
            np.ndarray: float32/float64 input unchanged (no copy); anything else as float32.
        """
        arr = np.asarray(img)
        if arr.dtype == np.float32 or arr.dtype == np.float64:
            return arr
        if not np.issubdtype(arr.dtype, np.number) or np.issubdtype(arr.dtype, np.complexfloating):
            raise TypeError(f"Image samples must be real numbers, got dtype {arr.dtype}")
        return arr.astype(np.float32)

    @staticmethod
    def as_single_channel(img: np.ndarray) -> np.ndarray:
        """
        Validates that the input is a single-channel 2D image and returns it as float.
        A trailing channel axis of length 1 is dropped.
        """
        arr = ImageUtils.as_float_image(img)
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        if arr.ndim != 2:
            raise ValueError(f"Expected a single-channel 2D image, got shape {arr.shape}")
        return arr

    @staticmethod
    def dimensions(img: np.ndarray) -> Tuple[int, int]:
        """Returns (height, width) of an image array."""
        return int(img.shape[0]), int(img.shape[1])
