import numpy as np
from typing import Dict
from logger.backend_logger import backend_logger
from utils import ImageUtils
from errors import InputShapeMismatch


class ChannelSplitter:
    """
    Decomposes a multi-channel image (height, width, channels) into
    independent single-channel images.
    """

    @staticmethod
    def split(image: np.ndarray, channel_names: str = "RGB") -> Dict[str, np.ndarray]:
        """
        Splits an image into named channels.

        Args:
            image (np.ndarray): Multi-channel image, channels on the last axis.
            channel_names (str): One name per channel, in plane order (e.g. 'RGB').

        Returns:
            Dict[str, np.ndarray]: Contiguous float copies keyed by channel name, in plane order.

        Raises:
            InputShapeMismatch: The image is not (h, w, len(channel_names)).
        """
        names = list(channel_names)
        if len(set(names)) != len(names):
            raise ValueError(f"Channel names must be unique, got {channel_names!r}")

        arr = ImageUtils.as_float_image(image)
        if arr.ndim != 3 or arr.shape[2] != len(names):
            raise InputShapeMismatch(
                f"Image must have {len(names)} channels ({''.join(names)}), got shape {arr.shape}."
            )

        channels = {name: np.ascontiguousarray(arr[:, :, idx]).copy() for idx, name in enumerate(names)}
        backend_logger.debug(f"Split {arr.shape[1]}x{arr.shape[0]} image into channels {', '.join(names)}.")
        return channels
