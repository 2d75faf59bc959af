import numpy as np
from typing import Mapping, Sequence
from logger.backend_logger import backend_logger
from utils import ImageUtils
from errors import DimensionMismatch

# Default placement for (reference, warped_a, warped_b): G reference, R and B warped.
DEFAULT_CHANNEL_ORDER = (1, 0, 2)


class ChannelRecombiner:
    """
    Merges single-channel images back into one multi-channel image.
    Never resizes: differing dimensions would silently misalign data.
    """

    @staticmethod
    def _stack(planes: Sequence[np.ndarray]) -> np.ndarray:
        shapes = {p.shape for p in planes}
        if len(shapes) != 1:
            raise DimensionMismatch(f"Channels differ in dimensions: {sorted(shapes)}.")
        dtype = np.result_type(*planes)
        return np.stack(planes, axis=2).astype(dtype, copy=False)

    @staticmethod
    def recombine(
        reference: np.ndarray,
        warped_a: np.ndarray,
        warped_b: np.ndarray,
        channel_order: Sequence[int] = DEFAULT_CHANNEL_ORDER
    ) -> np.ndarray:
        """
        Interleaves the reference and the two warped channels.

        Args:
            reference (np.ndarray): Reference channel.
            warped_a (np.ndarray): First warped channel.
            warped_b (np.ndarray): Second warped channel.
            channel_order (Sequence[int]): Output plane index of each argument, in argument order.

        Returns:
            np.ndarray: (height, width, 3) image.

        Raises:
            DimensionMismatch: The three inputs do not share the same shape.
        """
        order = [int(i) for i in channel_order]
        if sorted(order) != [0, 1, 2]:
            raise ValueError(f"channel_order must be a permutation of (0, 1, 2), got {tuple(channel_order)}")

        inputs = [ImageUtils.as_single_channel(p) for p in (reference, warped_a, warped_b)]
        if len({p.shape for p in inputs}) != 1:
            raise DimensionMismatch(
                f"Cannot recombine channels of different sizes: {[p.shape for p in inputs]}."
            )
        planes = [None, None, None]
        for plane_index, plane in zip(order, inputs):
            planes[plane_index] = plane
        return ChannelRecombiner._stack(planes)

    @staticmethod
    def merge(channels: Mapping[str, np.ndarray], order: str = "RGB") -> np.ndarray:
        """
        Stacks named channels in the given order, e.g. merge({'R': r, 'G': g, 'B': b}, 'RGB').

        Raises:
            DimensionMismatch: The channels do not share the same shape.
        """
        missing = [name for name in order if name not in channels]
        if missing:
            raise ValueError(f"Missing channels for recombination: {', '.join(missing)}")
        planes = [ImageUtils.as_single_channel(channels[name]) for name in order]
        merged = ChannelRecombiner._stack(planes)
        backend_logger.debug(f"Recombined channels {order} into a {merged.shape[1]}x{merged.shape[0]} image.")
        return merged
