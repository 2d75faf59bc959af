from typing import Mapping, Tuple
import numpy as np
from logger.backend_logger import backend_logger
from errors import InputShapeMismatch


class InputValidator:
    """
    Validates the consistency of the channels handed to one alignment job
    (dimensions, layout and sample type) before any processing starts.
    """

    @staticmethod
    def validate_channel(image: np.ndarray, name: str) -> Tuple[int, int]:
        """
        Checks that one channel is a non-empty 2D array of real numbers.

        Returns:
            Tuple[int, int]: (height, width) of the channel.
        """
        arr = np.asarray(image)
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        if arr.ndim != 2:
            raise InputShapeMismatch(f"Channel {name} must be a 2D single-channel image, got shape {arr.shape}.",
                                     channel=name)
        if arr.shape[0] == 0 or arr.shape[1] == 0:
            raise InputShapeMismatch(f"Channel {name} is empty (shape {arr.shape}).", channel=name)
        if not np.issubdtype(arr.dtype, np.number) or np.issubdtype(arr.dtype, np.complexfloating):
            raise InputShapeMismatch(f"Channel {name} has non-real samples (dtype {arr.dtype}).", channel=name)
        return int(arr.shape[0]), int(arr.shape[1])

    @staticmethod
    def validate_channels(
        reference: np.ndarray,
        targets: Mapping[str, np.ndarray],
        reference_name: str = "reference"
    ) -> Tuple[int, int]:
        """
        Validates that the reference and every target channel share dimensions and sample type.

        Args:
            reference (np.ndarray): Reference channel.
            targets (Mapping[str, np.ndarray]): Target channels by name. At least one is required.
            reference_name (str): Name of the reference channel, for messages.

        Returns:
            Tuple[int, int]: The common (height, width).

        Raises:
            InputShapeMismatch: Any inconsistency. Fatal for the whole job.
        """
        if not targets:
            raise InputShapeMismatch("At least one target channel is required.")

        ref_shape = InputValidator.validate_channel(reference, reference_name)
        ref_dtype = np.asarray(reference).dtype

        for name, target in targets.items():
            shape = InputValidator.validate_channel(target, name)
            if shape != ref_shape:
                raise InputShapeMismatch(
                    f"Channel {name} is {shape[1]}x{shape[0]} but reference {reference_name} is "
                    f"{ref_shape[1]}x{ref_shape[0]}.", channel=name
                )
            dtype = np.asarray(target).dtype
            if dtype != ref_dtype:
                raise InputShapeMismatch(
                    f"Channel {name} has sample type {dtype} but reference {reference_name} has {ref_dtype}.",
                    channel=name
                )

        backend_logger.info(
            f"Validated {len(targets)} target channel(s) against reference {reference_name} "
            f"({ref_shape[1]}x{ref_shape[0]}, {ref_dtype})."
        )
        return ref_shape
