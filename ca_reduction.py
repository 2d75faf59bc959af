import numpy as np
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Mapping, Optional, Tuple

from logger.backend_logger import backend_logger
from config import AlignmentConfig, DEFAULT_CHANNEL_NAMES, DEFAULT_REFERENCE_CHANNEL
from utils import ImageUtils
from errors import AlignmentError
from alignment.star_aligner import StarAligner
from alignment.models import ChannelResult
from channels.splitter import ChannelSplitter
from channels.recombiner import ChannelRecombiner
from validation.input_validator import InputValidator

FAILURE_POLICIES = ("raise", "identity")


class ChromaticAberrationReducer:
    """
    Core engine for lateral chromatic aberration reduction.
    Orchestrates channel splitting, per-channel star alignment onto a reference
    channel, and recombination of the registered channels.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()
        self.star_aligner = StarAligner(self.config)
        self.channel_splitter = ChannelSplitter()
        self.channel_recombiner = ChannelRecombiner()
        self.input_validator = InputValidator()

    def _align_one(self, reference: np.ndarray, target: np.ndarray, name: str, reference_detections) -> ChannelResult:
        try:
            alignment = self.star_aligner.align(reference, target, channel=name,
                                                reference_detections=reference_detections)
        except AlignmentError as e:
            return ChannelResult(channel=name, image=None, diagnostics=e.diagnostics, error=e)
        return ChannelResult(channel=name, image=alignment.image, diagnostics=alignment.diagnostics,
                             alignment=alignment)

    def align_channels(
        self,
        reference: np.ndarray,
        targets: Mapping[str, np.ndarray],
        reference_name: str = DEFAULT_REFERENCE_CHANNEL
    ) -> Dict[str, ChannelResult]:
        """
        Aligns every target channel onto the reference channel.

        Args:
            reference (np.ndarray): Reference channel, shared read-only by all jobs.
            targets (Mapping[str, np.ndarray]): Channels to align, by name.
            reference_name (str): Name of the reference channel, for logs.

        Returns:
            Dict[str, ChannelResult]: One result per target, in the order of targets.
                                      A failed channel carries its error and diagnostics.

        Raises:
            InputShapeMismatch: Inconsistent channel dimensions or sample types. Nothing is aligned.
        """
        self.input_validator.validate_channels(reference, targets, reference_name)
        reference = ImageUtils.as_single_channel(reference)

        backend_logger.info(f"Detecting stars in reference channel {reference_name}...")
        reference_detections = self.star_aligner.detect_reference(reference)

        workers = max(1, min(self.config.channel_workers, len(targets)))
        backend_logger.info(f"Aligning {len(targets)} channel(s) onto {reference_name} with {workers} worker(s).")
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                name: executor.submit(self._align_one, reference, target, name, reference_detections)
                for name, target in targets.items()
            }
            # result() re-raises anything that is not an AlignmentError
            results = {name: future.result() for name, future in futures.items()}

        failed = [name for name, result in results.items() if not result.succeeded]
        if failed:
            backend_logger.warning(f"Alignment failed for channel(s): {', '.join(failed)}")
        else:
            backend_logger.info("All channels aligned.")
        return results

    def reduce(
        self,
        rgb: np.ndarray,
        reference_channel: str = DEFAULT_REFERENCE_CHANNEL,
        channel_names: str = DEFAULT_CHANNEL_NAMES,
        on_failure: str = "raise"
    ) -> Tuple[np.ndarray, Dict[str, ChannelResult]]:
        """
        Registers every channel of a colour image onto the reference channel.

        Args:
            rgb (np.ndarray): (height, width, channels) image. Not modified.
            reference_channel (str): Channel that stays fixed.
            channel_names (str): One name per plane, e.g. 'RGB'.
            on_failure (str): 'raise' re-raises the first failed channel's error (in channel order);
                              'identity' keeps that channel unwarped and logs a warning.

        Returns:
            Tuple[np.ndarray, Dict[str, ChannelResult]]: The recombined float image (planes in
                the input plane order) and the per-channel results of the non-reference channels.
        """
        if on_failure not in FAILURE_POLICIES:
            raise ValueError(f"Unsupported failure policy: {on_failure}. Supported: {', '.join(FAILURE_POLICIES)}")
        if reference_channel not in list(channel_names):
            raise ValueError(f"Reference channel {reference_channel} is not one of {channel_names!r}")

        backend_logger.info(f"Starting chromatic aberration reduction (reference {reference_channel}).")
        channels = self.channel_splitter.split(rgb, channel_names)
        reference = channels[reference_channel]
        targets = {name: plane for name, plane in channels.items() if name != reference_channel}

        results = self.align_channels(reference, targets, reference_channel)

        registered = {reference_channel: reference}
        for name in channel_names:
            if name == reference_channel:
                continue
            result = results[name]
            if result.succeeded:
                registered[name] = result.image
            elif on_failure == "raise":
                backend_logger.error(f"Chromatic aberration reduction aborted on channel {name}: {result.error}")
                raise result.error
            else:
                backend_logger.warning(f"Keeping channel {name} unaligned: {result.error}")
                registered[name] = channels[name]

        output = self.channel_recombiner.merge(registered, channel_names)
        backend_logger.info("Chromatic aberration reduction completed.")
        return output, results
