from typing import Optional


class AlignmentError(Exception):
    """
    Base class for every failure of the channel registration core.
    Carries the channel it belongs to (when known) and the diagnostics
    gathered up to the point of failure, so callers can log or fall back.
    """

    def __init__(self, message: str, channel: Optional[str] = None, diagnostics=None):
        super().__init__(message)
        self.channel = channel
        self.diagnostics = diagnostics

    def with_context(self, channel: Optional[str] = None, diagnostics=None) -> "AlignmentError":
        """Attaches channel/diagnostics if they were not known where the error was raised."""
        if channel is not None and self.channel is None:
            self.channel = channel
        if diagnostics is not None:
            self.diagnostics = diagnostics
        return self


class InputShapeMismatch(AlignmentError, ValueError):
    """Channel dimensions or layout are inconsistent. Aborts the whole job."""


class InsufficientDetections(AlignmentError):
    """Too few stars found in a channel to attempt matching."""

    def __init__(self, message: str, found: int = 0, required: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.found = found
        self.required = required


class InsufficientCorrespondences(AlignmentError):
    """Too few reference/target star pairs to constrain the transform."""

    def __init__(self, message: str, found: int = 0, required: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.found = found
        self.required = required


class DegenerateFit(AlignmentError):
    """Inlier pairs are too few or geometrically degenerate for the transform class."""


class ExcessiveResidual(AlignmentError):
    """The best achievable RMS residual is above the configured ceiling."""

    def __init__(self, message: str, fit=None, **kwargs):
        super().__init__(message, **kwargs)
        self.fit = fit


class DimensionMismatch(AlignmentError, ValueError):
    """Channels handed to the recombiner do not share the same dimensions."""
