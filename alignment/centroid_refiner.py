import numpy as np
from scipy.optimize import curve_fit
from typing import Optional, Tuple
from logger.backend_logger import backend_logger
from alignment.models import Detection

GAUSSIAN_MAXFEV = 2000        # Function evaluation budget for one Gaussian fit
MIN_GAUSSIAN_SIGMA = 0.3      # Lower bound (px) of the fitted Gaussian width


class CentroidRefiner:
    """
    Measures sub-pixel star positions on a background-subtracted image.
    The default is a flux-weighted first moment in a square window around each
    local maximum; a 2D Gaussian fit can optionally refine that estimate.
    """

    def __init__(self, radius: int, method: str = "moment"):
        self.radius = int(radius)
        self.method = method

    @staticmethod
    def _gaussian_2d(xy, amplitude, xo, yo, sigma_x, sigma_y, theta, offset):
        """
        2D Gaussian function for fitting.
        xy: tuple (x, y) coordinates
        amplitude: peak value of the Gaussian
        xo, yo: centroid coordinates
        sigma_x, sigma_y: standard deviations along x and y axes
        theta: rotation angle of the Gaussian (in radians)
        offset: residual background offset
        """
        x, y = xy
        a = (np.cos(theta)**2) / (2 * sigma_x**2) + (np.sin(theta)**2) / (2 * sigma_y**2)
        b = -(np.sin(2 * theta)) / (4 * sigma_x**2) + (np.sin(2 * theta)) / (4 * sigma_y**2)
        c = (np.sin(theta)**2) / (2 * sigma_x**2) + (np.cos(theta)**2) / (2 * sigma_y**2)
        g = offset + amplitude * np.exp(-(a * ((x - xo)**2) + 2 * b * (x - xo) * (y - yo) + c * ((y - yo)**2)))
        return g.ravel()

    def _stamp(self, data: np.ndarray, x_peak: int, y_peak: int) -> Optional[np.ndarray]:
        r = self.radius
        height, width = data.shape
        if x_peak - r < 0 or y_peak - r < 0 or x_peak + r >= width or y_peak + r >= height:
            return None  # window touches the frame edge
        return data[y_peak - r:y_peak + r + 1, x_peak - r:x_peak + r + 1]

    def _moments(self, stamp: np.ndarray) -> Optional[Tuple[float, float, float, float]]:
        """Returns (dx, dy, flux, radius) relative to the stamp centre, or None if unusable."""
        r = self.radius
        offsets = np.arange(-r, r + 1, dtype=np.float64)
        dy, dx = np.meshgrid(offsets, offsets, indexing="ij")

        flux = float(stamp.sum())
        if not np.isfinite(flux) or flux <= 0:
            return None
        cx = float((stamp * dx).sum() / flux)
        cy = float((stamp * dy).sum() / flux)
        if not (np.isfinite(cx) and np.isfinite(cy)) or abs(cx) > r or abs(cy) > r:
            return None

        positive = np.clip(stamp, 0.0, None)
        total = float(positive.sum())
        radius = float(np.sqrt((((dx - cx)**2 + (dy - cy)**2) * positive).sum() / total)) if total > 0 else 0.0
        return cx, cy, flux, radius

    def _fit_gaussian(self, stamp: np.ndarray, cx: float, cy: float, radius: float) -> Optional[Tuple[float, float]]:
        """
        Refines a moment centroid with a 2D Gaussian fit.
        Returns (dx, dy) relative to the stamp centre, or None when the fit fails or leaves the window.
        """
        r = self.radius
        size = stamp.shape[0]
        local = np.arange(size, dtype=np.float64)
        X, Y = np.meshgrid(local, local)

        sigma_guess = max(radius / np.sqrt(2.0), MIN_GAUSSIAN_SIGMA * 2)
        amplitude_guess = float(stamp.max())
        p0 = [amplitude_guess, cx + r, cy + r, sigma_guess, sigma_guess, 0.0, 0.0]
        lower_bounds = [0.0, 0.0, 0.0, MIN_GAUSSIAN_SIGMA, MIN_GAUSSIAN_SIGMA, -np.pi / 2, -np.inf]
        upper_bounds = [np.inf, size - 1, size - 1, float(size), float(size), np.pi / 2, np.inf]

        try:
            popt, _ = curve_fit(
                CentroidRefiner._gaussian_2d, (X.ravel(), Y.ravel()), stamp.ravel(),
                p0=p0, bounds=(lower_bounds, upper_bounds), maxfev=GAUSSIAN_MAXFEV
            )
        except (RuntimeError, ValueError) as e:
            # Expected for noisy or blended stars; the moment centroid is kept.
            backend_logger.debug(f"Gaussian centroid fit failed: {e}")
            return None

        amplitude, xo_fit, yo_fit = popt[0], popt[1], popt[2]
        if amplitude <= 0 or not (np.isfinite(xo_fit) and np.isfinite(yo_fit)):
            return None
        return float(xo_fit - r), float(yo_fit - r)

    def measure(self, data: np.ndarray, x_peak: int, y_peak: int) -> Optional[Detection]:
        """
        Measures one star around an integer local maximum.

        Args:
            data (np.ndarray): Background-subtracted single-channel image.
            x_peak (int): Column of the local maximum.
            y_peak (int): Row of the local maximum.

        Returns:
            Optional[Detection]: The detection, or None if the window touches the edge
                                 or the stamp carries no positive flux.
        """
        stamp = self._stamp(data, x_peak, y_peak)
        if stamp is None:
            return None
        stamp = np.asarray(stamp, dtype=np.float64)

        moments = self._moments(stamp)
        if moments is None:
            return None
        cx, cy, flux, radius = moments

        if self.method == "gaussian":
            refined = self._fit_gaussian(stamp, cx, cy, radius)
            if refined is not None:
                cx, cy = refined

        return Detection(
            x=float(x_peak + cx),
            y=float(y_peak + cy),
            flux=flux,
            radius=radius,
            peak=float(stamp[self.radius, self.radius]),
        )
