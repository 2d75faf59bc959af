import numpy as np
from typing import FrozenSet, List, Optional, Sequence, Tuple
from sklearn.neighbors import KDTree
from logger.backend_logger import backend_logger
from config import AlignmentConfig, MIN_MATCHES_FLOOR
from errors import InsufficientCorrespondences
from alignment.models import CorrespondencePair, Detection, TransformClass


def required_matches(config: AlignmentConfig) -> int:
    """Minimum number of pairs needed before a fit of the configured transform class is attempted."""
    if config.min_matches is not None:
        return max(config.min_matches, TransformClass.parse(config.transform_class).min_pairs)
    return max(MIN_MATCHES_FLOOR, TransformClass.parse(config.transform_class).min_pairs)


class StarMatcher:
    """
    Matches stars between a reference channel and a target channel in two phases:
    a coarse translation found by voting over pairwise offset vectors, then a greedy
    one-to-one nearest-neighbour assignment (KD-Tree) after applying that translation.
    """

    def __init__(self, config: Optional[AlignmentConfig] = None):
        self.config = config or AlignmentConfig()

    @staticmethod
    def _positions(detections: Sequence[Detection]) -> np.ndarray:
        return np.array([[d.x, d.y] for d in detections], dtype=np.float64).reshape(-1, 2)

    def coarse_offset(
        self,
        ref_stars: Sequence[Detection],
        target_stars: Sequence[Detection]
    ) -> Optional[Tuple[Tuple[float, float], int]]:
        """
        Finds the translation (reference - target) that brings the most star pairs into coincidence.

        Every reference/target pair whose offset vector is shorter than max_initial_offset casts
        a candidate; a candidate scores the number of offset vectors within max_residual of it.

        Returns:
            Optional[Tuple[Tuple[float, float], int]]: ((dx, dy), votes) for the best candidate,
                                                       or None if no pair lies inside the search radius.
        """
        if len(ref_stars) == 0 or len(target_stars) == 0:
            return None

        ref_coords = self._positions(ref_stars)
        target_coords = self._positions(target_stars)

        # all pairwise offsets, row-major over (reference, target)
        offsets = (ref_coords[:, None, :] - target_coords[None, :, :]).reshape(-1, 2)
        lengths = np.hypot(offsets[:, 0], offsets[:, 1])
        in_range = lengths <= self.config.max_initial_offset
        offsets = offsets[in_range]
        lengths = lengths[in_range]
        if len(offsets) == 0:
            return None

        tree = KDTree(offsets)
        votes = tree.query_radius(offsets, r=self.config.max_residual, count_only=True)
        # most votes, then shortest offset, then first in order
        best = int(np.lexsort((np.arange(len(offsets)), lengths, -votes))[0])

        supporters = tree.query_radius(offsets[best:best + 1], r=self.config.max_residual)[0]
        refined = np.median(offsets[supporters], axis=0)
        backend_logger.debug(
            f"Coarse offset ({refined[0]:.3f}, {refined[1]:.3f}) px with {int(votes[best])} votes "
            f"from {len(offsets)} candidate offsets."
        )
        return (float(refined[0]), float(refined[1])), int(votes[best])

    def match_with_offset(
        self,
        ref_stars: Sequence[Detection],
        target_stars: Sequence[Detection]
    ) -> Tuple[FrozenSet[CorrespondencePair], Optional[Tuple[float, float]]]:
        """
        Runs both matching phases.

        Returns:
            Tuple[FrozenSet[CorrespondencePair], Optional[Tuple[float, float]]]:
                The one-to-one pair set (empty when no coarse offset gathers enough votes)
                and the coarse offset used, if any.
        """
        minimum = required_matches(self.config)
        coarse = self.coarse_offset(ref_stars, target_stars)
        if coarse is None:
            backend_logger.warning(f"No star pair lies within {self.config.max_initial_offset} px of each other.")
            return frozenset(), None

        (dx, dy), votes = coarse
        if votes < minimum:
            backend_logger.warning(f"Best coarse offset gathered only {votes} votes; {minimum} required.")
            return frozenset(), (dx, dy)

        target_coords = self._positions(target_stars) + np.array([dx, dy])
        kdtree = KDTree(target_coords)

        # reference stars brightest first; ties as in detection order
        ref_order = sorted(range(len(ref_stars)), key=lambda i: (-ref_stars[i].flux, ref_stars[i].y, ref_stars[i].x))
        ref_coords = self._positions(ref_stars)
        indices, distances = kdtree.query_radius(
            ref_coords[ref_order], r=self.config.max_residual, return_distance=True, sort_results=True
        )

        used_targets = set()
        pairs: List[CorrespondencePair] = []
        for ref_idx, candidates, dists in zip(ref_order, indices, distances):
            for target_idx in candidates:
                if target_idx in used_targets:
                    continue
                used_targets.add(int(target_idx))
                pairs.append(CorrespondencePair(reference=ref_stars[ref_idx], target=target_stars[int(target_idx)]))
                break

        backend_logger.info(
            f"Matched {len(pairs)} of {len(ref_stars)} reference / {len(target_stars)} target stars "
            f"(coarse offset {dx:.2f}, {dy:.2f} px)."
        )
        return frozenset(pairs), (dx, dy)

    def find_pairs(self, ref_stars: Sequence[Detection], target_stars: Sequence[Detection]) -> FrozenSet[CorrespondencePair]:
        """Pairs found by both matching phases; empty if the coarse phase fails."""
        pairs, _ = self.match_with_offset(ref_stars, target_stars)
        return pairs

    def match_stars(self, ref_stars: Sequence[Detection], target_stars: Sequence[Detection]) -> FrozenSet[CorrespondencePair]:
        """
        Like find_pairs, but fails when the pair set cannot constrain the configured transform.

        Raises:
            InsufficientCorrespondences: Fewer pairs than required_matches(config).
        """
        return self.require_pairs(self.find_pairs(ref_stars, target_stars))

    def require_pairs(self, pairs: FrozenSet[CorrespondencePair]) -> FrozenSet[CorrespondencePair]:
        """Returns the pairs unchanged, or raises InsufficientCorrespondences if there are too few."""
        minimum = required_matches(self.config)
        if len(pairs) < minimum:
            raise InsufficientCorrespondences(
                f"Only {len(pairs)} star correspondences found; at least {minimum} are required "
                f"for a {TransformClass.parse(self.config.transform_class).value} transform.",
                found=len(pairs), required=minimum
            )
        return pairs
