"""End-to-end tests: synthetic star fields through alignment and RGB reduction."""

import pytest
import numpy as np

from config import AlignmentConfig
from errors import InputShapeMismatch, InsufficientCorrespondences, InsufficientDetections
from alignment.star_aligner import StarAligner
from ca_reduction import ChromaticAberrationReducer

SHIFT = (1.37, -0.82)


@pytest.fixture(scope="module")
def shifted_pair(render_field):
    """512x512 fields with 50 stars; the target -> reference translation is SHIFT."""
    reference, _ = render_field((512, 512), 50, seed=42, noise_seed=1)
    target, _ = render_field((512, 512), 50, shift=SHIFT, seed=42, noise_seed=2)
    return reference, target


class TestStarAligner:
    """Alignment scenarios on a single target channel."""

    def test_translation_recovery(self, shifted_pair):
        """Test that a sub-pixel shift is recovered to within 0.05 px."""
        reference, target = shifted_pair

        alignment = StarAligner(AlignmentConfig(transform_class="translation")).align(reference, target, "R")

        tx, ty = alignment.transform.translation
        assert tx == pytest.approx(SHIFT[0], abs=0.05)
        assert ty == pytest.approx(SHIFT[1], abs=0.05)
        assert alignment.fit.outlier_count < 0.05 * len(alignment.pairs)
        assert alignment.diagnostics.pair_count >= 45
        assert alignment.image.shape == reference.shape

    def test_affine_recovery(self, shifted_pair):
        """Test that the default affine model maps the field interior like the true shift."""
        reference, target = shifted_pair

        alignment = StarAligner().align(reference, target, "R")

        grid = np.array([[x, y] for x in (128.0, 256.0, 384.0) for y in (128.0, 256.0, 384.0)])
        mapped = alignment.transform.apply(grid)
        np.testing.assert_allclose(mapped - grid, np.tile(SHIFT, (len(grid), 1)), atol=0.05)
        assert alignment.fit.outlier_count < 0.05 * alignment.fit.inlier_mask.size
        assert alignment.diagnostics.rms_residual < 0.2

    def test_warped_target_matches_reference(self, shifted_pair):
        """Test that the warped target lines up with the reference star by star."""
        reference, target = shifted_pair
        aligner = StarAligner(AlignmentConfig(transform_class="translation"))

        alignment = aligner.align(reference, target, "R")
        warped_stars = aligner.star_detector.detect_stars(alignment.image)
        reference_stars = aligner.detect_reference(reference)

        pairs = aligner.star_matcher.match_stars(reference_stars, warped_stars)
        offsets = np.array([[p.reference.x - p.target.x, p.reference.y - p.target.y] for p in pairs])
        assert np.all(np.abs(np.median(offsets, axis=0)) < 0.05)

    def test_zero_offset_is_identity(self, shifted_pair):
        """Test that a channel aligned onto itself gives the identity with no residual."""
        reference, _ = shifted_pair

        alignment = StarAligner().align(reference, reference.copy(), "G")

        assert alignment.transform.is_identity(1e-6)
        assert alignment.fit.rms_residual == pytest.approx(0.0, abs=1e-9)
        np.testing.assert_allclose(alignment.image, reference, atol=1e-6)

    def test_integer_channels(self, shifted_pair):
        """Test that unnormalised 16-bit channels align like float ones."""
        reference, target = shifted_pair
        reference16 = np.round(reference * 20000).astype(np.uint16)
        target16 = np.round(target * 20000).astype(np.uint16)

        alignment = StarAligner(AlignmentConfig(transform_class="translation")).align(reference16, target16, "R")

        tx, ty = alignment.transform.translation
        assert tx == pytest.approx(SHIFT[0], abs=0.05)
        assert ty == pytest.approx(SHIFT[1], abs=0.05)
        assert alignment.diagnostics.reference_detections >= 45

    def test_gaussian_centroids(self, shifted_pair):
        """Test the Gaussian-fit centroid method through a full alignment."""
        reference, target = shifted_pair
        config = AlignmentConfig(transform_class="translation", centroid_method="gaussian")

        alignment = StarAligner(config).align(reference, target, "R")

        tx, ty = alignment.transform.translation
        assert tx == pytest.approx(SHIFT[0], abs=0.05)
        assert ty == pytest.approx(SHIFT[1], abs=0.05)
        assert alignment.fit.outlier_count < 0.05 * len(alignment.pairs)

    def test_precomputed_reference_detections(self, shifted_pair):
        reference, target = shifted_pair
        aligner = StarAligner(AlignmentConfig(transform_class="translation"))
        reference_detections = aligner.detect_reference(reference)

        shared = aligner.align(reference, target, "R", reference_detections=reference_detections)
        fresh = aligner.align(reference, target, "R")

        assert shared.transform.parameters == pytest.approx(fresh.transform.parameters)

    def test_too_few_stars_fails_before_fitting(self, stars_renderer):
        """Test that a field with fewer than 3 stars stops before matching or fitting."""
        positions = np.array([[60.0, 70.0], [180.0, 150.0]])
        reference = stars_renderer(positions, [0.8, 0.6], (256, 256), noise_seed=3)
        target = stars_renderer(positions - 1.0, [0.8, 0.6], (256, 256), noise_seed=4)

        with pytest.raises(InsufficientDetections) as exc_info:
            StarAligner().align(reference, target, "B")

        error = exc_info.value
        assert error.channel == "B"
        assert error.found == 2
        assert error.required == 3
        assert error.diagnostics.pair_count == 0
        assert error.diagnostics.parameters is None

    def test_unrelated_fields_fail(self, render_field):
        """Test that fields with no common stars produce no correspondences."""
        reference, _ = render_field((256, 256), 20, seed=1, noise_seed=5)
        target, _ = render_field((256, 256), 20, seed=2, noise_seed=6)
        config = AlignmentConfig(max_initial_offset=3.0, max_residual=0.5)

        with pytest.raises((InsufficientCorrespondences, InsufficientDetections)) as exc_info:
            StarAligner(config).align(reference, target, "R")

        assert exc_info.value.diagnostics.parameters is None

    def test_shape_mismatch(self):
        with pytest.raises(InputShapeMismatch):
            StarAligner().align(np.zeros((64, 64)), np.zeros((64, 65)), "R")


class TestChromaticAberrationReducer:
    """Full RGB reduction scenarios."""

    @pytest.fixture
    def rgb_field(self, render_field):
        """256x256 RGB field: G is the reference, R and B are displaced in opposite directions."""
        green, _ = render_field((256, 256), 30, seed=8, noise_seed=10)
        red, _ = render_field((256, 256), 30, shift=(0.6, -0.4), seed=8, noise_seed=11)
        blue, _ = render_field((256, 256), 30, shift=(-0.8, 0.5), seed=8, noise_seed=12)
        return np.dstack([red, green, blue])

    def test_reduce_rgb(self, rgb_field):
        original = rgb_field.copy()
        reducer = ChromaticAberrationReducer(AlignmentConfig(transform_class="translation"))

        output, results = reducer.reduce(rgb_field)

        assert output.shape == rgb_field.shape
        assert set(results) == {"R", "B"}
        assert results["R"].succeeded and results["B"].succeeded
        assert results["R"].alignment.transform.translation == pytest.approx((0.6, -0.4), abs=0.05)
        assert results["B"].alignment.transform.translation == pytest.approx((-0.8, 0.5), abs=0.05)
        np.testing.assert_array_equal(output[:, :, 1], rgb_field[:, :, 1])
        np.testing.assert_array_equal(rgb_field, original)

    def test_reduce_single_worker(self, rgb_field):
        """Test that serial channel processing gives the same result as the thread pool."""
        config = AlignmentConfig(transform_class="translation")

        parallel, _ = ChromaticAberrationReducer(config).reduce(rgb_field)
        serial, _ = ChromaticAberrationReducer(config.replace(channel_workers=1)).reduce(rgb_field)

        np.testing.assert_array_equal(parallel, serial)

    def test_failed_channel_raises(self, rgb_field):
        rgb_field[:, :, 2] = 0.05
        reducer = ChromaticAberrationReducer()

        with pytest.raises(InsufficientDetections) as exc_info:
            reducer.reduce(rgb_field)

        assert exc_info.value.channel == "B"

    def test_failed_channel_identity(self, rgb_field):
        """Test that the identity policy keeps a failed channel unwarped."""
        rgb_field[:, :, 2] = 0.05
        reducer = ChromaticAberrationReducer()

        output, results = reducer.reduce(rgb_field, on_failure="identity")

        assert results["R"].succeeded
        assert not results["B"].succeeded
        assert isinstance(results["B"].error, InsufficientDetections)
        np.testing.assert_array_equal(output[:, :, 2], rgb_field[:, :, 2])

    def test_align_channels_isolates_failures(self, rgb_field):
        """Test that one failing channel does not affect the others."""
        reducer = ChromaticAberrationReducer()
        blank = np.full(rgb_field.shape[:2], 0.05)

        results = reducer.align_channels(rgb_field[:, :, 1], {"R": rgb_field[:, :, 0], "B": blank})

        assert results["R"].succeeded
        assert results["B"].error is not None
        assert results["B"].diagnostics.channel == "B"

    def test_align_channels_shape_mismatch_is_fatal(self, rgb_field):
        reducer = ChromaticAberrationReducer()

        with pytest.raises(InputShapeMismatch):
            reducer.align_channels(rgb_field[:, :, 1], {"R": rgb_field[:, :, 0], "B": rgb_field[:-1, :, 2]})

    def test_aligned_channels_keep_frame_edges(self, render_field):
        """Test that channels already in register come back unchanged, border rows and columns included."""
        plane, _ = render_field((256, 256), 30, seed=8, noise_seed=10)
        rgb = np.dstack([plane, plane, plane])

        output, results = ChromaticAberrationReducer().reduce(rgb)

        assert results["R"].alignment.transform.is_identity(1e-6)
        np.testing.assert_allclose(output, rgb, atol=1e-6)

    def test_reference_channel_choice(self, rgb_field):
        """Test aligning onto R instead of G."""
        reducer = ChromaticAberrationReducer(AlignmentConfig(transform_class="translation"))

        output, results = reducer.reduce(rgb_field, reference_channel="R")

        assert set(results) == {"G", "B"}
        assert results["G"].alignment.transform.translation == pytest.approx((-0.6, 0.4), abs=0.05)
        np.testing.assert_array_equal(output[:, :, 0], rgb_field[:, :, 0])

    def test_invalid_arguments(self, rgb_field):
        reducer = ChromaticAberrationReducer()

        with pytest.raises(ValueError):
            reducer.reduce(rgb_field, on_failure="ignore")
        with pytest.raises(ValueError):
            reducer.reduce(rgb_field, reference_channel="L")
