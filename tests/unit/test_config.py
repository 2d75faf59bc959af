"""Unit tests for AlignmentConfig and the backend logger."""

import logging

import pytest

from config import AlignmentConfig, DEFAULT_INTERPOLATION_KERNEL, DEFAULT_TRANSFORM_CLASS
from logger.backend_logger import LOGGER_NAME, setup_backend_logger


class TestAlignmentConfig:

    def test_defaults(self):
        config = AlignmentConfig()

        assert config.transform_class == DEFAULT_TRANSFORM_CLASS
        assert config.interpolation_kernel == DEFAULT_INTERPOLATION_KERNEL
        assert config.min_matches is None
        assert config.channel_workers == 2

    def test_from_dict(self):
        config = AlignmentConfig.from_dict({"min_snr": 8.0, "transform_class": "similarity"})

        assert config.min_snr == 8.0
        assert config.transform_class == "similarity"

    def test_from_dict_unknown_key(self):
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            AlignmentConfig.from_dict({"min_snr": 8.0, "sharpen": True})

    def test_replace_returns_copy(self):
        config = AlignmentConfig()

        changed = config.replace(max_detections=10)

        assert changed.max_detections == 10
        assert config.max_detections == 200

    def test_frozen(self):
        with pytest.raises(AttributeError):
            AlignmentConfig().min_snr = 1.0

    def test_to_dict_round_trip(self):
        config = AlignmentConfig(robust_method="ransac", fill_value=-1.0)

        assert AlignmentConfig.from_dict(config.to_dict()) == config

    @pytest.mark.parametrize("overrides", [
        {"min_snr": 0.0},
        {"max_detections": 0},
        {"centroid_radius": 0},
        {"centroid_method": "psf"},
        {"max_residual": 0.0},
        {"min_matches": 0},
        {"transform_class": "polynomial"},
        {"robust_method": "lmeds"},
        {"robust_threshold": -1.0},
        {"max_iterations": 0},
        {"interpolation_kernel": "sinc"},
        {"channel_workers": 0},
    ])
    def test_invalid_values(self, overrides):
        with pytest.raises(ValueError):
            AlignmentConfig(**overrides)


class TestBackendLogger:

    def test_setup_is_idempotent(self):
        logger = setup_backend_logger(level="DEBUG")
        logger = setup_backend_logger(level="DEBUG")

        assert logger.name == LOGGER_NAME
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        setup_backend_logger()

    def test_file_handler(self, tmp_path):
        log_file = tmp_path / "logs" / "ca_reducer.log"

        logger = setup_backend_logger(level="INFO", log_file=str(log_file), console_output=False)
        logger.info("written to file")
        for handler in logger.handlers:
            handler.flush()

        assert "written to file" in log_file.read_text(encoding="utf-8")
        setup_backend_logger()

    def test_no_handlers(self):
        logger = setup_backend_logger(console_output=False, log_file=None)

        assert all(isinstance(h, logging.NullHandler) for h in logger.handlers)
        setup_backend_logger()
