"""Unit tests for the logging helpers."""

import pytest
from loguru import logger

from meegflow.utils.logging import configure_logger, message, resolve_level, run_context


@pytest.fixture
def captured():
    """Messages formatted with their run prefix."""
    lines = []
    configure_logger("VALUES")
    logger.add(lambda msg: lines.append(msg.rstrip("\n")), format="{extra[run]}{message}", level=5)
    yield lines
    configure_logger()


class TestResolveLevel:
    """Tests for resolve_level."""

    @pytest.mark.parametrize(
        "verbose, expected",
        [
            (True, "INFO"),
            (False, "WARNING"),
            ("debug", "DEBUG"),
            ("header", "HEADER"),
            ("nonsense", "INFO"),
            (10, "DEBUG"),
            (35, "WARNING"),
            (1, "VALUES"),
        ],
    )
    def test_values(self, verbose, expected):
        assert resolve_level(verbose) == expected

    def test_environment(self, monkeypatch):
        monkeypatch.setenv("MEEGFLOW_LOGGING_LEVEL", "error")
        assert resolve_level(None) == "ERROR"


class TestConfigureLogger:
    """Tests for configure_logger."""

    def test_mne_level(self):
        assert configure_logger("HEADER") == "WARNING"
        assert configure_logger("values") == "DEBUG"
        configure_logger()

    def test_log_directory(self, tmp_path):
        configure_logger("INFO", output_dir=tmp_path, task="FaceRecognition")
        message("info", "written to file")
        logger.complete()
        assert (tmp_path / "FaceRecognition" / "logs").is_dir()
        configure_logger()


class TestMessage:
    """Tests for message and run_context."""

    def test_custom_levels(self, captured):
        message("header", "Stage 1")
        message("values", "sfreq=100")
        assert captured == ["Stage 1", "sfreq=100"]

    def test_run_prefix(self, captured):
        with run_context("01HZXABCDEF123456"):
            message("info", "inside")
        message("info", "outside")
        assert captured == ["[123456] inside", "outside"]
