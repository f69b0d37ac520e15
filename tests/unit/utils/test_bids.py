"""Unit tests for BIDS file name helpers."""

import pytest

from meegflow.utils.bids import parse_subject_run, sanitize_id


class TestParseSubjectRun:
    """Tests for parse_subject_run."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("sub-01_ses-meg_task-facerecognition_run-01_meg.fif", ("sub-01", "run-01")),
            ("sub-16_run-06_meg.fif", ("sub-16", "run-06")),
            ("sub-03_meg.fif", ("sub-03", "run-01")),
        ],
    )
    def test_bids_names(self, tmp_path, name, expected):
        assert parse_subject_run(tmp_path / name) == expected

    def test_plain_name(self):
        assert parse_subject_run("recording 7.raw.fif") == ("recording-7", "run-01")


class TestSanitizeId:
    """Tests for sanitize_id."""

    def test_replaces_separators(self):
        assert sanitize_id("my_file (copy)") == "my-file-copy"

    def test_empty(self):
        assert sanitize_id("___") == "unknown"
