"""Unit tests for recording import."""

import mne
import numpy as np
import pytest

from meegflow.core.exceptions import RecordingImportError
from meegflow.io.importer import get_format_from_extension, import_recording, register_format
from tests.fixtures.synthetic_data import create_synthetic_raw


class TestImportRecording:
    """Tests for import_recording."""

    def test_fif(self, tmp_path):
        raw = create_synthetic_raw(duration=5.0, pulses=[(1.0, 5)])
        path = tmp_path / "sub-01_run-01_meg.fif"
        raw.save(path, verbose=False)

        rec = import_recording(path, subject="sub-01")
        assert rec.ch_names == raw.ch_names
        assert rec.sfreq == 200.0
        assert rec.setname == "sub-01_run-01_meg"
        assert rec.channels[-1].type == "STIM"
        assert rec.channels[0].position is not None
        # EEG in microvolts, fif stores single precision
        np.testing.assert_allclose(rec.data[:-1], raw.get_data()[:-1] * 1e6, rtol=1e-5, atol=1e-6)
        assert rec.data[-1].max() == 5

    def test_missing_file(self, tmp_path):
        with pytest.raises(RecordingImportError, match="not found"):
            import_recording(tmp_path / "missing.fif")

    def test_unknown_extension(self, tmp_path):
        path = tmp_path / "data.xyz"
        path.write_text("data")
        with pytest.raises(RecordingImportError, match="Unsupported"):
            import_recording(path)

    def test_reader_failure(self, tmp_path):
        path = tmp_path / "broken.fif"
        path.write_bytes(b"broken")
        with pytest.raises(RecordingImportError, match="Failed to import"):
            import_recording(path)


class TestRegisterFormat:
    """Tests for custom formats."""

    def test_register_reader(self, tmp_path):
        def read_npy(path, preload=True, verbose=None):
            data = np.load(path)
            info = mne.create_info(["A", "B"], 100.0, ch_types="eeg")
            return mne.io.RawArray(data, info, verbose=False)

        register_format("npyeeg", "NUMPY_EEG", read_npy)
        assert get_format_from_extension(".NPYEEG") == "NUMPY_EEG"

        path = tmp_path / "rec.npyeeg"
        with open(path, "wb") as f:
            np.save(f, np.ones((2, 50)) * 1e-6)
        rec = import_recording(path)
        assert rec.n_channels == 2
        np.testing.assert_allclose(rec.data, 1.0)

    def test_core_formats(self):
        assert get_format_from_extension("fif") == "GENERIC_FIF"
        assert get_format_from_extension("set") == "EEGLAB_SET"
