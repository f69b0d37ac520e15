"""Test configuration and fixtures."""

import copy
from pathlib import Path

import pytest
import yaml

from meegflow.io.checkpoint import CheckpointStore
from tests.fixtures.synthetic_data import create_synthetic_raw, create_synthetic_recording

CONFIG_FILE = Path(__file__).parent.parent / "configs" / "meegflow_config.yaml"

# Famous, Unfamiliar and Scrambled codes, one trigger every 1.5 s
TRIGGER_CODES = (5, 13, 17, 6, 14, 18)


@pytest.fixture
def recording():
    """Ten seconds of 8-channel EEG at 100 Hz with three events."""
    return create_synthetic_recording(
        n_channels=8, sfreq=100.0, duration=10.0, events=[(2.0, "5"), (5.0, "13"), (8.0, "17")]
    )


@pytest.fixture
def store(tmp_path):
    """Checkpoint store in a temporary directory."""
    return CheckpointStore(tmp_path / "checkpoints", "sub-01", "run-01")


@pytest.fixture(scope="session")
def base_config():
    """The shipped configuration file, parsed."""
    with open(CONFIG_FILE, encoding="utf8") as f:
        return yaml.safe_load(f)


@pytest.fixture
def face_config(base_config):
    """FaceRecognition configuration without the slow or optional steps.

    Bad channel detection, window rejection, ICA and export are turned off;
    the synthetic data has no EEG061-EEG064 channels to retype.
    """
    config = copy.deepcopy(base_config)
    settings = config["tasks"]["FaceRecognition"]["settings"]
    for step in ("channel_types", "bad_channels", "window_rejection", "ica", "ICLabel"):
        settings[step]["enabled"] = False
    config["export"]["enabled"] = False
    return config


@pytest.fixture
def fif_file(tmp_path):
    """Thirty seconds of EEG plus STI101 triggers saved as a BIDS-named .fif file."""
    onsets = [3.0 + 1.5 * i for i in range(17)]
    pulses = [(onset, TRIGGER_CODES[i % len(TRIGGER_CODES)]) for i, onset in enumerate(onsets)]
    raw = create_synthetic_raw(pulses=pulses)
    path = tmp_path / "data" / "sub-01_run-01_meg.fif"
    path.parent.mkdir()
    raw.save(path, verbose=False)
    return path
