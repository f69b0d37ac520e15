"""Tests for epoching, baseline removal, amplitude rejection and averaging."""

import numpy as np
import pytest

from meegflow.core.exceptions import (
    InvalidSelectorError,
    MetadataError,
    ThresholdConfigError,
)
from meegflow.core.recording import BOUNDARY, Event
from meegflow.functions.epoching.epochs import (
    average_epochs,
    create_epochs,
    epoch_conditions,
    epoch_std,
    reject_by_amplitude,
    remove_baseline,
    select_trials,
)
from meegflow.functions.preprocessing.channels import set_channel_types
from tests.fixtures.synthetic_data import create_epoched_recording, create_synthetic_recording


@pytest.fixture
def labelled():
    """Continuous recording with Famous/Unfamiliar events every second."""
    events = [(1.0 + i, "Famous" if i % 2 == 0 else "Unfamiliar") for i in range(8)]
    return create_synthetic_recording(n_channels=4, sfreq=100.0, duration=10.0, events=events)


class TestAmplitudeRejection:
    """Trials with samples outside [low, high] are rejected."""

    def test_450_rejected_399_kept(self):
        rec = create_epoched_recording(n_trials=2)
        data = rec.data.copy()
        data[2, 10, 0] = 450.0
        data[1, 30, 1] = 399.0
        rec = rec.with_data(data)

        cleaned, rejected = reject_by_amplitude(rec, -400, 400)
        assert rejected == [0]
        assert cleaned.n_trials == 1
        assert cleaned.data[1, 30, 0] == 399.0
        assert [ev.epoch for ev in cleaned.events] == [0]

    def test_limits_are_inclusive(self):
        rec = create_epoched_recording(n_trials=2)
        data = rec.data.copy()
        data[0, 5, 0] = -400.0
        data[0, 5, 1] = -400.5
        _, rejected = reject_by_amplitude(rec.with_data(data), -400, 400)
        assert rejected == [1]

    def test_non_signal_channels_ignored(self):
        rec = set_channel_types(create_epoched_recording(n_trials=2), {"E1": "VEOG"})
        data = rec.data.copy()
        data[0, :, 0] = 1000.0
        _, rejected = reject_by_amplitude(rec.with_data(data), -400, 400)
        assert rejected == []

    def test_explicit_picks(self):
        rec = set_channel_types(create_epoched_recording(n_trials=2), {"E1": "VEOG"})
        data = rec.data.copy()
        data[0, :, 0] = 1000.0
        _, rejected = reject_by_amplitude(rec.with_data(data), -400, 400, picks=[0])
        assert rejected == [0]

    @pytest.mark.parametrize("low, high", [(400, -400), (100, 100)])
    def test_invalid_thresholds(self, low, high):
        with pytest.raises(ThresholdConfigError):
            reject_by_amplitude(create_epoched_recording(), low, high)

    def test_continuous_rejected(self, recording):
        with pytest.raises(MetadataError):
            reject_by_amplitude(recording, -400, 400)


class TestCreateEpochs:
    """Tests for create_epochs."""

    def test_shape_and_locking(self, labelled):
        epochs = create_epochs(labelled, ["Famous"], tmin=-0.2, tmax=0.8)
        assert epochs.data.shape == (4, 100, 4)
        assert epochs.tmin == pytest.approx(-0.2)
        assert epochs.locking_labels() == ["Famous"] * 4
        np.testing.assert_array_equal(epochs.data[:, :, 0], labelled.data[:, 80:180])

    def test_other_events_kept_inside_trials(self, labelled):
        epochs = create_epochs(labelled, ["Famous"], tmin=-0.2, tmax=1.5)
        trial0 = [(ev.label, ev.sample(epochs.sfreq)) for ev in epochs.events if ev.epoch == 0]
        assert trial0 == [("Famous", 20), ("Unfamiliar", 120)]

    def test_out_of_bounds_epochs_skipped(self, labelled):
        epochs = create_epochs(labelled, ["Famous", "Unfamiliar"], tmin=-1.5, tmax=1.0)
        # Events at 1 s lack the pre-stimulus data, the one at 8 s fits
        assert epochs.n_trials == 7

    def test_boundary_rejected(self, labelled):
        rec = labelled.replace(events=labelled.events + (Event.from_seconds(1.1, BOUNDARY),))
        assert create_epochs(rec, ["Famous"], -0.2, 0.8).n_trials == 3
        assert create_epochs(rec, ["Famous"], -0.2, 0.8, reject_boundary=False).n_trials == 4

    def test_no_matching_events(self, labelled):
        with pytest.raises(InvalidSelectorError):
            create_epochs(labelled, ["Scrambled"], -0.2, 0.8)

    def test_all_outside(self, labelled):
        with pytest.raises(MetadataError):
            create_epochs(labelled, ["Famous"], -5.0, 5.0)

    def test_invalid_window(self, labelled):
        with pytest.raises(ThresholdConfigError):
            create_epochs(labelled, ["Famous"], 0.5, 0.5)

    def test_epoch_conditions(self, labelled):
        branches = epoch_conditions(
            labelled, {"Famous": ["Famous"], "Unfamiliar": ["Unfamiliar"]}, -0.2, 0.8
        )
        assert set(branches) == {"Famous", "Unfamiliar"}
        assert branches["Famous"].setname == "synthetic_Famous"
        assert branches["Unfamiliar"].locking_labels() == ["Unfamiliar"] * 4


class TestBaseline:
    """Tests for remove_baseline."""

    def test_baseline_mean_removed(self):
        rec = create_epoched_recording(fill=50.0)
        data = rec.data.copy()
        data[:, 20:, :] += 10.0
        result = remove_baseline(rec.with_data(data), (-0.2, 0.0))
        # Baseline window ends on the locking sample, which already carries the offset
        np.testing.assert_allclose(result.data[:, :20, :].mean(axis=1), -10.0 / 21, atol=1e-9)

    def test_default_window(self):
        rec = create_epoched_recording(fill=50.0)
        np.testing.assert_allclose(remove_baseline(rec).data, 0.0, atol=1e-9)

    @pytest.mark.parametrize("window", [(0.0, -0.1), (-0.5, 0.0), (0.1, 0.8)])
    def test_invalid_window(self, window):
        with pytest.raises(ThresholdConfigError):
            remove_baseline(create_epoched_recording(), window)

    def test_continuous_rejected(self, recording):
        with pytest.raises(MetadataError):
            remove_baseline(recording)


class TestAverage:
    """Tests for average_epochs and epoch_std."""

    def test_average(self, labelled):
        epochs = create_epochs(labelled, ["Famous"], -0.2, 0.8)
        erp = average_epochs(epochs)
        assert not erp.is_epoched
        assert erp.data.shape == (4, 100)
        np.testing.assert_allclose(erp.data, epochs.data.mean(axis=2))
        assert [(ev.label, ev.sample(erp.sfreq)) for ev in erp.events] == [("Famous", 20)]
        assert erp.times[20] == pytest.approx(0.0)

    def test_std(self, labelled):
        epochs = create_epochs(labelled, ["Famous"], -0.2, 0.8)
        std = epoch_std(epochs)
        np.testing.assert_allclose(std.data, epochs.data.std(axis=2, ddof=1))

    def test_select_trials(self):
        rec = create_epoched_recording(n_trials=3)
        result = select_trials(rec, [2])
        assert result.n_trials == 1
        assert [ev.epoch for ev in result.events] == [0]

    def test_no_trials(self):
        rec = select_trials(create_epoched_recording(n_trials=2), [])
        with pytest.raises(MetadataError):
            average_epochs(rec)
