"""Tests for the preprocessing functions."""

import numpy as np
import pytest

from meegflow.core.exceptions import (
    InvalidSelectorError,
    MetadataError,
    ThresholdConfigError,
)
from meegflow.core.recording import BOUNDARY, Channel, ChannelKind, Event, Recording
from meegflow.functions.preprocessing.channels import (
    default_correlation_threshold,
    detect_bad_channels,
    recenter_channels,
    remove_bad_channels,
    set_channel_types,
)
from meegflow.functions.preprocessing.filtering import filter_data, resample_data
from meegflow.functions.preprocessing.referencing import (
    average_reference_rank,
    rereference_data,
)
from meegflow.functions.preprocessing.segments import (
    find_bad_windows,
    reject_bad_windows,
    remove_spans,
)
from tests.fixtures.synthetic_data import (
    add_trigger_channel,
    create_epoched_recording,
    create_synthetic_recording,
    sphere_positions,
)


class TestResample:
    """Tests for resample_data."""

    def test_600_to_100_hz(self):
        rec = create_synthetic_recording(n_channels=4, sfreq=600.0, duration=10.0)
        result = resample_data(rec, 100)
        assert result.sfreq == 100.0
        assert result.n_times == 1000

    def test_events_keep_their_time(self):
        rec = create_synthetic_recording(
            n_channels=2, sfreq=600.0, duration=10.0, events=[(1.234, "a"), (9.999, "b")]
        )
        result = resample_data(rec, 100)
        assert result.events[0].onset_us == 1_234_000
        # Past the last sample at the new rate, moved onto it
        assert result.events[1].sample(100.0) == 999

    def test_same_rate(self, recording):
        assert resample_data(recording, 100) is recording

    def test_invalid_rate(self, recording):
        with pytest.raises(ThresholdConfigError):
            resample_data(recording, 0)


class TestFilter:
    """Tests for filter_data."""

    def test_highpass_removes_offset(self):
        rec = create_synthetic_recording(n_channels=2, sfreq=100.0, duration=20.0)
        shifted = rec.with_data(rec.data + 500.0)
        result = filter_data(shifted, l_freq=1.0)
        assert abs(result.data[:, 500:-500].mean()) < 5.0

    def test_lowpass_attenuates_high_frequencies(self):
        rec = create_synthetic_recording(n_channels=1, sfreq=200.0, duration=10.0, amplitude=0.0)
        t = np.arange(rec.n_times) / rec.sfreq
        rec = rec.with_data((np.sin(2 * np.pi * 5 * t) + np.sin(2 * np.pi * 80 * t))[None, :])
        result = filter_data(rec, h_freq=40.0)
        expected = np.sin(2 * np.pi * 5 * t)
        np.testing.assert_allclose(result.data[0, 200:-200], expected[200:-200], atol=0.05)

    def test_stim_channel_untouched(self, recording):
        rec = add_trigger_channel(recording, [(300, 5)])
        result = filter_data(rec, l_freq=1.0, h_freq=40.0)
        np.testing.assert_array_equal(result.data[-1], rec.data[-1])

    def test_epoched(self):
        rec = create_epoched_recording(n_times=400, fill=100.0)
        result = filter_data(rec, l_freq=1.0)
        assert result.data.shape == rec.data.shape
        assert abs(result.data[:, 150:250].mean()) < 10.0

    def test_no_cutoffs(self, recording):
        assert filter_data(recording) is recording

    @pytest.mark.parametrize(
        "l_freq, h_freq",
        [(-1.0, None), (None, 50.0), (None, 60.0), (30.0, 10.0), (10.0, 10.0)],
    )
    def test_invalid_cutoffs(self, recording, l_freq, h_freq):
        with pytest.raises(ThresholdConfigError):
            filter_data(recording, l_freq=l_freq, h_freq=h_freq)


class TestReference:
    """Tests for rereference_data."""

    def test_average_reference(self, recording):
        result = rereference_data(recording)
        np.testing.assert_allclose(result.data.mean(axis=0), 0.0, atol=1e-9)

    def test_channel_reference(self, recording):
        result = rereference_data(recording, ref_channels="E1")
        np.testing.assert_allclose(result.data[0], 0.0)
        np.testing.assert_allclose(result.data[1], recording.data[1] - recording.data[0])

    def test_non_signal_channels_untouched(self, recording):
        rec = set_channel_types(recording, {"E8": "HEOG"})
        result = rereference_data(rec)
        np.testing.assert_array_equal(result.data[7], rec.data[7])
        np.testing.assert_allclose(result.data[:7].mean(axis=0), 0.0, atol=1e-9)

    def test_unknown_reference(self, recording):
        with pytest.raises(InvalidSelectorError):
            rereference_data(recording, ref_channels=["Cz"])

    def test_rank(self, recording):
        assert average_reference_rank(recording) == 7


class TestWindowRejection:
    """Tests for bad window detection and removal."""

    def _with_burst(self, recording, start=300, stop=400):
        data = recording.data.copy()
        data[:, start:stop] += 1000.0 * np.sign(np.sin(np.arange(stop - start)))[None, :]
        return recording.with_data(data)

    def test_burst_is_found(self, recording):
        assert find_bad_windows(self._with_burst(recording)) == [(300, 400)]

    def test_clean_data(self, recording):
        assert find_bad_windows(recording) == []
        assert reject_bad_windows(recording) is recording

    def test_adjacent_windows_merge(self, recording):
        rec = self._with_burst(recording, 300, 500)
        assert find_bad_windows(rec) == [(300, 500)]

    def test_removal_moves_events_and_adds_boundary(self, recording):
        result = reject_bad_windows(self._with_burst(recording))
        assert result.n_times == 900
        assert [(ev.label, ev.sample(result.sfreq)) for ev in result.events] == [
            ("5", 200),
            (BOUNDARY, 300),
            ("13", 400),
            ("17", 700),
        ]

    def test_event_inside_span_dropped(self, recording):
        result = remove_spans(recording, [(150, 250)])
        assert [ev.label for ev in result.events] == [BOUNDARY, "13", "17"]

    def test_cannot_remove_everything(self, recording):
        with pytest.raises(RuntimeError):
            remove_spans(recording, [(0, recording.n_times)])

    def test_invalid_criteria(self, recording):
        with pytest.raises(ThresholdConfigError):
            find_bad_windows(recording, window_criterion=0)
        with pytest.raises(ThresholdConfigError):
            find_bad_windows(recording, burst_criterion=-1)

    def test_epoched_rejected(self):
        with pytest.raises(MetadataError):
            find_bad_windows(create_epoched_recording())


class TestChannels:
    """Tests for channel retyping, bad channels and recentering."""

    def test_set_channel_types(self, recording):
        result = set_channel_types(recording, {"E1": "HEOG", "E2": "EKG"})
        assert result.channels[0].kind is ChannelKind.OCULAR
        assert result.channels[1].kind is ChannelKind.CARDIAC
        assert result.channels[0].position is None
        assert result.channels[2].position == recording.channels[2].position

    def test_set_channel_types_unknown_label(self, recording):
        with pytest.raises(InvalidSelectorError):
            set_channel_types(recording, {"EEG061": "HEOG"})

    def test_recenter(self):
        center = np.array([0.01, -0.02, 0.04])
        positions = sphere_positions(12, radius=0.09, center=center)
        rec = Recording(
            np.zeros((12, 10)),
            100.0,
            tuple(Channel(f"E{i}", position=tuple(p)) for i, p in enumerate(positions)),
        )
        result = recenter_channels(rec)
        radii = np.linalg.norm([ch.position for ch in result.channels], axis=1)
        np.testing.assert_allclose(radii, 0.09, atol=1e-9)

    def test_recenter_needs_four_positions(self, recording):
        rec = recording.select_channels(lambda ch: ch.label in {"E1", "E2", "E3"})
        assert recenter_channels(rec) is rec

    def test_default_correlation_threshold(self, recording):
        assert default_correlation_threshold(recording) == 0.9
        meg = create_synthetic_recording(n_channels=2, ch_type="MEGMAG")
        assert default_correlation_threshold(meg) == 0.4

    @pytest.mark.parametrize(
        "kwargs", [{"correlation_threshold": 0.0}, {"correlation_threshold": 1.5}, {"max_bad_time": 0}]
    )
    def test_detect_bad_channels_thresholds(self, recording, kwargs):
        with pytest.raises(ThresholdConfigError):
            detect_bad_channels(recording, **kwargs)

    def test_detect_bad_channels_epoched(self):
        with pytest.raises(MetadataError):
            detect_bad_channels(create_epoched_recording())

    def test_remove_bad_channels(self, recording):
        assert remove_bad_channels(recording, []) is recording
        assert remove_bad_channels(recording, ["E2"]).ch_names[1] == "E3"
