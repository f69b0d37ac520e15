"""Tests for event extraction and renaming."""

import numpy as np
import pytest

from meegflow.core.exceptions import (
    InvalidSelectorError,
    MetadataError,
    OutOfRangeError,
    ThresholdConfigError,
)
from meegflow.core.recording import Event
from meegflow.functions.events.remap import (
    EventOverride,
    RenameRule,
    RenameTable,
    apply_overrides,
    detect_rising_edges,
    events_from_channel,
    keep_codes,
)
from tests.fixtures.synthetic_data import (
    add_trigger_channel,
    create_epoched_recording,
    trigger_values,
)

FACES = {
    "Famous": [5, 6, 7],
    "Unfamiliar": [13, 14, 15],
    "Scrambled": [17, 18, 19],
}


def with_labels(recording, labels):
    events = tuple(Event.from_sample(100 + 50 * i, recording.sfreq, str(label))
                   for i, label in enumerate(labels))
    return recording.replace(events=events)


class TestRisingEdges:
    """Tests for detect_rising_edges."""

    def test_edges(self):
        values = [0, 0, 5, 5, 0, 0, 13, 13, 13, 0]
        assert detect_rising_edges(values).tolist() == [2, 6]

    def test_first_sample_is_never_an_edge(self):
        assert detect_rising_edges([5, 5, 0, 6]).tolist() == [3]

    def test_step_up_without_return_to_zero(self):
        assert detect_rising_edges([0, 5, 7, 7, 3]).tolist() == [1, 2]

    def test_min_length(self):
        values = [0, 5, 0, 0, 6, 6, 6, 0]
        assert detect_rising_edges(values, min_length=2).tolist() == [4]

    def test_min_length_invalid(self):
        with pytest.raises(ThresholdConfigError):
            detect_rising_edges([0, 1], min_length=0)

    def test_short_signal(self):
        assert detect_rising_edges([3]).tolist() == []

    def test_deterministic(self):
        rng = np.random.default_rng(3)
        values = rng.integers(0, 32, size=5000)
        first = detect_rising_edges(values)
        for _ in range(3):
            np.testing.assert_array_equal(detect_rising_edges(values.copy()), first)


class TestEventsFromChannel:
    """Tests for events_from_channel."""

    def test_codes_and_onsets(self, recording):
        rec = add_trigger_channel(recording, [(100, 5), (400, 13), (700, 17)])
        result = events_from_channel(rec, "STI101")
        assert [ev.label for ev in result.events] == ["5", "13", "17"]
        assert [ev.code for ev in result.events] == [5, 13, 17]
        assert result.event_samples().tolist() == [100, 400, 700]
        assert result.n_channels == 9

    def test_mask_low_bits(self, recording):
        # 4096 + 5: the response bits are masked away
        rec = add_trigger_channel(recording, [(100, 4101), (400, 4096 + 13)])
        result = events_from_channel(rec, "STI101", bit_mask=31)
        assert [ev.code for ev in result.events] == [5, 13]

    def test_mask_first_hides_high_bit_edges(self, recording):
        values = trigger_values(recording.n_times, [(100, 5)], width=400)
        values[300:350] += 4096
        rec = add_trigger_channel(recording, []).replace(
            data=np.vstack([recording.data, values])
        )
        masked_first = events_from_channel(rec, "STI101", mask_first=True)
        masked_after = events_from_channel(rec, "STI101", mask_first=False)
        assert masked_first.event_samples().tolist() == [100]
        assert masked_after.event_samples().tolist() == [100, 300]

    def test_no_mask(self, recording):
        rec = add_trigger_channel(recording, [(100, 4101)])
        result = events_from_channel(rec, "STI101", bit_mask=None)
        assert [ev.code for ev in result.events] == [4101]

    def test_delete_channel(self, recording):
        rec = add_trigger_channel(recording, [(100, 5)])
        result = events_from_channel(rec, rec.n_channels - 1, delete_channel=True)
        assert "STI101" not in result.ch_names
        assert len(result.events) == 1

    def test_unknown_channel(self, recording):
        with pytest.raises(InvalidSelectorError):
            events_from_channel(recording, "STI101")
        with pytest.raises(OutOfRangeError):
            events_from_channel(recording, 42)

    def test_epoched_rejected(self):
        with pytest.raises(MetadataError):
            events_from_channel(create_epoched_recording(), 0)


class TestKeepCodes:
    """Tests for keep_codes."""

    def test_keeps_listed_codes(self, recording):
        rec = with_labels(recording, [5, 1, 13, 256, 17])
        result = keep_codes(rec, [5, 6, 7, 13, 14, 15, 17, 18, 19])
        assert [ev.label for ev in result.events] == ["5", "13", "17"]


class TestRenameTable:
    """Tests for RenameTable."""

    def test_famous_with_drop(self, recording):
        rec = with_labels(recording, [5, 6, 7, 13, 99])
        table = RenameTable.from_mapping({"Famous": [5, 6, 7]})
        result = table.apply(rec, unmatched="drop")
        assert [ev.label for ev in result.events] == ["Famous"] * 3
        assert [ev.onset_us for ev in result.events] == [
            ev.onset_us for ev in rec.events[:3]
        ]

    def test_keep_policy(self, recording):
        rec = with_labels(recording, [5, 99])
        result = RenameTable.from_mapping({"Famous": [5]}).apply(rec, unmatched="keep")
        assert [ev.label for ev in result.events] == ["Famous", "99"]

    def test_many_to_one(self, recording):
        rec = with_labels(recording, [5, 13, 17, 6, 14, 18])
        result = RenameTable.from_mapping(FACES).apply(rec, unmatched="drop")
        assert [ev.label for ev in result.events] == [
            "Famous", "Unfamiliar", "Scrambled", "Famous", "Unfamiliar", "Scrambled",
        ]

    @pytest.mark.parametrize("unmatched", ["keep", "drop"])
    def test_idempotent(self, recording, unmatched):
        rec = with_labels(recording, [5, 13, 17, 99, 6])
        table = RenameTable.from_mapping(FACES)
        once = table.apply(rec, unmatched=unmatched)
        twice = table.apply(once, unmatched=unmatched)
        assert twice.events == once.events

    def test_target_that_is_also_a_code(self):
        """A chained table would rename its own output on a second pass."""
        with pytest.raises(MetadataError, match="both a rename target"):
            RenameTable.from_mapping({"6": [5], "Famous": [6]})

    def test_target_mapped_to_itself(self, recording):
        rec = with_labels(recording, [5, 6])
        table = RenameTable.from_mapping({"6": [5, 6]})
        once = table.apply(rec, unmatched="drop")
        assert [ev.label for ev in once.events] == ["6", "6"]
        assert table.apply(once, unmatched="drop").events == once.events

    def test_conflicting_codes(self):
        with pytest.raises(MetadataError, match="mapped to both"):
            RenameTable.from_mapping({"Famous": [5, 6], "Unfamiliar": [6, 13]})

    def test_from_config_list(self, recording):
        table = RenameTable.from_config([{"codes": [5], "label": "Famous"}])
        assert table.label_for("5") == "Famous"
        assert table.label_for("Famous") == "Famous"
        assert table.label_for("6") is None

    def test_malformed_entries(self):
        with pytest.raises(MetadataError):
            RenameTable.from_config([{"label": "Famous"}])
        with pytest.raises(MetadataError):
            RenameRule(5, "Famous")
        with pytest.raises(MetadataError):
            RenameRule([5], "")

    def test_invalid_policy(self, recording):
        with pytest.raises(MetadataError):
            RenameTable.from_mapping(FACES).apply(recording, unmatched="ignore")


class TestOverrides:
    """Tests for positional event overrides."""

    def test_override(self, recording):
        rec = with_labels(recording, [5, 13, 17])
        result = apply_overrides(rec, [EventOverride(1, "256", expected="13")])
        assert [ev.label for ev in result.events] == ["5", "256", "17"]

    def test_unexpected_label(self, recording):
        rec = with_labels(recording, [5, 13, 17])
        with pytest.raises(MetadataError):
            apply_overrides(rec, [EventOverride(1, "256", expected="14")])

    def test_out_of_range(self, recording):
        with pytest.raises(OutOfRangeError):
            apply_overrides(recording, [EventOverride(3, "256")])
