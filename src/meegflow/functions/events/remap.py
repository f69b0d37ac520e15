"""Event extraction and renaming.

This module turns a digital trigger channel into events and maps raw trigger
codes to condition labels:

- :func:`events_from_channel` masks the trigger channel to its low-order bits
  and emits one event per rising edge (EEGLAB ``pop_chanevent``)
- :func:`keep_codes` keeps only the events of interest (``pop_selectevent``)
- :class:`EventOverride` fixes single mis-coded triggers by position
- :class:`RenameTable` maps sets of codes to condition labels, many-to-one

Examples
--------
>>> rec = events_from_channel(rec, "STI101", bit_mask=31)
>>> rec = keep_codes(rec, [5, 6, 7, 13, 14, 15, 17, 18, 19])
>>> table = RenameTable.from_mapping({"Famous": [5, 6, 7], "Unfamiliar": [13, 14, 15]})
>>> rec = table.apply(rec, unmatched="drop")
"""

import dataclasses
from dataclasses import dataclass
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np

from meegflow.core.exceptions import (
    MetadataError,
    OutOfRangeError,
    ThresholdConfigError,
)
from meegflow.core.recording import Event, Recording
from meegflow.utils.logging import message

__all__ = [
    "EventOverride",
    "RenameRule",
    "RenameTable",
    "apply_overrides",
    "detect_rising_edges",
    "events_from_channel",
    "keep_codes",
]


def detect_rising_edges(values: Sequence[float], min_length: int = 1) -> np.ndarray:
    """Find the rising edges of a trigger signal.

    An edge is a sample ``i > 0`` with ``x[i] > x[i-1]`` whose new value is
    held for at least ``min_length`` consecutive samples. The first sample is
    never an edge.

    Parameters
    ----------
    values : array-like
        One-dimensional trigger signal.
    min_length : int
        Minimum number of samples the new value must persist.

    Returns
    -------
    np.ndarray
        Sample indices of the detected edges, in increasing order.
    """
    if min_length < 1:
        raise ThresholdConfigError(f"Edge length must be at least 1, got {min_length}")

    x = np.asarray(values)
    if x.ndim != 1:
        raise MetadataError(f"Trigger signal must be one-dimensional, got shape {x.shape}")
    if x.size < 2:
        return np.array([], dtype=int)

    edges = np.flatnonzero(x[1:] > x[:-1]) + 1
    if min_length == 1:
        return edges

    held = [
        i for i in edges
        if i + min_length <= x.size and np.all(x[i : i + min_length] == x[i])
    ]
    return np.asarray(held, dtype=int)


def events_from_channel(
    recording: Recording,
    channel: Union[str, int],
    bit_mask: Optional[int] = 31,
    min_length: int = 1,
    mask_first: bool = True,
    delete_channel: bool = False,
) -> Recording:
    """Replace the event list with the rising edges of a trigger channel.

    Parameters
    ----------
    recording : Recording
        Continuous recording holding the trigger channel.
    channel : str or int
        Label or index of the trigger channel (e.g. ``"STI101"``).
    bit_mask : int or None
        Only the bits set in the mask are kept (``bitand(int32(X), 31)``).
        ``None`` keeps the full value.
    min_length : int
        Minimum number of samples a new value must persist to count as an edge.
    mask_first : bool
        Apply the mask before looking for edges (EEGLAB order). When False the
        edges are found on the raw values and only their codes are masked;
        edges whose masked code is zero are dropped.
    delete_channel : bool
        Remove the trigger channel once the events are extracted.

    Returns
    -------
    Recording
        Recording whose events are one per edge, labelled with the decimal code.

    Raises
    ------
    InvalidSelectorError
        If no channel has the given label.
    OutOfRangeError
        If the channel index is out of range.
    MetadataError
        If the recording is epoched.
    """
    if recording.is_epoched:
        raise MetadataError("Events can only be extracted from continuous data")

    if isinstance(channel, str):
        index = recording.channel_index(channel)
    else:
        index = int(channel)
        if not 0 <= index < recording.n_channels:
            raise OutOfRangeError(
                f"Channel index {index} out of range for {recording.n_channels} channels"
            )

    values = np.rint(recording.data[index]).astype(np.int64)
    mask = -1 if bit_mask is None else int(bit_mask)

    if mask_first:
        masked = values & mask
        edges = detect_rising_edges(masked, min_length=min_length)
        codes = masked[edges]
    else:
        edges = detect_rising_edges(values, min_length=min_length)
        codes = values[edges] & mask
        keep = codes != 0
        edges, codes = edges[keep], codes[keep]

    events = tuple(
        Event.from_sample(int(sample), recording.sfreq, str(int(code)), int(code))
        for sample, code in zip(edges, codes)
    )
    message(
        "info",
        f"Found {len(events)} events on {recording.channels[index].label} "
        f"({len(set(codes.tolist()))} distinct codes)",
    )

    result = recording.replace(events=events)
    if delete_channel:
        label = recording.channels[index].label
        result = result.select_channels(lambda ch: ch.label != label)
    return result


def _labels(codes: Iterable[Any]) -> frozenset:
    return frozenset(str(code) for code in codes)


def keep_codes(recording: Recording, codes: Iterable[Any]) -> Recording:
    """Keep only events whose current label is one of ``codes``."""
    wanted = _labels(codes)
    result = recording.select_events(lambda ev: ev.label in wanted, drop_unmatched=True)
    message(
        "info",
        f"Kept {len(result.events)} of {len(recording.events)} events "
        f"with codes {sorted(wanted)}",
    )
    return result


@dataclass(frozen=True)
class RenameRule:
    """Events whose label is one of ``codes`` are renamed to ``label``."""

    codes: frozenset
    label: str

    def __post_init__(self):
        if isinstance(self.codes, (str, int)):
            raise MetadataError(
                f"Rename rule for '{self.label}' needs a collection of codes, got {self.codes!r}"
            )
        object.__setattr__(self, "codes", _labels(self.codes))
        if not self.codes:
            raise MetadataError(f"Rename rule for '{self.label}' has no codes")
        if not isinstance(self.label, str) or not self.label:
            raise MetadataError(f"Rename rule target must be a non-empty string, got {self.label!r}")


class RenameTable:
    """Ordered, many-to-one mapping from event codes to condition labels.

    Rules match the current label of an event. Labels that are already rename
    targets count as matched, so applying a table twice gives the same result
    as applying it once, with either unmatched policy.

    Raises
    ------
    MetadataError
        If a code appears in more than one rule, or a target label is also
        a code renamed to another label.
    """

    def __init__(self, rules: Iterable[RenameRule]):
        self.rules: List[RenameRule] = list(rules)
        self._mapping = {}
        for rule in self.rules:
            for code in rule.codes:
                if code in self._mapping and self._mapping[code] != rule.label:
                    raise MetadataError(
                        f"Code {code} is mapped to both '{self._mapping[code]}' and '{rule.label}'"
                    )
                self._mapping[code] = rule.label
        self.targets = frozenset(rule.label for rule in self.rules)
        for target in self.targets:
            if self._mapping.get(target, target) != target:
                raise MetadataError(
                    f"Label '{target}' is both a rename target and a code mapped to "
                    f"'{self._mapping[target]}'"
                )

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Iterable[Any]]) -> "RenameTable":
        """Build a table from ``{label: [codes]}``."""
        return cls(RenameRule(codes, label) for label, codes in mapping.items())

    @classmethod
    def from_config(cls, entries: Union[Mapping[str, Iterable[Any]], Iterable[Mapping[str, Any]]]) -> "RenameTable":
        """Build a table from a ``{label: codes}`` mapping or a list of ``{codes, label}``."""
        if isinstance(entries, Mapping):
            return cls.from_mapping(entries)
        rules = []
        for entry in entries:
            try:
                rules.append(RenameRule(entry["codes"], entry["label"]))
            except (KeyError, TypeError) as e:
                raise MetadataError(f"Malformed rename entry {entry!r}") from e
        return cls(rules)

    def label_for(self, label: str) -> Optional[str]:
        """New label for an event currently labelled ``label``, if any rule matches."""
        if label in self._mapping:
            return self._mapping[label]
        if label in self.targets:
            return label
        return None

    def apply(self, recording: Recording, unmatched: str = "keep") -> Recording:
        """Rename the events of ``recording``.

        Parameters
        ----------
        recording : Recording
            Recording whose events are renamed.
        unmatched : {"keep", "drop"}
            What happens to events no rule matches.
        """
        if unmatched not in ("keep", "drop"):
            raise MetadataError(f"Unmatched policy must be 'keep' or 'drop', got '{unmatched}'")

        result = recording.select_events(
            lambda ev: self.label_for(ev.label) is not None,
            relabel=lambda ev: self.label_for(ev.label),
            drop_unmatched=unmatched == "drop",
        )
        message(
            "info",
            f"Renamed events using {len(self.rules)} rules, "
            f"{len(result.events)} of {len(recording.events)} events remain",
        )
        return result


@dataclass(frozen=True)
class EventOverride:
    """Set the label of the event at ``index`` (0-based) to ``label``.

    When ``expected`` is given the event must currently carry that label.
    """

    index: int
    label: str
    expected: Optional[str] = None


def apply_overrides(recording: Recording, overrides: Iterable[EventOverride]) -> Recording:
    """Apply single-event label corrections by position.

    Raises
    ------
    OutOfRangeError
        If an override index is outside the event list.
    MetadataError
        If an event does not carry the expected label.
    """
    events = list(recording.events)
    for override in overrides:
        if not 0 <= override.index < len(events):
            raise OutOfRangeError(
                f"Event override index {override.index} out of range for {len(events)} events"
            )
        current = events[override.index]
        if override.expected is not None and current.label != str(override.expected):
            raise MetadataError(
                f"Event {override.index} is labelled '{current.label}', "
                f"expected '{override.expected}'"
            )
        events[override.index] = dataclasses.replace(current, label=str(override.label))
        message(
            "info",
            f"Event {override.index} relabelled '{current.label}' -> '{override.label}'",
        )
    return recording.replace(events=tuple(events))
