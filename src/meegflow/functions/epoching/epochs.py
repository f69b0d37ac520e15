"""Epoching, baseline correction, amplitude rejection and averaging.

Epochs follow the EEGLAB sample convention: an epoch ``[tmin, tmax]`` spans
``round((tmax - tmin) * sfreq)`` samples starting ``round(tmin * sfreq)``
samples from the locking event. Epoched buffers are channels x time x trials.
"""

from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from meegflow.core.exceptions import (
    InvalidSelectorError,
    MetadataError,
    ThresholdConfigError,
)
from meegflow.core.recording import BOUNDARY, ChannelKind, Event, Recording
from meegflow.utils.logging import message

__all__ = [
    "average_epochs",
    "create_epochs",
    "epoch_conditions",
    "epoch_std",
    "reject_by_amplitude",
    "remove_baseline",
    "select_trials",
]


def create_epochs(
    recording: Recording,
    labels: Iterable[str],
    tmin: float,
    tmax: float,
    reject_boundary: bool = True,
) -> Recording:
    """Cut epochs around the events carrying one of ``labels``.

    Parameters
    ----------
    recording : Recording
        Continuous recording.
    labels : iterable of str
        Labels of the time-locking events.
    tmin, tmax : float
        Epoch limits in seconds relative to the locking event.
    reject_boundary : bool
        Skip epochs that contain a ``boundary`` event.

    Returns
    -------
    Recording
        Epoched recording. Each trial keeps the events that fall inside it,
        with onsets relative to the start of the trial.

    Raises
    ------
    ThresholdConfigError
        If ``tmax <= tmin``.
    InvalidSelectorError
        If no event carries one of the labels.
    MetadataError
        If the recording is already epoched or every epoch had to be skipped.
    """
    if recording.is_epoched:
        raise MetadataError("Recording is already epoched")
    if tmax <= tmin:
        raise ThresholdConfigError(f"Epoch tmax ({tmax}) must be greater than tmin ({tmin})")

    wanted = {str(label) for label in labels}
    sfreq = recording.sfreq
    offset = int(round(tmin * sfreq))
    n_samples = int(round((tmax - tmin) * sfreq))
    lock_sample = -offset

    samples = recording.event_samples()
    locks = sorted(
        (samples[i], i) for i, ev in enumerate(recording.events) if ev.label in wanted
    )
    if not locks:
        raise InvalidSelectorError(f"No events labelled {sorted(wanted)}")
    boundaries = [s for s, ev in zip(samples, recording.events) if ev.label == BOUNDARY]

    trials = []
    events: List[Event] = []
    skipped = 0
    for sample, index in locks:
        start, stop = sample + offset, sample + offset + n_samples
        if start < 0 or stop > recording.n_times:
            skipped += 1
            continue
        if reject_boundary and any(start < b < stop for b in boundaries):
            skipped += 1
            continue

        trial = len(trials)
        trials.append(recording.data[:, start:stop])
        start_us = int(round(start * 1e6 / sfreq))
        for other in np.flatnonzero((samples >= start) & (samples < stop)):
            ev = recording.events[other]
            if ev.label == BOUNDARY:
                continue
            if other == index:
                onset_us = Event.from_sample(lock_sample, sfreq, "").onset_us
            else:
                onset_us = ev.onset_us - start_us
            events.append(Event(onset_us, ev.label, ev.code, trial))

    if not trials:
        raise MetadataError(f"All {len(locks)} epochs for {sorted(wanted)} fall outside the data")

    # Keep the events that land past the last sample after rounding inside the trial
    last_us = Event.from_sample(n_samples - 1, sfreq, "").onset_us
    events = [
        ev if ev.sample(sfreq) < n_samples else Event(last_us, ev.label, ev.code, ev.epoch)
        for ev in events
    ]
    events = [ev if ev.onset_us >= 0 else Event(0, ev.label, ev.code, ev.epoch) for ev in events]

    message(
        "info",
        f"Created {len(trials)} epochs for {sorted(wanted)} ({skipped} skipped)",
    )
    return recording.replace(
        data=np.stack(trials, axis=2),
        events=tuple(events),
        tmin=offset / sfreq,
    )


def epoch_conditions(
    recording: Recording,
    conditions: Mapping[str, Iterable[str]],
    tmin: float,
    tmax: float,
    reject_boundary: bool = True,
) -> Dict[str, Recording]:
    """Epoch the recording once per condition.

    ``conditions`` maps a condition name to the event labels locking its
    epochs; each result is named ``<setname>_<condition>``.
    """
    branches = {}
    for condition, labels in conditions.items():
        epoched = create_epochs(recording, labels, tmin, tmax, reject_boundary)
        setname = f"{recording.setname}_{condition}" if recording.setname else condition
        branches[condition] = epoched.replace(setname=setname)
    return branches


def select_trials(recording: Recording, keep: Sequence[int]) -> Recording:
    """Keep the given trials, renumbering the trial index of their events."""
    if not recording.is_epoched:
        raise MetadataError("Trial selection needs epoched data")
    keep = list(keep)
    renumber = {old: new for new, old in enumerate(keep)}
    events = tuple(
        Event(ev.onset_us, ev.label, ev.code, renumber[ev.epoch])
        for ev in recording.events
        if ev.epoch in renumber
    )
    return recording.replace(data=recording.data[:, :, keep], events=events)


def remove_baseline(
    recording: Recording, window: Optional[Tuple[float, float]] = None
) -> Recording:
    """Subtract the mean of a baseline window from every trial and channel.

    Args:
        recording: Epoched recording
        window: ``(start, stop)`` in seconds, inclusive; defaults to
            ``(tmin, 0)``

    Raises:
        ThresholdConfigError: If the window is empty or outside the epoch
    """
    if not recording.is_epoched:
        raise MetadataError("Baseline removal needs epoched data")

    times = recording.times
    start, stop = window if window is not None else (times[0], 0.0)
    if stop <= start:
        raise ThresholdConfigError(f"Baseline end ({stop}) must be after its start ({start})")
    # Absorbs float error between limits given in ms and sample times
    eps = 1e-3 / recording.sfreq
    if start < times[0] - eps or stop > times[-1] + eps:
        raise ThresholdConfigError(
            f"Baseline ({start}, {stop}) lies outside the epoch ({times[0]}, {times[-1]})"
        )
    mask = (times >= start - eps) & (times <= stop + eps)
    if not mask.any():
        raise ThresholdConfigError(f"Baseline ({start}, {stop}) contains no samples")

    picks = [i for i, ch in enumerate(recording.channels) if ch.mne_type != "stim"]
    data = recording.data.copy()
    data[picks] -= data[picks][:, mask, :].mean(axis=1, keepdims=True)

    message("info", f"Removed baseline ({start:.3f}, {stop:.3f})s")
    return recording.with_data(data)


def reject_by_amplitude(
    recording: Recording,
    low: float,
    high: float,
    picks: Optional[Sequence[int]] = None,
) -> Tuple[Recording, List[int]]:
    """Reject every trial with a sample strictly outside ``[low, high]``.

    Thresholds are in display units (microvolts for EEG).

    Returns:
        The recording without the rejected trials, and the indices of the
        rejected trials in the input

    Raises:
        ThresholdConfigError: If ``low >= high``
    """
    if not recording.is_epoched:
        raise MetadataError("Amplitude rejection needs epoched data")
    if low >= high:
        raise ThresholdConfigError(f"Lower threshold ({low}) must be below upper ({high})")

    if picks is None:
        picks = [i for i, ch in enumerate(recording.channels) if ch.kind == ChannelKind.SIGNAL]
    data = recording.data[list(picks)]
    outside = (data < low) | (data > high)
    rejected = np.flatnonzero(outside.any(axis=(0, 1))).tolist()
    keep = [i for i in range(recording.n_trials) if i not in set(rejected)]

    message(
        "info",
        f"Amplitude rejection [{low}, {high}]: {len(rejected)} of "
        f"{recording.n_trials} epochs rejected",
    )
    return select_trials(recording, keep), rejected


def _collapse(recording: Recording, data: np.ndarray) -> Recording:
    if recording.n_trials == 0:
        raise MetadataError("Cannot average a recording without trials")
    lock = int(round(-recording.tmin * recording.sfreq))
    labels = sorted({label for label in recording.locking_labels() if label})
    events = ()
    if 0 <= lock < recording.n_times and labels:
        label = labels[0] if len(labels) == 1 else "/".join(labels)
        events = (Event.from_sample(lock, recording.sfreq, label),)
    return recording.replace(data=data, events=events)


def average_epochs(recording: Recording) -> Recording:
    """Average the trials of an epoched recording (ERP)."""
    if not recording.is_epoched:
        raise MetadataError("Averaging needs epoched data")
    erp = _collapse(recording, recording.data.mean(axis=2))
    message("info", f"Averaged {recording.n_trials} epochs")
    return erp


def epoch_std(recording: Recording) -> Recording:
    """Standard deviation across trials, one value per channel and sample."""
    if not recording.is_epoched:
        raise MetadataError("Trial standard deviation needs epoched data")
    return _collapse(recording, recording.data.std(axis=2, ddof=1 if recording.n_trials > 1 else 0))
