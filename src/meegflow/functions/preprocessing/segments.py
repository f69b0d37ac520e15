"""Rejection of bad time windows in continuous data."""

from typing import List, Optional, Sequence, Tuple

import numpy as np

from meegflow.core.exceptions import MetadataError, ThresholdConfigError
from meegflow.core.recording import BOUNDARY, ChannelKind, Event, Recording
from meegflow.utils.logging import message


def _window_bounds(n_times: int, window: int) -> List[Tuple[int, int]]:
    starts = list(range(0, n_times, window))
    return [(start, min(start + window, n_times)) for start in starts]


def _robust_z(values: np.ndarray) -> np.ndarray:
    """Robust z-score along the last axis (median / scaled MAD)."""
    median = np.median(values, axis=-1, keepdims=True)
    mad = 1.4826 * np.median(np.abs(values - median), axis=-1, keepdims=True)
    return np.divide(
        values - median, mad, out=np.zeros_like(values), where=mad > 0
    )


def find_bad_windows(
    recording: Recording,
    burst_criterion: float = 30.0,
    window_criterion: float = 0.3,
    window_secs: float = 1.0,
    picks: Optional[Sequence[int]] = None,
) -> List[Tuple[int, int]]:
    """Sample spans ``[start, stop)`` of the windows to reject.

    A channel is bad in a window when the robust z-score of its RMS amplitude
    (across all windows of that channel) exceeds ``burst_criterion``. A window
    is rejected when the fraction of bad channels exceeds ``window_criterion``.
    Adjacent rejected windows are merged into one span.
    """
    if recording.is_epoched:
        raise MetadataError("Window rejection needs continuous data")
    if burst_criterion <= 0:
        raise ThresholdConfigError(f"Burst criterion must be positive, got {burst_criterion}")
    if not 0 < window_criterion <= 1:
        raise ThresholdConfigError(
            f"Window criterion must be in (0, 1], got {window_criterion}"
        )
    window = int(round(window_secs * recording.sfreq))
    if window < 1:
        raise ThresholdConfigError(f"Window of {window_secs}s is shorter than one sample")

    if picks is None:
        picks = [i for i, ch in enumerate(recording.channels) if ch.kind == ChannelKind.SIGNAL]
    data = recording.data[list(picks)]
    bounds = _window_bounds(recording.n_times, window)

    rms = np.stack(
        [np.sqrt(np.mean(data[:, start:stop] ** 2, axis=1)) for start, stop in bounds],
        axis=1,
    )
    bad_fraction = np.mean(_robust_z(rms) > burst_criterion, axis=0)

    spans: List[Tuple[int, int]] = []
    for (start, stop), fraction in zip(bounds, bad_fraction):
        if fraction <= window_criterion:
            continue
        if spans and spans[-1][1] == start:
            spans[-1] = (spans[-1][0], stop)
        else:
            spans.append((start, stop))
    return spans


def remove_spans(recording: Recording, spans: Sequence[Tuple[int, int]]) -> Recording:
    """Cut sample spans out of a continuous recording.

    Events inside a removed span are dropped, later events move back by the
    removed duration, and a ``boundary`` event marks every join.
    """
    if recording.is_epoched:
        raise MetadataError("Only continuous data can have spans removed")
    if not spans:
        return recording

    keep = np.ones(recording.n_times, dtype=bool)
    for start, stop in spans:
        keep[start:stop] = False
    if not keep.any():
        raise RuntimeError("Window rejection would remove all data")

    n_new = int(keep.sum())
    removed_before = np.concatenate([[0], np.cumsum(~keep)])

    events = []
    for event in recording.events:
        sample = event.sample(recording.sfreq)
        if not keep[sample]:
            continue
        shift_us = int(round(removed_before[sample] * 1e6 / recording.sfreq))
        events.append(Event(event.onset_us - shift_us, event.label, event.code))

    for start, stop in spans:
        join = int(start - removed_before[start])
        if join < n_new:
            events.append(Event.from_sample(join, recording.sfreq, BOUNDARY))
    events.sort(key=lambda ev: ev.onset_us)

    return recording.replace(data=recording.data[:, keep], events=tuple(events))


def reject_bad_windows(
    recording: Recording,
    burst_criterion: float = 30.0,
    window_criterion: float = 0.3,
    window_secs: float = 1.0,
) -> Recording:
    """Remove windows dominated by high-amplitude bursts.

    Parameters
    ----------
    recording : Recording
        Continuous recording.
    burst_criterion : float
        Robust z-score above which a channel counts as bad within a window.
    window_criterion : float
        Fraction of bad channels above which a window is removed.
    window_secs : float
        Window length in seconds.

    Returns
    -------
    Recording
        Recording with the bad windows cut out and ``boundary`` events at the
        joins.
    """
    spans = find_bad_windows(recording, burst_criterion, window_criterion, window_secs)
    removed = sum(stop - start for start, stop in spans)
    message(
        "info",
        f"Rejecting {len(spans)} spans ({removed / recording.sfreq:.2f}s of "
        f"{recording.duration:.2f}s)",
    )
    return remove_spans(recording, spans)
