"""Filtering and resampling functions.

Both functions delegate the signal processing to :mod:`mne.filter` and only
handle the recording bookkeeping: which channels are filtered, buffer layout
of epoched data and event positions after a change of sample rate.
"""

from typing import Optional, Sequence

import mne
import numpy as np

from meegflow.core.exceptions import ThresholdConfigError
from meegflow.core.recording import Event, Recording
from meegflow.utils.logging import message


def _default_picks(recording: Recording) -> list[int]:
    return [i for i, ch in enumerate(recording.channels) if ch.mne_type != "stim"]


def filter_data(
    recording: Recording,
    l_freq: Optional[float] = None,
    h_freq: Optional[float] = None,
    picks: Optional[Sequence[int]] = None,
    method: str = "fir",
    phase: str = "zero",
    fir_design: str = "firwin",
) -> Recording:
    """Apply a high-pass, low-pass or band-pass filter.

    Parameters
    ----------
    recording : Recording
        Continuous or epoched recording to filter.
    l_freq : float or None
        High-pass edge in Hz. None skips the high-pass.
    h_freq : float or None
        Low-pass edge in Hz. None skips the low-pass.
    picks : sequence of int, optional
        Channels to filter. Defaults to every channel except stim channels.
    method : str
        ``"fir"`` or ``"iir"``, passed to :func:`mne.filter.filter_data`.
    phase : str
        Filter phase, zero-phase by default.
    fir_design : str
        FIR design method.

    Returns
    -------
    Recording
        Filtered copy of the recording.

    Raises
    ------
    ThresholdConfigError
        If a cutoff is negative, at or above Nyquist, or the low-pass edge is
        not above the high-pass edge.

    Examples
    --------
    >>> rec = filter_data(rec, l_freq=1.0)
    >>> rec = filter_data(rec, h_freq=40.0)
    """
    nyquist = recording.sfreq / 2.0
    for name, freq in (("l_freq", l_freq), ("h_freq", h_freq)):
        if freq is None:
            continue
        if freq < 0:
            raise ThresholdConfigError(f"{name} must be non-negative, got {freq}")
        if freq >= nyquist:
            raise ThresholdConfigError(
                f"{name} ({freq} Hz) must be below Nyquist ({nyquist} Hz)"
            )
    if l_freq is not None and h_freq is not None and h_freq <= l_freq:
        raise ThresholdConfigError(
            f"Low-pass ({h_freq} Hz) must be above high-pass ({l_freq} Hz)"
        )

    if l_freq is None and h_freq is None:
        message("warning", "No filter cutoffs given, returning recording unchanged")
        return recording

    picks = _default_picks(recording) if picks is None else list(picks)
    data = recording.data.copy()
    # mne.filter works along the last axis
    block = np.moveaxis(data[picks], 1, -1) if recording.is_epoched else data[picks]
    filtered = mne.filter.filter_data(
        block,
        recording.sfreq,
        l_freq,
        h_freq,
        method=method,
        phase=phase,
        fir_design=fir_design,
        verbose=False,
    )
    data[picks] = np.moveaxis(filtered, -1, 1) if recording.is_epoched else filtered

    message("info", f"Filtered {len(picks)} channels: l_freq={l_freq}, h_freq={h_freq}")
    return recording.with_data(data)


def resample_data(recording: Recording, sfreq: float, npad: str | int = "auto") -> Recording:
    """Resample a recording to a new sample rate.

    The output length is ``round(n_times * sfreq / old_sfreq)``. Event onsets
    are kept in time; an event that would fall past the end of the shorter
    buffer is moved onto its last sample.

    Parameters
    ----------
    recording : Recording
        Recording to resample.
    sfreq : float
        Target sample rate in Hz.
    npad : int or "auto"
        Padding passed to :func:`mne.filter.resample`.

    Returns
    -------
    Recording
        Resampled recording.
    """
    if sfreq <= 0:
        raise ThresholdConfigError(f"Resample rate must be positive, got {sfreq}")

    old_sfreq = recording.sfreq
    if float(sfreq) == old_sfreq:
        message("info", f"Data already at {sfreq} Hz, skipping resampling")
        return recording

    data = mne.filter.resample(
        recording.data,
        up=float(sfreq),
        down=old_sfreq,
        npad=npad,
        axis=1,
        verbose=False,
    )
    n_times = data.shape[1]

    last_us = Event.from_sample(n_times - 1, sfreq, "").onset_us
    events = []
    for event in recording.events:
        if event.sample(sfreq) >= n_times:
            event = Event(last_us, event.label, event.code, event.epoch)
        events.append(event)

    message("info", f"Resampled from {old_sfreq} Hz to {sfreq} Hz ({n_times} samples)")
    return recording.replace(
        data=data,
        sfreq=float(sfreq),
        events=tuple(events),
        tmin=round(recording.tmin * sfreq) / sfreq,
    )
