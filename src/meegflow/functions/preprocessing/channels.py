"""Channel-level functions: retyping, bad channel detection and recentering."""

import dataclasses
from typing import Iterable, List, Mapping, Optional

import mne
import numpy as np
from pyprep.find_noisy_channels import NoisyChannels

from meegflow.core.exceptions import MetadataError, ThresholdConfigError
from meegflow.core.recording import ChannelKind, Recording
from meegflow.utils.logging import message


def set_channel_types(
    recording: Recording, mapping: Mapping[str, str], clear_position: bool = True
) -> Recording:
    """Retype channels by label, e.g. mark EEG061 as HEOG.

    Retyped channels lose their sensor position unless ``clear_position`` is
    False, since positions of ocular and cardiac electrodes are not part of the
    scalp montage.
    """
    result = recording
    for label, channel_type in mapping.items():
        index = recording.channel_index(label)
        fields = {"type": channel_type}
        if clear_position:
            fields["position"] = None
        result = result.set_channel_metadata(index, **fields)
    message("info", f"Retyped channels: {dict(mapping)}")
    return result


def default_correlation_threshold(recording: Recording) -> float:
    """Channel correlation criterion: 0.4 for MEG, 0.9 for EEG."""
    if recording.channels and recording.channels[0].type.upper().startswith("MEG"):
        return 0.4
    return 0.9


def detect_bad_channels(
    recording: Recording,
    correlation_threshold: Optional[float] = None,
    max_bad_time: float = 0.4,
    line_noise_criterion: float = 4.0,
    correlation_secs: float = 1.0,
    random_state: int = 1337,
) -> List[str]:
    """Detect bad signal channels with pyprep's NoisyChannels.

    Args:
        recording: Continuous recording
        correlation_threshold: Minimum acceptable correlation with the other
            channels; defaults to :func:`default_correlation_threshold`
        max_bad_time: Fraction of correlation windows a channel may fail
            before it is flagged
        line_noise_criterion: Robust z-score above which high-frequency noise
            flags a channel
        correlation_secs: Length of the correlation windows in seconds
        random_state: Seed for pyprep

    Returns:
        Labels of the bad channels, in recording order

    Raises:
        ThresholdConfigError: If a criterion is out of range
        RuntimeError: If detection fails
    """
    if correlation_threshold is None:
        correlation_threshold = default_correlation_threshold(recording)
    if not 0 < correlation_threshold <= 1:
        raise ThresholdConfigError(
            f"Correlation threshold must be in (0, 1], got {correlation_threshold}"
        )
    if not 0 < max_bad_time <= 1:
        raise ThresholdConfigError(f"max_bad_time must be in (0, 1], got {max_bad_time}")
    if recording.is_epoched:
        raise MetadataError("Bad channel detection needs continuous data")

    picks = [i for i, ch in enumerate(recording.channels) if ch.kind == ChannelKind.SIGNAL]
    labels = [recording.channels[i].label for i in picks]

    # pyprep only looks at EEG channels, so every signal channel is handed over
    # as EEG in volts
    info = mne.create_info(labels, recording.sfreq, ch_types="eeg")
    raw = mne.io.RawArray(recording.data[picks] * 1e-6, info, verbose=False)

    message("header", "Detecting bad channels...")
    try:
        noisy = NoisyChannels(raw, random_state=random_state)
        noisy.find_bad_by_nan_flat()
        noisy.find_bad_by_correlation(
            correlation_secs=correlation_secs,
            correlation_threshold=correlation_threshold,
            frac_bad=max_bad_time,
        )
        noisy.find_bad_by_hfnoise(HF_zscore_threshold=line_noise_criterion)
        bads = set(noisy.get_bads())
    except Exception as e:
        message("error", f"Error during bad channel detection: {str(e)}")
        raise RuntimeError(f"Failed to detect bad channels: {str(e)}") from e

    ordered = [label for label in labels if label in bads]
    message("info", f"Detected {len(ordered)} bad channels: {ordered}")
    return ordered


def remove_bad_channels(recording: Recording, bads: Iterable[str]) -> Recording:
    bads = list(bads)
    if not bads:
        return recording
    message("info", f"Removing {len(bads)} bad channels")
    return recording.drop_channels(bads)


def recenter_channels(recording: Recording) -> Recording:
    """Move the origin of the channel positions to their best-fitting sphere center.

    Channels without a position are left as they are. Fewer than four
    positioned channels cannot define a sphere and the recording is returned
    unchanged.
    """
    indices = [i for i, ch in enumerate(recording.channels) if ch.position is not None]
    if len(indices) < 4:
        message("warning", "Not enough channel positions to fit a sphere, skipping recentering")
        return recording

    positions = np.array([recording.channels[i].position for i in indices])
    # |p|^2 = 2 p.c + (r^2 - |c|^2), linear in c and the constant term
    design = np.column_stack([2 * positions, np.ones(len(positions))])
    target = np.sum(positions**2, axis=1)
    solution, *_ = np.linalg.lstsq(design, target, rcond=None)
    center = solution[:3]

    channels = list(recording.channels)
    for i, position in zip(indices, positions):
        channels[i] = dataclasses.replace(channels[i], position=tuple(position - center))

    message("info", f"Recentered channel positions on {np.round(center, 3).tolist()}")
    return recording.replace(channels=tuple(channels))

