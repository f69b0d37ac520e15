"""Referencing functions.

Average and channel referencing of the signal channels of a recording. The
reference is computed over the signal channels only; ocular, cardiac and stim
channels are left untouched.
"""

from typing import List, Optional, Sequence, Union

from meegflow.core.exceptions import InvalidSelectorError
from meegflow.core.recording import ChannelKind, Recording
from meegflow.utils.logging import message


def rereference_data(
    recording: Recording,
    ref_channels: Union[str, List[str]] = "average",
    picks: Optional[Sequence[int]] = None,
) -> Recording:
    """Apply a referencing scheme to the signal channels.

    Parameters
    ----------
    recording : Recording
        Continuous or epoched recording.
    ref_channels : str or list of str, default 'average'
        ``'average'`` subtracts the mean of all referenced channels from each
        of them; a label or list of labels subtracts the mean of those
        channels instead.
    picks : sequence of int, optional
        Channels to re-reference. Defaults to all signal channels.

    Returns
    -------
    Recording
        Re-referenced copy of the recording.

    Raises
    ------
    InvalidSelectorError
        If a reference channel is not in the recording or there is nothing to
        re-reference.

    Notes
    -----
    An average reference reduces the rank of the data by one, which is why
    :func:`meegflow.functions.ica.fit_ica` keeps one component fewer than
    channels by default.

    Examples
    --------
    >>> avg_ref = rereference_data(rec, ref_channels="average")
    >>> mastoid_ref = rereference_data(rec, ref_channels=["TP9", "TP10"])
    """
    if picks is None:
        picks = [i for i, ch in enumerate(recording.channels) if ch.kind == ChannelKind.SIGNAL]
    picks = list(picks)
    if not picks:
        raise InvalidSelectorError("No signal channels to re-reference")

    if isinstance(ref_channels, str) and ref_channels == "average":
        ref_idx = picks
    else:
        labels = [ref_channels] if isinstance(ref_channels, str) else list(ref_channels)
        if not labels:
            raise InvalidSelectorError("Empty reference channel list")
        ref_idx = [recording.channel_index(label) for label in labels]

    data = recording.data.copy()
    reference = data[ref_idx].mean(axis=0, keepdims=True)
    data[picks] = data[picks] - reference

    message(
        "info",
        f"Re-referenced {len(picks)} channels to "
        f"{'average' if ref_idx is picks else ref_channels}",
    )
    return recording.with_data(data)


def average_reference_rank(recording: Recording) -> int:
    """Rank of the signal channels after an average reference."""
    n_signal = sum(ch.kind == ChannelKind.SIGNAL for ch in recording.channels)
    return max(n_signal - 1, 1)
