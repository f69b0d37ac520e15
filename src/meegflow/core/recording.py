"""Recording model for meegflow.

A :class:`Recording` is the single state container that flows through a
pipeline run: a multichannel buffer (channels x time, or channels x time x
trials once epoched), its sample rate, channel metadata, an ordered sequence of
events and, after ICA, the component decomposition.

Every operation returns a new Recording. The buffer may be shared between the
old and the new instance when an operation does not touch it, so callers must
treat ``data`` as read-only and must not rely on aliasing surviving a
:meth:`Recording.select_channels` call.

Buffer values are kept in display units (microvolts for EEG/EOG/ECG, fT for
magnetometers, fT/cm for gradiometers) so that amplitude thresholds read as
they do in EEGLAB. :meth:`Recording.to_mne` converts back to SI units.
"""

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

import mne
import numpy as np
import pandas as pd
from mne.defaults import DEFAULTS

from meegflow.core.exceptions import (
    InvalidSelectorError,
    MetadataError,
    OutOfRangeError,
)
from meegflow.utils.logging import message

__all__ = [
    "BOUNDARY",
    "Channel",
    "ChannelKind",
    "ComponentDecomposition",
    "Event",
    "Recording",
]

# Label of the marker inserted where data was cut out of a continuous buffer
BOUNDARY = "boundary"


class ChannelKind(str, Enum):
    """Physical kind of a channel."""

    SIGNAL = "signal"
    REFERENCE = "reference"
    OCULAR = "ocular"
    CARDIAC = "cardiac"
    UNKNOWN = "unknown"


_KIND_BY_TYPE = {
    "EEG": ChannelKind.SIGNAL,
    "MEG": ChannelKind.SIGNAL,
    "MEGMAG": ChannelKind.SIGNAL,
    "MEGPLANAR": ChannelKind.SIGNAL,
    "MEGGRAD": ChannelKind.SIGNAL,
    "REF": ChannelKind.REFERENCE,
    "EOG": ChannelKind.OCULAR,
    "HEOG": ChannelKind.OCULAR,
    "VEOG": ChannelKind.OCULAR,
    "ECG": ChannelKind.CARDIAC,
    "EKG": ChannelKind.CARDIAC,
}

_MNE_TYPE_BY_TYPE = {
    "EEG": "eeg",
    "MEGMAG": "mag",
    "MEGPLANAR": "grad",
    "MEGGRAD": "grad",
    "EOG": "eog",
    "HEOG": "eog",
    "VEOG": "eog",
    "ECG": "ecg",
    "EKG": "ecg",
    "EMG": "emg",
    "STIM": "stim",
}

_TYPE_BY_MNE_TYPE = {
    "eeg": "EEG",
    "mag": "MEGMAG",
    "grad": "MEGPLANAR",
    "eog": "EOG",
    "ecg": "ECG",
    "emg": "EMG",
    "stim": "STIM",
}


def kind_for_type(channel_type: str) -> ChannelKind:
    """Derive the physical kind of a channel from its type string."""
    return _KIND_BY_TYPE.get(channel_type.upper(), ChannelKind.UNKNOWN)


def _display_scaling(mne_type: str) -> float:
    return float(DEFAULTS["scalings"].get(mne_type, 1.0))


@dataclass(frozen=True)
class Channel:
    """One channel of a recording.

    Attributes:
        label: Channel name, e.g. ``EEG065`` or ``STI101``
        type: Channel type string (``EEG``, ``MEGMAG``, ``MEGPLANAR``, ``HEOG``...)
        kind: Physical kind, derived from ``type`` when omitted
        position: Optional ``(x, y, z)`` sensor position
    """

    label: str
    type: str = "EEG"
    kind: Optional[ChannelKind] = None
    position: Optional[Tuple[float, float, float]] = None

    def __post_init__(self):
        if self.kind is None:
            object.__setattr__(self, "kind", kind_for_type(self.type))
        elif not isinstance(self.kind, ChannelKind):
            try:
                object.__setattr__(self, "kind", ChannelKind(str(self.kind).lower()))
            except ValueError as e:
                raise MetadataError(f"Unknown channel kind '{self.kind}' for {self.label}") from e

        if self.position is not None:
            position = tuple(float(v) for v in self.position)
            if len(position) != 3:
                raise MetadataError(
                    f"Channel {self.label} position must have 3 coordinates, got {len(position)}"
                )
            object.__setattr__(self, "position", position)

    @property
    def mne_type(self) -> str:
        """MNE channel type used when handing data to MNE."""
        return _MNE_TYPE_BY_TYPE.get(self.type.upper(), "misc")


@dataclass(frozen=True)
class Event:
    """A labelled timestamp within a recording.

    ``onset_us`` is counted in integer microseconds from the first sample of the
    buffer (of the trial, for epoched recordings), which keeps timestamp shifts
    exact and independent of the sample rate.
    """

    onset_us: int
    label: str
    code: Optional[int] = None
    epoch: Optional[int] = None

    @classmethod
    def from_seconds(
        cls, onset: float, label: str, code: Optional[int] = None, epoch: Optional[int] = None
    ) -> "Event":
        return cls(int(round(onset * 1e6)), str(label), code, epoch)

    @classmethod
    def from_sample(
        cls, sample: int, sfreq: float, label: str, code: Optional[int] = None,
        epoch: Optional[int] = None,
    ) -> "Event":
        return cls(int(round(sample * 1e6 / sfreq)), str(label), code, epoch)

    @property
    def onset(self) -> float:
        """Onset in seconds."""
        return self.onset_us / 1e6

    def sample(self, sfreq: float) -> int:
        """Index of the sample this event falls on."""
        return int(round(self.onset_us * sfreq / 1e6))


@dataclass(frozen=True, eq=False)
class ComponentDecomposition:
    """Linear source decomposition (ICA) attached to a recording.

    ``mixing`` maps components to the channels listed in ``channel_labels``
    (channels x components), ``unmixing`` is its inverse (components x
    channels). ``probabilities`` holds one row of class probabilities per
    component once a classifier has scored them.
    """

    mixing: np.ndarray
    unmixing: np.ndarray
    channel_labels: Tuple[str, ...]
    method: str = ""
    classes: Tuple[str, ...] = ()
    probabilities: Optional[np.ndarray] = None

    def __post_init__(self):
        mixing = np.asarray(self.mixing, dtype=float)
        unmixing = np.asarray(self.unmixing, dtype=float)
        object.__setattr__(self, "mixing", mixing)
        object.__setattr__(self, "unmixing", unmixing)
        object.__setattr__(self, "channel_labels", tuple(self.channel_labels))
        object.__setattr__(self, "classes", tuple(self.classes))

        if mixing.shape[0] != len(self.channel_labels):
            raise MetadataError("Mixing matrix rows must match the decomposition channels")
        if unmixing.shape != (mixing.shape[1], mixing.shape[0]):
            raise MetadataError(
                f"Unmixing matrix shape {unmixing.shape} does not invert mixing {mixing.shape}"
            )
        if self.probabilities is not None:
            probabilities = np.asarray(self.probabilities, dtype=float)
            if probabilities.shape != (mixing.shape[1], len(self.classes)):
                raise MetadataError(
                    "Component probabilities must be n_components x n_classes"
                )
            object.__setattr__(self, "probabilities", probabilities)

    @property
    def n_components(self) -> int:
        return self.mixing.shape[1]

    def with_scores(self, classes: Sequence[str], probabilities: np.ndarray) -> "ComponentDecomposition":
        return dataclasses.replace(self, classes=tuple(classes), probabilities=probabilities)

    def drop(self, indices: Sequence[int]) -> "ComponentDecomposition":
        """Decomposition without the given components."""
        keep = [i for i in range(self.n_components) if i not in set(indices)]
        probabilities = None if self.probabilities is None else self.probabilities[keep]
        return dataclasses.replace(
            self,
            mixing=self.mixing[:, keep],
            unmixing=self.unmixing[keep, :],
            probabilities=probabilities,
        )

    def dominant_class(self) -> Optional[np.ndarray]:
        """Index of the most probable class per component."""
        if self.probabilities is None:
            return None
        return np.argmax(self.probabilities, axis=1)


@dataclass(frozen=True, eq=False)
class Recording:
    """Multichannel recording plus its event annotations.

    Attributes:
        data: Buffer, channels x time or channels x time x trials
        sfreq: Sample rate in Hz
        channels: Channel metadata, one entry per buffer row
        events: Ordered (not necessarily sorted) event sequence
        tmin: Time of the first sample relative to the locking event, in seconds
        fiducials: Named anatomical landmarks (``LPA``, ``RPA``, ``Nz``)
        components: ICA decomposition, if one was computed
        subject: Subject identifier
        setname: Dataset name
        history: Names of the stages applied so far
    """

    data: np.ndarray
    sfreq: float
    channels: Tuple[Channel, ...]
    events: Tuple[Event, ...] = ()
    tmin: float = 0.0
    fiducials: Mapping[str, Tuple[float, float, float]] = field(default_factory=dict)
    components: Optional[ComponentDecomposition] = None
    subject: str = ""
    setname: str = ""
    history: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "data", np.asarray(self.data, dtype=float))
        object.__setattr__(self, "sfreq", float(self.sfreq))
        object.__setattr__(self, "channels", tuple(self.channels))
        object.__setattr__(self, "events", tuple(self.events))
        object.__setattr__(self, "history", tuple(self.history))
        object.__setattr__(
            self,
            "fiducials",
            {name: tuple(float(v) for v in pos) for name, pos in dict(self.fiducials).items()},
        )
        self.validate()

    # ------------------------------------------------------------------
    # Invariants and read access
    # ------------------------------------------------------------------
    def validate(self) -> None:
        """Check the structural invariants of the recording.

        Raises:
            MetadataError: If the buffer and channel list disagree or the sample
                rate is not positive
            OutOfRangeError: If an event points outside the buffer
        """
        if self.data.ndim not in (2, 3):
            raise MetadataError(
                f"Buffer must be channels x time [x trials], got {self.data.ndim} dimensions"
            )
        if not self.sfreq > 0:
            raise MetadataError(f"Sample rate must be positive, got {self.sfreq}")
        if self.data.shape[0] != len(self.channels):
            raise MetadataError(
                f"Buffer has {self.data.shape[0]} channels but {len(self.channels)} "
                "channel entries were given"
            )

        n_times, n_trials = self.n_times, self.n_trials
        for index, event in enumerate(self.events):
            sample = event.sample(self.sfreq)
            if not 0 <= sample < n_times:
                raise OutOfRangeError(
                    f"Event {index} ('{event.label}') at {event.onset:.6f}s lies outside "
                    f"the buffer of {n_times} samples"
                )
            if self.is_epoched:
                if event.epoch is None or not 0 <= event.epoch < n_trials:
                    raise OutOfRangeError(
                        f"Event {index} ('{event.label}') refers to trial {event.epoch}, "
                        f"recording has {n_trials}"
                    )
            elif event.epoch is not None:
                raise MetadataError(
                    f"Event {index} ('{event.label}') has a trial index on continuous data"
                )

    @property
    def n_channels(self) -> int:
        return self.data.shape[0]

    @property
    def n_times(self) -> int:
        return self.data.shape[1]

    @property
    def n_trials(self) -> int:
        return self.data.shape[2] if self.data.ndim == 3 else 1

    @property
    def is_epoched(self) -> bool:
        return self.data.ndim == 3

    @property
    def ch_names(self) -> list[str]:
        return [ch.label for ch in self.channels]

    @property
    def times(self) -> np.ndarray:
        """Time of every sample in seconds, relative to the locking event."""
        return self.tmin + np.arange(self.n_times) / self.sfreq

    @property
    def duration(self) -> float:
        return self.n_times / self.sfreq

    def event_samples(self) -> np.ndarray:
        return np.array([ev.sample(self.sfreq) for ev in self.events], dtype=int)

    def channel_index(self, label: str) -> int:
        """Index of the channel called ``label``.

        Raises:
            InvalidSelectorError: If no channel has that label
        """
        for index, channel in enumerate(self.channels):
            if channel.label == label:
                return index
        raise InvalidSelectorError(f"No channel labelled '{label}'")

    def locking_labels(self) -> list[str]:
        """Label of the time-locking event of every trial ("" when missing)."""
        if not self.is_epoched:
            raise MetadataError("Locking labels are only defined for epoched recordings")
        lock = int(round(-self.tmin * self.sfreq))
        labels = [""] * self.n_trials
        for event in self.events:
            if event.sample(self.sfreq) == lock and not labels[event.epoch]:
                labels[event.epoch] = event.label
        return labels

    def summary(self) -> pd.DataFrame:
        """Count events per label, the way ``eeg_eventtypes`` lists them."""
        labels = pd.Series([ev.label for ev in self.events], dtype="object")
        counts = labels.value_counts().sort_index()
        return pd.DataFrame({"label": counts.index, "count": counts.values})

    # ------------------------------------------------------------------
    # Value-returning mutations
    # ------------------------------------------------------------------
    def replace(self, **changes: Any) -> "Recording":
        """New recording with the given fields replaced (validated again)."""
        return dataclasses.replace(self, **changes)

    def with_data(self, data: np.ndarray, **changes: Any) -> "Recording":
        return self.replace(data=data, **changes)

    def add_history(self, entry: str) -> "Recording":
        return self.replace(history=self.history + (entry,))

    def set_channel_metadata(self, index: int, **fields: Any) -> "Recording":
        """Change label, type, kind or position of one channel.

        Setting ``type`` without ``kind`` re-derives the kind from the new type;
        ``position=None`` clears the position.

        Raises:
            OutOfRangeError: If ``index`` is not a valid channel index
            MetadataError: If an unknown field is given
        """
        if not 0 <= index < self.n_channels:
            raise OutOfRangeError(
                f"Channel index {index} out of range for {self.n_channels} channels"
            )
        unknown = set(fields) - {"label", "type", "kind", "position"}
        if unknown:
            raise MetadataError(f"Unknown channel fields: {sorted(unknown)}")

        if "type" in fields and "kind" not in fields:
            fields["kind"] = None
        channels = list(self.channels)
        channels[index] = dataclasses.replace(channels[index], **fields)
        return self.replace(channels=tuple(channels))

    def select_channels(
        self, predicate: Callable[[Channel], bool], require_match: bool = False
    ) -> "Recording":
        """Restrict the recording to the channels matching ``predicate``.

        The event list is left unchanged.

        Raises:
            InvalidSelectorError: If nothing matches and ``require_match`` is set
        """
        keep = [i for i, channel in enumerate(self.channels) if predicate(channel)]
        if not keep and require_match:
            raise InvalidSelectorError("Channel selector matched no channels")
        return self.replace(
            data=self.data[keep],
            channels=tuple(self.channels[i] for i in keep),
        )

    def pick_types(self, chantypes: Iterable[str]) -> "Recording":
        """Keep channels whose type is one of ``chantypes`` (case-insensitive)."""
        wanted = {t.upper() for t in chantypes}
        return self.select_channels(lambda ch: ch.type.upper() in wanted, require_match=True)

    def drop_channels(self, labels: Iterable[str]) -> "Recording":
        labels = set(labels)
        missing = labels - set(self.ch_names)
        if missing:
            raise InvalidSelectorError(f"Cannot drop unknown channels: {sorted(missing)}")
        return self.select_channels(lambda ch: ch.label not in labels)

    def select_events(
        self,
        predicate: Callable[[Event], bool],
        relabel: Optional[Callable[[Event], str]] = None,
        drop_unmatched: bool = True,
        require_match: bool = False,
    ) -> "Recording":
        """Filter and optionally relabel the event sequence.

        Args:
            predicate: Selects the events to keep (and relabel)
            relabel: Returns the new label of a selected event
            drop_unmatched: Drop events not selected by ``predicate``; when
                False they are kept with their label unchanged
            require_match: Raise if ``predicate`` selects nothing

        Raises:
            InvalidSelectorError: If nothing matches and ``require_match`` is set
        """
        events = []
        matched = 0
        for event in self.events:
            if predicate(event):
                matched += 1
                if relabel is not None:
                    event = dataclasses.replace(event, label=str(relabel(event)))
                events.append(event)
            elif not drop_unmatched:
                events.append(event)

        if matched == 0 and require_match:
            raise InvalidSelectorError("Event selector matched no events")
        return self.replace(events=tuple(events))

    def shift_event_timestamps(
        self, delta_ms: float, drop_out_of_bounds: bool = False
    ) -> "Recording":
        """Translate every event onset by ``delta_ms`` milliseconds.

        The shift is applied in integer microseconds, so shifting by ``d`` and
        then by ``-d`` restores the original onsets exactly.

        Raises:
            OutOfRangeError: If an event would leave the buffer and
                ``drop_out_of_bounds`` is False
        """
        delta_us = int(round(delta_ms * 1000))
        events = []
        for index, event in enumerate(self.events):
            shifted = dataclasses.replace(event, onset_us=event.onset_us + delta_us)
            if 0 <= shifted.sample(self.sfreq) < self.n_times:
                events.append(shifted)
            elif drop_out_of_bounds:
                continue
            else:
                raise OutOfRangeError(
                    f"Shifting event {index} ('{event.label}') by {delta_ms} ms moves it "
                    "outside the buffer"
                )
        return self.replace(events=tuple(events))

    def set_fiducials(self, fiducials: Mapping[str, Sequence[float]]) -> "Recording":
        merged = dict(self.fiducials)
        for name, position in fiducials.items():
            if len(position) != 3:
                raise MetadataError(f"Fiducial {name} must have 3 coordinates")
            merged[name] = tuple(float(v) for v in position)
        return self.replace(fiducials=merged)

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------
    def _component_rows(self) -> list[int]:
        if self.components is None:
            raise MetadataError("Recording has no component decomposition")
        try:
            return [self.channel_index(label) for label in self.components.channel_labels]
        except InvalidSelectorError as e:
            raise MetadataError(
                f"Decomposition channels no longer present in the recording: {e}"
            ) from e

    def component_activations(self) -> np.ndarray:
        """Component time courses (components x time [x trials])."""
        rows = self._component_rows()
        return np.tensordot(self.components.unmixing, self.data[rows], axes=(1, 0))

    def remove_components(self, indices: Iterable[int]) -> "Recording":
        """Subtract the back-projection of the given components.

        The removed components are dropped from the decomposition.

        Raises:
            MetadataError: If the recording has no decomposition
            OutOfRangeError: If a component index is invalid
        """
        rows = self._component_rows()
        comp = self.components
        indices = sorted({int(i) for i in indices})
        for i in indices:
            if not 0 <= i < comp.n_components:
                raise OutOfRangeError(
                    f"Component {i} out of range for {comp.n_components} components"
                )
        if not indices:
            return self

        projector = comp.mixing[:, indices] @ comp.unmixing[indices, :]
        data = self.data.copy()
        data[rows] = data[rows] - np.tensordot(projector, data[rows], axes=(1, 0))
        return self.replace(data=data, components=comp.drop(indices))

    def keep_components(self, indices: Iterable[int]) -> "Recording":
        """Remove every component except the given ones."""
        if self.components is None:
            raise MetadataError("Recording has no component decomposition")
        keep = {int(i) for i in indices}
        return self.remove_components(
            i for i in range(self.components.n_components) if i not in keep
        )

    # ------------------------------------------------------------------
    # MNE conversion
    # ------------------------------------------------------------------
    def display_scalings(self) -> np.ndarray:
        return np.array([_display_scaling(ch.mne_type) for ch in self.channels])

    def to_mne(self, ch_types: Optional[Dict[str, str]] = None):
        """Convert to an MNE object in SI units.

        Args:
            ch_types: Optional label -> MNE type overrides

        Returns:
            ``mne.io.RawArray`` for continuous data, ``mne.EpochsArray`` when epoched
        """
        ch_types = ch_types or {}
        types = [ch_types.get(ch.label, ch.mne_type) for ch in self.channels]
        info = mne.create_info(self.ch_names, self.sfreq, ch_types=types)
        eeg_positions = {}
        with info._unlock():
            for index, (channel, ch_type) in enumerate(zip(self.channels, types)):
                if channel.position is None:
                    continue
                if ch_type == "eeg":
                    eeg_positions[channel.label] = np.asarray(channel.position)
                else:
                    info["chs"][index]["loc"][:3] = channel.position

        scale = np.array([_display_scaling(t) for t in types])
        if self.is_epoched:
            data = np.transpose(self.data / scale[:, None, None], (2, 0, 1))
            labels = [label or "trial" for label in self.locking_labels()]
            event_id = {label: code for code, label in enumerate(dict.fromkeys(labels), start=1)}
            lock = int(round(-self.tmin * self.sfreq))
            events = np.array(
                [[i * self.n_times + lock, 0, event_id[label]] for i, label in enumerate(labels)],
                dtype=int,
            )
            inst = mne.EpochsArray(
                data, info, events=events, tmin=self.tmin, event_id=event_id, verbose=False
            )
        else:
            inst = mne.io.RawArray(self.data / scale[:, None], info, verbose=False)
            if self.events:
                inst.set_annotations(
                    mne.Annotations(
                        onset=[ev.onset for ev in self.events],
                        duration=[0.0] * len(self.events),
                        description=[ev.label for ev in self.events],
                    )
                )

        if eeg_positions:
            montage = mne.channels.make_dig_montage(
                ch_pos=eeg_positions,
                nasion=self.fiducials.get("Nz"),
                lpa=self.fiducials.get("LPA"),
                rpa=self.fiducials.get("RPA"),
                coord_frame="head",
            )
            inst.set_montage(montage, on_missing="ignore", verbose=False)
        return inst

    @classmethod
    def from_mne(cls, inst, subject: str = "", setname: str = "") -> "Recording":
        """Build a recording from an MNE Raw or Epochs object."""
        types = inst.get_channel_types()
        scale = np.array([_display_scaling(t) for t in types])

        channels = []
        for ch, ch_type in zip(inst.info["chs"], types):
            loc = np.asarray(ch["loc"][:3], dtype=float)
            position = tuple(loc) if np.all(np.isfinite(loc)) and np.any(loc != 0) else None
            channels.append(
                Channel(
                    label=ch["ch_name"],
                    type=_TYPE_BY_MNE_TYPE.get(ch_type, ch_type.upper()),
                    position=position,
                )
            )

        sfreq = inst.info["sfreq"]
        if isinstance(inst, mne.BaseEpochs):
            data = np.transpose(inst.get_data(), (1, 2, 0)) * scale[:, None, None]
            names = {code: name for name, code in inst.event_id.items()}
            lock_us = int(round(-inst.tmin * 1e6))
            events = [
                Event(lock_us, names.get(code, str(code)), int(code), epoch=i)
                for i, code in enumerate(inst.events[:, 2])
            ]
            return cls(
                data=data, sfreq=sfreq, channels=tuple(channels), events=tuple(events),
                tmin=float(inst.tmin), subject=subject, setname=setname,
            )

        data = inst.get_data() * scale[:, None]
        annotations = inst.annotations
        offset = inst.first_time if annotations.orig_time is not None else 0.0
        events = []
        for onset, description in zip(annotations.onset - offset, annotations.description):
            code = int(description) if str(description).lstrip("-").isdigit() else None
            event = Event.from_seconds(onset, description, code)
            if not 0 <= event.sample(sfreq) < data.shape[1]:
                message(
                    "warning", f"Ignoring annotation '{description}' outside the data at {onset:.3f}s"
                )
                continue
            events.append(event)
        return cls(
            data=data, sfreq=sfreq, channels=tuple(channels), events=tuple(events),
            subject=subject, setname=setname,
        )
