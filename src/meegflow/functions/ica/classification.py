"""Component classification and flagging.

A classifier assigns every component a probability for each of its classes.
:class:`ThresholdPolicy` then flags components whose probability for a class
falls inside a configured range, the way EEGLAB's ``pop_icflag`` does, and the
flagged components are subtracted from the data.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Protocol, Sequence, Tuple

import mne
import numpy as np
import pandas as pd
from mne_icalabel.iclabel import iclabel_label_components

from meegflow.core.exceptions import MetadataError, ThresholdConfigError
from meegflow.core.recording import ChannelKind, Recording
from meegflow.utils.logging import message

ICLABEL_CLASSES = (
    "Brain",
    "Muscle",
    "Eye",
    "Heart",
    "Line Noise",
    "Channel Noise",
    "Other",
)


class ComponentClassifier(Protocol):
    """Anything that scores ICA components against a fixed set of classes."""

    classes: Sequence[str]

    def score(self, recording: Recording, ica: mne.preprocessing.ICA) -> np.ndarray:
        """Return an ``n_components x n_classes`` probability matrix."""
        ...


class ICLabelClassifier:
    """ICLabel network from mne-icalabel. EEG only."""

    classes = ICLABEL_CLASSES

    def score(self, recording: Recording, ica: mne.preprocessing.ICA) -> np.ndarray:
        signal = recording.select_channels(lambda ch: ch.kind == ChannelKind.SIGNAL)
        if any(ch.mne_type != "eeg" for ch in signal.channels):
            raise MetadataError("ICLabel can only classify components of EEG channels")
        if any(ch.position is None for ch in signal.channels):
            raise MetadataError("ICLabel needs a position for every EEG channel")

        inst = signal.to_mne()
        try:
            probabilities = iclabel_label_components(inst, ica, inplace=False, backend="onnx")
        except Exception as e:
            message("error", f"Error during ICLabel: {str(e)}")
            raise RuntimeError(f"Failed to classify components: {str(e)}") from e
        return np.asarray(probabilities, dtype=float)


@dataclass
class ThresholdPolicy:
    """Class name -> ``(low, high)`` probability range that flags a component.

    Example: ``{"Muscle": (0.9, 1.0), "Eye": (0.9, 1.0)}`` flags components
    that are at least 90% muscle or eye.
    """

    ranges: Dict[str, Tuple[float, float]] = field(default_factory=dict)

    def __post_init__(self):
        validated = {}
        for label, bounds in self.ranges.items():
            try:
                low, high = (float(v) for v in bounds)
            except (TypeError, ValueError) as e:
                raise ThresholdConfigError(
                    f"Range for '{label}' must be a [low, high] pair, got {bounds!r}"
                ) from e
            if not 0 <= low <= high <= 1:
                raise ThresholdConfigError(
                    f"Range for '{label}' must satisfy 0 <= low <= high <= 1, got [{low}, {high}]"
                )
            validated[label] = (low, high)
        self.ranges = validated

    @classmethod
    def from_config(cls, config: Mapping[str, Sequence[float]]) -> "ThresholdPolicy":
        return cls(dict(config))

    def flag(self, classes: Sequence[str], probabilities: np.ndarray) -> List[int]:
        """Indices of the components falling in any configured range."""
        unknown = set(self.ranges) - set(classes)
        if unknown:
            raise ThresholdConfigError(
                f"Unknown component classes {sorted(unknown)}, expected one of {list(classes)}"
            )
        flagged = np.zeros(probabilities.shape[0], dtype=bool)
        for label, (low, high) in self.ranges.items():
            column = probabilities[:, list(classes).index(label)]
            flagged |= (column >= low) & (column <= high)
        return np.flatnonzero(flagged).tolist()


def classify_components(
    recording: Recording, ica: mne.preprocessing.ICA, classifier: ComponentClassifier
) -> Recording:
    """Score the components of ``recording`` and store the probabilities on it."""
    if recording.components is None:
        raise MetadataError("Recording has no component decomposition to classify")
    probabilities = classifier.score(recording, ica)
    expected = (recording.components.n_components, len(classifier.classes))
    if probabilities.shape != expected:
        raise MetadataError(
            f"Classifier returned probabilities of shape {probabilities.shape}, expected {expected}"
        )
    components = recording.components.with_scores(classifier.classes, probabilities)
    return recording.replace(components=components)


def flag_components(recording: Recording, policy: ThresholdPolicy) -> List[int]:
    """Indices of the scored components flagged by ``policy``."""
    comp = recording.components
    if comp is None or comp.probabilities is None:
        raise MetadataError("Components must be classified before they can be flagged")
    flagged = policy.flag(comp.classes, comp.probabilities)
    message("info", f"Flagged {len(flagged)} of {comp.n_components} components: {flagged}")
    return flagged


def brain_components(recording: Recording, label: str = "Brain") -> List[int]:
    """Components whose most probable class is ``label``."""
    comp = recording.components
    if comp is None or comp.probabilities is None:
        raise MetadataError("Components must be classified first")
    if label not in comp.classes:
        raise ThresholdConfigError(f"Unknown component class '{label}'")
    return np.flatnonzero(comp.dominant_class() == comp.classes.index(label)).tolist()


def components_table(recording: Recording) -> pd.DataFrame:
    """One row per component with its most probable class and confidence."""
    comp = recording.components
    if comp is None or comp.probabilities is None:
        raise MetadataError("Components must be classified first")
    dominant = comp.dominant_class()
    annotator = "ic_label" if comp.classes == ICLABEL_CLASSES else "classifier"
    return pd.DataFrame(
        dict(
            component=[f"IC{i:03d}" for i in range(comp.n_components)],
            annotator=[annotator] * comp.n_components,
            ic_type=[comp.classes[i] for i in dominant],
            confidence=comp.probabilities.max(axis=1),
        )
    )
