"""Group-level study design and ERP measures."""

from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from meegflow.core.exceptions import MetadataError
from meegflow.core.recording import Recording
from meegflow.functions.epoching.epochs import average_epochs, remove_baseline, select_trials
from meegflow.utils.logging import message


@dataclass
class StudyDesign:
    """One independent variable whose conditions group event labels.

    Attributes:
        variable: Name of the variable (e.g. ``"type"``)
        conditions: Condition name -> labels of the events belonging to it
    """

    variable: str
    conditions: Dict[str, frozenset] = field(default_factory=dict)

    def __post_init__(self):
        self.conditions = {
            name: frozenset(str(label) for label in labels)
            for name, labels in self.conditions.items()
        }
        seen: Dict[str, str] = {}
        for name, labels in self.conditions.items():
            if not labels:
                raise MetadataError(f"Condition '{name}' has no event labels")
            for label in labels:
                if label in seen:
                    raise MetadataError(
                        f"Label '{label}' belongs to both '{seen[label]}' and '{name}'"
                    )
                seen[label] = name

    @classmethod
    def from_config(cls, config: Mapping) -> "StudyDesign":
        return cls(config.get("variable", "type"), dict(config["conditions"]))

    def condition_of(self, label: str) -> Optional[str]:
        for name, labels in self.conditions.items():
            if label in labels:
                return name
        return None


def condition_erps(
    recording: Recording,
    design: StudyDesign,
    baseline: Optional[Tuple[float, float]] = (-0.2, 0.0),
) -> Dict[str, Recording]:
    """Average the trials of each design condition.

    The trials of an epoched recording are grouped by the condition of their
    locking event; trials whose locking event belongs to no condition are
    ignored. Conditions without trials are left out of the result.
    """
    if not recording.is_epoched:
        raise MetadataError("Condition ERPs need epoched data")
    if baseline is not None:
        recording = remove_baseline(recording, baseline)

    groups: Dict[str, List[int]] = {name: [] for name in design.conditions}
    for trial, label in enumerate(recording.locking_labels()):
        condition = design.condition_of(label)
        if condition is not None:
            groups[condition].append(trial)

    erps = {}
    for condition, trials in groups.items():
        if not trials:
            message("warning", f"No trials for condition '{condition}'")
            continue
        erp = average_epochs(select_trials(recording, trials))
        erps[condition] = erp.replace(setname=f"{recording.subject}_{condition}")
    return erps


def grand_average(erps: Sequence[Recording]) -> Recording:
    """Average ERPs across subjects over the channels they share.

    Raises:
        MetadataError: If the ERPs differ in sample rate, length or epoch start
            or share no channel
    """
    if not erps:
        raise MetadataError("Grand average needs at least one ERP")
    first = erps[0]
    for erp in erps[1:]:
        if (erp.sfreq, erp.n_times, erp.tmin) != (first.sfreq, first.n_times, first.tmin):
            raise MetadataError("ERPs differ in sample rate, length or epoch start")

    common = [label for label in first.ch_names if all(label in erp.ch_names for erp in erps[1:])]
    if not common:
        raise MetadataError("ERPs share no channel")

    stacked = np.stack(
        [erp.data[[erp.channel_index(label) for label in common]] for erp in erps]
    )
    channels = tuple(first.channels[first.channel_index(label)] for label in common)
    message("info", f"Grand average of {len(erps)} ERPs over {len(common)} channels")
    return first.replace(
        data=stacked.mean(axis=0),
        channels=channels,
        components=None,
        subject="group",
    )
