"""meegflow standalone functions.

Every function takes a :class:`~meegflow.core.recording.Recording` and
explicit parameters and returns a new Recording, so they can be used outside
the pipeline in custom workflows.

The functions are organized by category:
- events: Trigger extraction and event remapping
- preprocessing: Filtering, resampling, referencing, channel and window cleaning
- ica: Decomposition and component classification
- epoching: Epoch creation, baseline, rejection and averaging
- study: Condition ERPs and component clustering across subjects

Examples
--------
>>> from meegflow.functions import filter_data, resample_data, create_epochs
>>> rec = resample_data(filter_data(rec, l_freq=1.0, h_freq=40.0), sfreq=100)
>>> epochs = create_epochs(rec, ["Famous"], tmin=-1, tmax=2)
"""

from .epoching import (
    average_epochs,
    create_epochs,
    epoch_conditions,
    reject_by_amplitude,
    remove_baseline,
)
from .events import (
    EventOverride,
    RenameTable,
    apply_overrides,
    detect_rising_edges,
    events_from_channel,
)
from .ica import ThresholdPolicy, classify_components, fit_ica, flag_components
from .preprocessing import (
    detect_bad_channels,
    filter_data,
    reject_bad_windows,
    rereference_data,
    resample_data,
)

__all__ = [
    "EventOverride",
    "RenameTable",
    "ThresholdPolicy",
    "apply_overrides",
    "average_epochs",
    "classify_components",
    "create_epochs",
    "detect_bad_channels",
    "detect_rising_edges",
    "epoch_conditions",
    "events_from_channel",
    "filter_data",
    "fit_ica",
    "flag_components",
    "reject_bad_windows",
    "reject_by_amplitude",
    "remove_baseline",
    "rereference_data",
    "resample_data",
]
