"""ICA decomposition and component classification."""

from .classification import (
    ICLABEL_CLASSES,
    ICLabelClassifier,
    ThresholdPolicy,
    brain_components,
    classify_components,
    components_table,
    flag_components,
)
from .decomposition import default_ica_method, fit_ica

__all__ = [
    "ICLABEL_CLASSES",
    "ICLabelClassifier",
    "ThresholdPolicy",
    "brain_components",
    "classify_components",
    "components_table",
    "default_ica_method",
    "fit_ica",
    "flag_components",
]
