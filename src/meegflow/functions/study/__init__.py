"""Group-level analysis: condition ERPs and component clustering."""

from .clustering import ClusterResult, ComponentFeatures, cluster_components, component_features
from .design import StudyDesign, condition_erps, grand_average

__all__ = [
    "ClusterResult",
    "ComponentFeatures",
    "StudyDesign",
    "cluster_components",
    "component_features",
    "condition_erps",
    "grand_average",
]
