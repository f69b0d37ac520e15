"""Clustering of ICA components across subjects.

Each subject contributes one feature vector per component, built from the
component ERP and the absolute scalp map. Every measure is reduced with PCA,
normalised and weighted, the measures are concatenated and the result is
clustered with k-means. Components far from their centroid form a separate
outlier cluster (label ``-1``).
"""

from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Tuple

import numpy as np
from scipy.cluster.vq import kmeans2

from meegflow.core.exceptions import MetadataError, ThresholdConfigError
from meegflow.core.recording import Recording
from meegflow.functions.epoching.epochs import remove_baseline
from meegflow.utils.logging import message

OUTLIER = -1


@dataclass
class ComponentFeatures:
    """Per-component measures of one subject."""

    subject: str
    erp: np.ndarray  # components x times
    scalp: np.ndarray  # components x channels
    channel_labels: Tuple[str, ...]


@dataclass
class ClusterResult:
    """Cluster assignment of every (subject, component) pair."""

    labels: np.ndarray
    members: List[Tuple[str, int]]
    centroids: np.ndarray

    def cluster(self, label: int) -> List[Tuple[str, int]]:
        return [member for member, lab in zip(self.members, self.labels) if lab == label]

    @property
    def outliers(self) -> List[Tuple[str, int]]:
        return self.cluster(OUTLIER)


def component_features(
    recording: Recording,
    erp_window: Tuple[float, float] = (0.1, 0.8),
    baseline: Optional[Tuple[float, float]] = (-0.2, 0.0),
) -> ComponentFeatures:
    """ERP (inside ``erp_window``) and absolute scalp map of every component."""
    if recording.components is None:
        raise MetadataError("Recording has no component decomposition")
    if not recording.is_epoched:
        raise MetadataError("Component features need epoched data")

    if baseline is not None:
        recording = remove_baseline(recording, baseline)
    activations = recording.component_activations()
    times = recording.times
    mask = (times >= erp_window[0]) & (times <= erp_window[1])
    if not mask.any():
        raise ThresholdConfigError(f"ERP window {erp_window} contains no samples")

    scalp = np.abs(recording.components.mixing.T)
    norms = np.linalg.norm(scalp, axis=1, keepdims=True)
    scalp = np.divide(scalp, norms, out=np.zeros_like(scalp), where=norms > 0)

    return ComponentFeatures(
        subject=recording.subject,
        erp=activations[:, mask, :].mean(axis=2),
        scalp=scalp,
        channel_labels=recording.components.channel_labels,
    )


def _reduce(values: np.ndarray, npca: int) -> np.ndarray:
    """Project onto the first ``npca`` principal components, scaled by the
    standard deviation of the first one."""
    centered = values - values.mean(axis=0)
    u, s, _ = np.linalg.svd(centered, full_matrices=False)
    n = min(npca, len(s))
    scores = u[:, :n] * s[:n]
    scale = scores[:, 0].std() if scores.size else 0.0
    return scores / scale if scale > 0 else scores


def cluster_components(
    features: Sequence[ComponentFeatures],
    n_clusters: int = 15,
    outlier_sd: Optional[float] = 2.8,
    npca: int = 10,
    weights: Optional[Mapping[str, float]] = None,
    seed: int = 0,
) -> ClusterResult:
    """Cluster the components of all subjects.

    Parameters
    ----------
    features : sequence of ComponentFeatures
        One entry per subject.
    n_clusters : int
        Number of k-means clusters.
    outlier_sd : float or None
        Components further than this many standard deviations from their
        centroid are moved to the outlier cluster. None disables outliers.
    npca : int
        PCA dimensions kept per measure.
    weights : dict, optional
        Weight of each measure (``"erp"``, ``"scalp"``), 1 by default.
    seed : int
        Seed for the k-means initialisation.
    """
    if not features:
        raise MetadataError("No component features to cluster")
    weights = {"erp": 1.0, "scalp": 1.0, **(weights or {})}

    common = [
        label for label in features[0].channel_labels
        if all(label in f.channel_labels for f in features[1:])
    ]
    if not common:
        raise MetadataError("Subjects share no channel for scalp maps")

    members = [(f.subject, i) for f in features for i in range(f.erp.shape[0])]
    if not 1 <= n_clusters <= len(members):
        raise ThresholdConfigError(
            f"n_clusters must be between 1 and {len(members)}, got {n_clusters}"
        )

    erp = np.concatenate([f.erp for f in features])
    scalp = np.concatenate(
        [f.scalp[:, [f.channel_labels.index(label) for label in common]] for f in features]
    )
    data = np.hstack(
        [weights["erp"] * _reduce(erp, npca), weights["scalp"] * _reduce(scalp, npca)]
    )

    rng = np.random.default_rng(seed)
    centroids, labels = kmeans2(data, n_clusters, minit="++", seed=rng)

    if outlier_sd is not None:
        distances = np.linalg.norm(data - centroids[labels], axis=1)
        threshold = distances.mean() + outlier_sd * distances.std()
        outliers = distances > threshold
        if outliers.any() and (~outliers).sum() >= n_clusters:
            centroids, inlier_labels = kmeans2(data[~outliers], n_clusters, minit="++", seed=rng)
            labels = np.full(len(members), OUTLIER)
            labels[~outliers] = inlier_labels

    message(
        "info",
        f"Clustered {len(members)} components into {n_clusters} clusters "
        f"({int(np.sum(labels == OUTLIER))} outliers)",
    )
    return ClusterResult(labels=np.asarray(labels), members=members, centroids=centroids)
