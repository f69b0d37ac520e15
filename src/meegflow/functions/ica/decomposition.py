"""ICA decomposition of a recording.

The decomposition itself is computed by :class:`mne.preprocessing.ICA`; the
resulting mixing matrix is converted to the display units of the recording
and stored on it as a :class:`~meegflow.core.recording.ComponentDecomposition`.
"""

import importlib.util
from typing import Optional, Tuple

import mne
import numpy as np

from meegflow.core.exceptions import InvalidSelectorError, ThresholdConfigError
from meegflow.core.recording import ChannelKind, ComponentDecomposition, Recording
from meegflow.functions.preprocessing.referencing import average_reference_rank
from meegflow.utils.logging import message


def default_ica_method() -> str:
    """``picard`` when python-picard is installed, extended infomax otherwise."""
    return "picard" if importlib.util.find_spec("picard") is not None else "infomax"


def fit_ica(
    recording: Recording,
    method: Optional[str] = None,
    n_components: Optional[int] = None,
    max_iter: int = 500,
    random_state: Optional[int] = 97,
) -> Tuple[Recording, mne.preprocessing.ICA]:
    """Fit ICA to the signal channels of a recording.

    Parameters
    ----------
    recording : Recording
        Continuous or epoched recording, usually average referenced.
    method : str, optional
        ``"picard"``, ``"infomax"`` or ``"fastica"``. Defaults to
        :func:`default_ica_method`. Picard and infomax run in their extended
        variant.
    n_components : int, optional
        Number of components. Defaults to one fewer than the number of signal
        channels, the rank left by an average reference.
    max_iter : int
        Maximum number of iterations.
    random_state : int, optional
        Seed for reproducible decompositions.

    Returns
    -------
    recording : Recording
        Recording with the decomposition attached.
    ica : mne.preprocessing.ICA
        The fitted MNE ICA object, for component classification.
    """
    picks = [i for i, ch in enumerate(recording.channels) if ch.kind == ChannelKind.SIGNAL]
    if len(picks) < 2:
        raise InvalidSelectorError("ICA needs at least two signal channels")

    if n_components is None:
        n_components = average_reference_rank(recording)
    if not 1 <= n_components <= len(picks):
        raise ThresholdConfigError(
            f"n_components must be between 1 and {len(picks)}, got {n_components}"
        )

    method = method or default_ica_method()
    fit_params = None
    if method in ("picard", "infomax"):
        fit_params = dict(extended=True)
        if method == "picard":
            fit_params["ortho"] = False

    signal = recording.select_channels(lambda ch: ch.kind == ChannelKind.SIGNAL)
    inst = signal.to_mne()

    message("header", f"Fitting {method} ICA with {n_components} components")
    try:
        ica = mne.preprocessing.ICA(
            n_components=n_components,
            method=method,
            max_iter=max_iter,
            fit_params=fit_params,
            random_state=random_state,
        )
        ica.fit(inst, verbose=False)
    except Exception as e:
        message("error", f"Error during ICA: {str(e)}")
        raise RuntimeError(f"Failed to fit ICA: {str(e)}") from e

    # MNE components map to pre-whitened SI data; scale back to display units
    scale = signal.display_scalings()
    mixing = (scale * ica.pre_whitener_[:, 0])[:, None] * ica.get_components()
    unmixing = np.linalg.pinv(mixing)

    decomposition = ComponentDecomposition(
        mixing=mixing,
        unmixing=unmixing,
        channel_labels=signal.ch_names,
        method=method,
    )
    message("success", f"✓ ICA fitted: {decomposition.n_components} components")
    return recording.replace(components=decomposition), ica
