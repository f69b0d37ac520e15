"""Export of final recordings to EEGLAB .set files."""

from pathlib import Path

from meegflow.core.recording import Recording
from meegflow.utils.logging import message

__all__ = ["save_recording_to_set"]


def save_recording_to_set(
    recording: Recording, output_dir: str | Path, basename: str, suffix: str = ""
) -> Path:
    """Save a recording in EEGLAB format.

    Continuous recordings are written as ``<basename><suffix>_raw.set``,
    epoched ones as ``<basename><suffix>_epo.set``. MNE writes the file
    through eeglabio.

    Parameters
    ----------
        recording : Recording
            Recording to save
        output_dir : str or Path
            Directory the file is written to
        basename : str
            File name stem
        suffix : str
            Appended to the stem, e.g. ``_Famous``

    Returns
    -------
        Path: Path
            Path to the saved file
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    kind = "epo" if recording.is_epoched else "raw"
    path = output_dir / f"{basename}{suffix}_{kind}.set"

    inst = recording.to_mne()
    inst.info["description"] = recording.setname or basename
    try:
        inst.export(path, fmt="eeglab", overwrite=True, verbose=False)
    except Exception as e:
        raise RuntimeError(f"Failed to save {path}: {str(e)}") from e

    message("success", f"✓ Saved {kind} file to: {path}")
    return path
