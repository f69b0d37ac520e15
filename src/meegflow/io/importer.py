# src/meegflow/io/importer.py
"""Recording import.

Files are read with the MNE reader registered for their extension and
converted to a :class:`~meegflow.core.recording.Recording`. New formats can be
added with :func:`register_format`.
"""

from pathlib import Path
from typing import Callable, Dict, Optional

import mne

from meegflow.core.exceptions import RecordingImportError
from meegflow.core.recording import Recording
from meegflow.utils.logging import message

__all__ = ["get_format_from_extension", "import_recording", "register_format"]

Reader = Callable[..., mne.io.BaseRaw]

# Core built-in formats
_CORE_FORMATS = {
    "fif": "GENERIC_FIF",
    "set": "EEGLAB_SET",
    "vhdr": "BRAINVISION_VHDR",
    "edf": "EUROPEAN_EDF",
    "bdf": "BIOSEMI_BDF",
    "cnt": "NEUROSCAN_CNT",
    "raw": "EGI_RAW",
}

_CORE_READERS: Dict[str, Reader] = {
    "GENERIC_FIF": mne.io.read_raw_fif,
    "EEGLAB_SET": mne.io.read_raw_eeglab,
    "BRAINVISION_VHDR": mne.io.read_raw_brainvision,
    "EUROPEAN_EDF": mne.io.read_raw_edf,
    "BIOSEMI_BDF": mne.io.read_raw_bdf,
    "NEUROSCAN_CNT": mne.io.read_raw_cnt,
    "EGI_RAW": mne.io.read_raw_egi,
}

_FORMAT_REGISTRY: Dict[str, str] = {}
_READER_REGISTRY: Dict[str, Reader] = {}


def register_format(extension: str, format_id: str, reader: Optional[Reader] = None) -> None:
    """Register a new file format.

    Args:
        extension: File extension without dot (e.g., 'xyz')
        format_id: Unique identifier for the format (e.g., 'XYZ_FORMAT')
        reader: Function ``reader(path, preload=True, verbose=...)`` returning
            an MNE Raw object; may be omitted when ``format_id`` already has one
    """
    extension = extension.lower().lstrip(".")
    if extension in _FORMAT_REGISTRY or extension in _CORE_FORMATS:
        message("warning", f"Overriding existing format for extension: {extension}")

    _FORMAT_REGISTRY[extension] = format_id
    if reader is not None:
        _READER_REGISTRY[format_id] = reader
    message("info", f"Registered file format: {format_id} for extension .{extension}")


def get_format_from_extension(extension: str) -> Optional[str]:
    """Get format ID from file extension."""
    extension = extension.lower().lstrip(".")
    formats = {**_CORE_FORMATS, **_FORMAT_REGISTRY}
    return formats.get(extension)


def _get_reader(format_id: str) -> Optional[Reader]:
    return {**_CORE_READERS, **_READER_REGISTRY}.get(format_id)


def import_recording(
    file_path: str | Path, subject: str = "", setname: Optional[str] = None
) -> Recording:
    """Read a recording file into memory.

    Parameters
    ----------
    file_path : str or Path
        File to read; its extension selects the reader.
    subject : str
        Subject identifier stored on the recording.
    setname : str, optional
        Dataset name, the file stem by default.

    Returns
    -------
    Recording
        The imported recording, with annotations as events.

    Raises
    ------
    RecordingImportError
        If the file is missing, its format unknown or the reader fails.
    """
    path = Path(file_path)
    if not path.is_file():
        raise RecordingImportError(f"File not found: {path}")

    format_id = get_format_from_extension(path.suffix)
    reader = _get_reader(format_id) if format_id else None
    if reader is None:
        raise RecordingImportError(f"Unsupported file format: {path.suffix}")

    message("info", f"Importing {path.name} as {format_id}")
    try:
        raw = reader(path, preload=True, verbose=False)
        recording = Recording.from_mne(
            raw, subject=subject, setname=setname if setname is not None else path.stem
        )
    except Exception as e:
        message("error", f"Failed to import {path}: {str(e)}")
        raise RecordingImportError(f"Failed to import {path}: {str(e)}") from e

    message(
        "success",
        f"✓ Imported {recording.n_channels} channels, {recording.n_times} samples "
        f"at {recording.sfreq} Hz, {len(recording.events)} events",
    )
    return recording
