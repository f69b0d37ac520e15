"""BIDS file name helpers."""

import re
from pathlib import Path
from typing import Tuple

from mne_bids import get_entities_from_fname

from meegflow.utils.logging import message


def sanitize_id(name: str) -> str:
    """Reduce an arbitrary file stem to letters, digits and dashes."""
    cleaned = re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-")
    return cleaned or "unknown"


def parse_subject_run(file_path: str | Path) -> Tuple[str, str]:
    """Subject and run identifiers of a recording file.

    BIDS entities are used when the file name carries them
    (``sub-01_ses-meg_task-facerecognition_run-01_meg.fif`` gives
    ``("sub-01", "run-01")``). Otherwise the sanitized file stem is the subject
    and the run is ``run-01``.
    """
    path = Path(file_path)
    entities = get_entities_from_fname(path.name, on_error="ignore")

    subject = entities.get("subject")
    run = entities.get("run")
    if subject is None:
        stem = path.name.split(".")[0]
        message("debug", f"No BIDS subject in {path.name}, using file stem")
        return sanitize_id(stem), "run-01"

    return f"sub-{subject}", f"run-{run}" if run is not None else "run-01"
