"""Checkpoint store for meegflow runs.

A checkpoint is a named, durable snapshot of a Recording. Each one is written
as a single ``.npz`` archive holding the buffer, the component matrices and a
JSON header with every piece of metadata. Archives are loaded with
``allow_pickle=False``; the header round-trips floats exactly, so a loaded
recording is bit-identical to the saved one.
"""

import json
import os
import tempfile
import zipfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import numpy as np

from meegflow.core.exceptions import CheckpointNotFoundError, PipelineError
from meegflow.core.recording import (
    Channel,
    ComponentDecomposition,
    Event,
    Recording,
)
from meegflow.utils.logging import message

__all__ = ["CheckpointInfo", "CheckpointStore"]

FORMAT_VERSION = 1


@dataclass(frozen=True)
class CheckpointInfo:
    """Header information of a stored checkpoint."""

    name: str
    stage: Optional[str]
    created: str
    run_id: Optional[str]
    path: Path


def _header(
    name: str, recording: Recording, stage: Optional[str], run_id: Optional[str]
) -> Dict[str, Any]:
    components = None
    if recording.components is not None:
        comp = recording.components
        components = {
            "channel_labels": list(comp.channel_labels),
            "method": comp.method,
            "classes": list(comp.classes),
            "scored": comp.probabilities is not None,
        }

    return {
        "format_version": FORMAT_VERSION,
        "name": name,
        "stage": stage,
        "run_id": run_id,
        "created": datetime.now().isoformat(),
        "sfreq": recording.sfreq,
        "tmin": recording.tmin,
        "subject": recording.subject,
        "setname": recording.setname,
        "history": list(recording.history),
        "fiducials": {k: list(v) for k, v in recording.fiducials.items()},
        "channels": [
            {
                "label": ch.label,
                "type": ch.type,
                "kind": ch.kind.value,
                "position": None if ch.position is None else list(ch.position),
            }
            for ch in recording.channels
        ],
        "events": [
            [ev.onset_us, ev.label, ev.code, ev.epoch] for ev in recording.events
        ],
        "components": components,
    }


def _recording_from_archive(archive: Mapping[str, np.ndarray], header: Dict[str, Any]) -> Recording:
    components = None
    comp_header = header.get("components")
    if comp_header is not None:
        components = ComponentDecomposition(
            mixing=archive["mixing"],
            unmixing=archive["unmixing"],
            channel_labels=comp_header["channel_labels"],
            method=comp_header["method"],
            classes=comp_header["classes"],
            probabilities=archive["probabilities"] if comp_header["scored"] else None,
        )

    return Recording(
        data=archive["data"],
        sfreq=header["sfreq"],
        channels=tuple(
            Channel(
                label=ch["label"],
                type=ch["type"],
                kind=ch["kind"],
                position=ch["position"],
            )
            for ch in header["channels"]
        ),
        events=tuple(
            Event(onset_us, label, code, epoch)
            for onset_us, label, code, epoch in header["events"]
        ),
        tmin=header["tmin"],
        fiducials=header["fiducials"],
        components=components,
        subject=header["subject"],
        setname=header["setname"],
        history=tuple(header["history"]),
    )


class CheckpointStore:
    """Named snapshots of recordings for one subject/run.

    Parameters
    ----------
    root : str or Path
        Directory the checkpoint files are written to.
    subject : str
        Subject identifier, first part of every file name.
    run : str
        Run identifier, second part of every file name.
    suffixes : dict, optional
        Checkpoint name -> file suffix, as configured under ``stage_files``.
        Names without an entry use ``_<name>``. A branch checkpoint
        ``<name>_<branch>`` uses the suffix of ``<name>`` followed by
        ``_<branch>``.

    Notes
    -----
    Files are named ``<subject>_<run><suffix>.npz``. Writes go to a temporary
    file in the same directory which is then renamed over the target, so a
    reader never observes a partially written checkpoint and concurrent runs
    writing distinct names never conflict.
    """

    def __init__(
        self,
        root: str | Path,
        subject: str,
        run: str,
        suffixes: Optional[Mapping[str, str]] = None,
    ):
        self.root = Path(root)
        self.subject = subject
        self.run = run
        self.suffixes = dict(suffixes or {})

    def _suffix(self, name: str) -> str:
        if name in self.suffixes:
            return self.suffixes[name]
        for base in sorted(self.suffixes, key=len, reverse=True):
            if name.startswith(f"{base}_"):
                return f"{self.suffixes[base]}{name[len(base):]}"
        return f"_{name}"

    def location(self, name: str) -> Path:
        """Path of the file holding checkpoint ``name``."""
        prefix = f"{self.subject}_{self.run}" if self.run else self.subject
        return self.root / f"{prefix}{self._suffix(name)}.npz"

    def exists(self, name: str) -> bool:
        return self.location(name).is_file()

    def save(
        self,
        name: str,
        recording: Recording,
        stage: Optional[str] = None,
        run_id: Optional[str] = None,
    ) -> Path:
        """Persist ``recording`` under ``name``, replacing any previous snapshot.

        Returns
        -------
        Path
            Location of the written checkpoint.
        """
        path = self.location(name)
        self.root.mkdir(parents=True, exist_ok=True)

        arrays = {
            "data": recording.data,
            "header": np.array(json.dumps(_header(name, recording, stage, run_id))),
        }
        if recording.components is not None:
            arrays["mixing"] = recording.components.mixing
            arrays["unmixing"] = recording.components.unmixing
            if recording.components.probabilities is not None:
                arrays["probabilities"] = recording.components.probabilities

        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=self.root)
        try:
            with os.fdopen(fd, "wb") as f:
                np.savez(f, **arrays)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        message("success", f"✓ Saved checkpoint '{name}' to: {path}")
        return path

    def _open(self, name: str):
        path = self.location(name)
        if not path.is_file():
            raise CheckpointNotFoundError(f"Checkpoint '{name}' not found at {path}")
        try:
            archive = np.load(path, allow_pickle=False)
            header = json.loads(str(archive["header"]))
        except (OSError, ValueError, KeyError, zipfile.BadZipFile) as e:
            raise CheckpointNotFoundError(
                f"Checkpoint '{name}' at {path} is unreadable: {e}"
            ) from e
        return archive, header

    def load(self, name: str) -> Recording:
        """Load the recording stored under ``name``.

        Raises
        ------
        CheckpointNotFoundError
            If the checkpoint does not exist or cannot be read.
        """
        archive, header = self._open(name)
        with archive:
            try:
                recording = _recording_from_archive(archive, header)
            except (KeyError, ValueError, TypeError, PipelineError) as e:
                raise CheckpointNotFoundError(
                    f"Checkpoint '{name}' at {self.location(name)} is corrupt: {e}"
                ) from e

        message("info", f"Loaded checkpoint '{name}' ({header.get('stage') or 'no stage'})")
        return recording

    def info(self, name: str) -> CheckpointInfo:
        archive, header = self._open(name)
        archive.close()
        return CheckpointInfo(
            name=header.get("name", name),
            stage=header.get("stage"),
            created=header.get("created", ""),
            run_id=header.get("run_id"),
            path=self.location(name),
        )
