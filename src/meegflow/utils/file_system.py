# src/meegflow/utils/file_system.py
"""
This module contains functions for setting up and validating directory structures.
"""
import os
from pathlib import Path

from meegflow import __version__
from meegflow.utils.logging import message


def step_prepare_directories(
    task: str, output_dir: str | Path
) -> tuple[Path, Path, Path, Path, Path]:
    """Set up the output directory structure of a task.

    Existing directories are reused, so checkpoints written by earlier runs
    stay available for resuming.

    Parameters
    ----------
    task : str
        The name of the processing task.
    output_dir : str or Path
        Root output directory.

    Returns
    -------
    Tuple of Path objects for key directories:
    (task_dir, metadata_dir, checkpoint_dir, logs_dir, final_dir)
    """
    message("header", f"Setting up directories for task: {task}")
    output_dir = Path(output_dir)
    if not output_dir.exists() and not output_dir.parent.exists():
        raise EnvironmentError(
            f"Parent directory of the output directory does not exist: {output_dir.parent}"
        )

    task_root = output_dir / task
    derivatives_root = task_root / "derivatives" / f"meegflow-v{__version__}"

    dirs = {
        "task": task_root,
        "metadata": derivatives_root / "metadata",
        "checkpoints": derivatives_root / "checkpoints",
        "logs": task_root / "logs",
        "final_files": task_root / "final_files",
    }

    try:
        for name, dir_path in dirs.items():
            dir_path.mkdir(parents=True, exist_ok=True)
            if not os.access(dir_path, os.W_OK):
                raise PermissionError(f"No write permission for directory: {dir_path}")
    except Exception as e:
        message("error", f"Failed to create/validate directory {dir_path}: {str(e)}")
        raise

    for name, path in dirs.items():
        message("debug", f"{name}: {path}")

    return (
        dirs["task"],
        dirs["metadata"],
        dirs["checkpoints"],
        dirs["logs"],
        dirs["final_files"],
    )
