# src/meegflow/core/pipeline.py
"""Core pipeline class for MEG/EEG processing.

This module provides the main interface for processing recordings.
The Pipeline class handles:

1. Configuration Management:
   - Loading and validating processing settings
   - Managing output directories
   - Task-specific parameter validation

2. Data Processing:
   - Single file processing, optionally resumed from a checkpoint
   - Batch processing of multiple files
   - Progress tracking and error handling

3. Results Management:
   - Checkpoints of intermediate stages
   - Export of the final recordings
   - JSON run records

Examples
--------
Basic usage for processing a single file:

>>> from meegflow import Pipeline
>>> pipeline = Pipeline(
...     output_dir="/path/to/output",
...     config="configs/meegflow_config.yaml"
... )
>>> pipeline.process_file(
...     file_path="/path/to/sub-01_run-01_meg.fif",
...     task="FaceRecognition"
... )

Resuming after a failure in the epoching stages:

>>> pipeline.process_file(
...     file_path="/path/to/sub-01_run-01_meg.fif",
...     task="FaceRecognition",
...     start_from="post_preprocessing"
... )

Async processing of multiple files:

>>> asyncio.run(pipeline.process_directory_async(
...     directory="/path/to/data",
...     task="FaceRecognition",
...     pattern="*.fif",
...     max_concurrent=4
... ))
"""

import asyncio

# Standard library imports
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Type, Union

# Third-party imports
import mne
from tqdm import tqdm
from ulid import ULID

from meegflow.core.runner import PipelineRunner, RunResult
from meegflow.core.task import Task
from meegflow.io.checkpoint import CheckpointStore
from meegflow.io.export import save_recording_to_set
from meegflow.tasks import task_registry
from meegflow.utils.bids import parse_subject_run
from meegflow.utils.config import hash_config, load_config, validate_config
from meegflow.utils.file_system import step_prepare_directories
from meegflow.utils.logging import configure_logger, message, run_context


class Pipeline:
    """Pipeline class for MEG/EEG processing.

    Parameters
    ----------
    output_dir : str or Path
        Root directory where all processing outputs will be saved.
        The pipeline will create subdirectories for each task.
    config : str, Path or dict
        Path to the YAML configuration file that defines processing
        parameters for all tasks, or an already loaded configuration.
    verbose : bool, str, int, or None, optional
        Controls logging verbosity, by default None.

        * bool: True for INFO, False for WARNING.
        * str: One of 'debug', 'info', 'warning', 'error', or 'critical'.
        * int: Standard Python logging level (10=DEBUG, 20=INFO, etc.).
        * None: Reads MEEGFLOW_LOGGING_LEVEL environment variable, defaults to INFO.

    Attributes
    ----------
    TASK_REGISTRY : Dict[str, Type[Task]]
        Lower-case task name to task class, from the `meegflow.tasks` module.

    See Also
    --------
    meegflow.core.task.Task : Base class for all processing tasks.
    meegflow.core.runner.PipelineRunner : Runs the stages of one file.

    Examples
    --------
    >>> pipeline = Pipeline(
    ...     output_dir="results/",
    ...     config="configs/meegflow_config.yaml",
    ...     verbose="debug"  # Enable detailed logging
    ... )
    >>> pipeline.process_file("data/sub-01_run-01_meg.fif", "FaceRecognition")
    """

    TASK_REGISTRY: Dict[str, Type[Task]] = task_registry

    def __init__(
        self,
        output_dir: str | Path,
        config: str | Path | Dict[str, Any],
        verbose: Optional[Union[bool, str, int]] = None,
    ):
        self.output_dir = Path(output_dir).absolute()
        self.verbose = verbose
        # Configure logging first with output directory
        mne_verbose = configure_logger(verbose, output_dir=self.output_dir)
        mne.set_log_level(mne_verbose)

        message("header", "Welcome to meegflow!")

        if isinstance(config, dict):
            self.config_file: Optional[Path] = None
            self.config = validate_config(config)
            self.config_hash = hash_config(self.config, is_file=False)
        else:
            self.config_file = Path(config).absolute()
            self.config = load_config(self.config_file)
            self.config_hash = hash_config(self.config_file, is_file=True)

        # Runners of the files currently being processed, for abort()
        self._active_runners: set[PipelineRunner] = set()
        self._runners_lock = threading.Lock()

        message("success", f"✓ Pipeline initialized with output directory: {self.output_dir}")

    def _task_class(self, task: str) -> Type[Task]:
        class_name = self.config["tasks"][task].get("task_class", task)
        try:
            return self.TASK_REGISTRY[class_name.lower()]
        except KeyError:
            message(
                "error",
                f"Task '{class_name}' not found in task registry. "
                f"Available: {sorted(self.TASK_REGISTRY)}",
            )
            raise

    def _entrypoint(
        self, unprocessed_file: Path, task: str, start_from: Optional[str] = None
    ) -> RunResult:
        """Main processing entrypoint that orchestrates one file.

        Parameters
        ----------
        unprocessed_file : Path
            Path to the raw recording file.
        task : str
            Name of the processing task to run.
        start_from : str, optional
            Checkpoint to resume from.

        Returns
        -------
        RunResult
            The outcome of the run.

        Notes
        -----
        This is an internal method called by process_file and process_directory.
        Users should not call this method directly.
        """
        task = self._validate_task(task)
        run_id = str(ULID())
        with run_context(run_id):
            return self._run_file(unprocessed_file, task, start_from, run_id)

    def _run_file(
        self, unprocessed_file: Path, task: str, start_from: Optional[str], run_id: str
    ) -> RunResult:
        subject, run = parse_subject_run(unprocessed_file)

        run_record: Dict[str, Any] = {
            "run_id": run_id,
            "timestamp": datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            "task": task,
            "unprocessed_file": str(unprocessed_file),
            "subject": subject,
            "run": run,
            "config_file": str(self.config_file) if self.config_file else None,
            "config_hash": self.config_hash,
            "task_hash": hash_config(self.config["tasks"][task], is_file=False),
            "start_from": start_from,
            "status": "unprocessed",
            "success": False,
            "metadata": {},
        }

        (
            task_dir,  # Root of the task outputs
            metadata_dir,  # Run records
            checkpoint_dir,  # Intermediate stage snapshots
            logs_dir,  # Log files
            final_dir,  # Exported final recordings
        ) = step_prepare_directories(task, self.output_dir)
        record_file = metadata_dir / f"{unprocessed_file.stem}_meegflow_metadata.json"
        run_record["metadata"]["step_prepare_directories"] = {
            "task": str(task_dir),
            "metadata": str(metadata_dir),
            "checkpoints": str(checkpoint_dir),
            "logs": str(logs_dir),
            "final_files": str(final_dir),
        }

        task_object: Optional[Task] = None
        runner: Optional[PipelineRunner] = None
        try:
            # Resuming does not need the original file
            if start_from is None:
                self._validate_file(unprocessed_file)

            run_dict = {
                **self.config,
                "run_id": run_id,
                "task": task,
                "unprocessed_file": unprocessed_file,
                "subject": subject,
                "run": run,
                "output_dir": self.output_dir,
                "checkpoint_dir": checkpoint_dir,
            }

            message("header", f"Starting processing for task: {task}")
            task_object = self._task_class(task)(run_dict)

            store = CheckpointStore(
                checkpoint_dir,
                subject,
                run,
                suffixes={
                    name: stage_file["suffix"]
                    for name, stage_file in self.config["stage_files"].items()
                },
            )
            runner = PipelineRunner(task_object.build_stages(), store, task_object.context)
            with self._runners_lock:
                self._active_runners.add(runner)

            result = runner.run(start_from=start_from)

            run_record["status"] = result.state.value
            run_record["success"] = result.state.value == "complete"
            run_record["completed_stages"] = result.completed
            run_record["last_stage"] = result.last_stage
            run_record["last_checkpoint"] = result.last_checkpoint
            run_record["final"] = {
                branch or "main": {
                    "n_channels": rec.n_channels,
                    "n_trials": rec.n_trials,
                    "n_times": rec.n_times,
                    "sfreq": rec.sfreq,
                }
                for branch, rec in result.recordings.items()
            }

            if run_record["success"]:
                run_record["exported"] = self._export(result, final_dir, subject, run)
                message("success", f"✓ Task {task} completed successfully")
            else:
                message("warning", f"Task {task} stopped before completion ({result.state.value})")

        except Exception as e:
            run_record["status"] = "failed"
            run_record["success"] = False
            run_record["error"] = str(e)
            run_record["last_stage"] = getattr(e, "last_stage", None)
            run_record["last_checkpoint"] = getattr(e, "last_checkpoint", None)
            message("error", f"Run {run_id} Pipeline failed: {e}")
            raise

        finally:
            if runner is not None:
                with self._runners_lock:
                    self._active_runners.discard(runner)
            if task_object is not None:
                flagged, flagged_reasons = task_object.get_flagged_status()
                run_record["flagged"] = flagged
                run_record["flagged_reasons"] = flagged_reasons
                run_record["metadata"].update(task_object.context.metadata)
            self._write_run_record(run_record, record_file)

        return result

    def _export(
        self, result: RunResult, final_dir: Path, subject: str, run: str
    ) -> list[str]:
        export = self.config.get("export") or {}
        if not export.get("enabled", False):
            return []

        basename = f"{subject}_{run}"
        exported = []
        for branch, recording in result.recordings.items():
            suffix = f"_{branch}" if branch else ""
            path = save_recording_to_set(recording, final_dir, basename, suffix=suffix)
            exported.append(str(path))
        return exported

    @staticmethod
    def _write_run_record(run_record: Dict[str, Any], record_file: Path) -> None:
        try:
            with open(record_file, "w", encoding="utf8") as f:
                json.dump(run_record, f, indent=4, default=str)
            message("success", f"✓ Run record exported to {record_file}")
        except OSError as e:
            message("error", f"Failed to write run record {record_file}: {str(e)}")

    async def _entrypoint_async(
        self, unprocessed_file: Path, task: str, start_from: Optional[str] = None
    ) -> RunResult:
        """Async version of _entrypoint for concurrent processing.

        Notes
        -----
        Wraps synchronous processing in a worker thread. Runs of different
        files share nothing but the checkpoint directory, where their file
        names differ.
        """
        try:
            return await asyncio.to_thread(self._entrypoint, unprocessed_file, task, start_from)
        except Exception as e:
            message("error", f"Failed to process {unprocessed_file}: {str(e)}")
            raise

    def process_file(
        self, file_path: str | Path, task: str, start_from: Optional[str] = None
    ) -> RunResult:
        """Process a single recording file.

        Parameters
        ----------
        file_path : str or Path
            Path to the raw recording file.
        task : str
            Name of the processing task to run (e.g., 'FaceRecognition').
        start_from : str, optional
            Name of a checkpoint (e.g. 'post_preprocessing'). The stages up to
            it are skipped and the run continues from the stored snapshot.

        Returns
        -------
        RunResult
            Final state, recordings per branch and completed stages.

        Raises
        ------
        PipelineError
            The first error of the run; nothing is retried.

        See Also
        --------
        process_directory : Process multiple files in a directory.
        process_directory_async : Process files asynchronously.
        """
        return self._entrypoint(Path(file_path), task, start_from)

    def _find_files(self, directory: str | Path, pattern: str, recursive: bool) -> list[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            raise NotADirectoryError(f"Directory not found: {directory}")

        search_pattern = f"**/{pattern}" if recursive else pattern
        return sorted(directory.glob(search_pattern))

    def process_directory(
        self,
        directory: str | Path,
        task: str,
        pattern: str = "*.fif",
        recursive: bool = False,
        start_from: Optional[str] = None,
    ) -> Dict[str, Optional[RunResult]]:
        """Processes all files matching a pattern within a directory sequentially.

        Parameters
        ----------
        directory : str or Path
            Path to the directory containing the recordings.
        task : str
            The name of the task to perform (e.g., 'FaceRecognition').
        pattern : str, optional
            Glob pattern to match files within the directory, default is `*.fif`.
        recursive : bool, optional
            If True, searches subdirectories recursively, by default False.
        start_from : str, optional
            Checkpoint every run resumes from.

        Returns
        -------
        dict
            File name to its RunResult, or None when the run failed.

        Notes
        -----
        If processing fails for one file, the pipeline will continue
        with the remaining files.
        """
        files = self._find_files(directory, pattern, recursive)
        if not files:
            message("warning", f"No files matching '{pattern}' found in {directory}")
            return {}

        message("info", f"Found {len(files)} files to process")

        results: Dict[str, Optional[RunResult]] = {}
        for file_path in files:
            try:
                results[file_path.name] = self._entrypoint(file_path, task, start_from)
            except Exception as e:  # pylint: disable=broad-except
                message("error", f"Failed to process {file_path}: {str(e)}")
                results[file_path.name] = None
        return results

    async def process_directory_async(
        self,
        directory: str | Path,
        task: str,
        pattern: str = "*.fif",
        sub_directories: bool = False,
        max_concurrent: int = 3,
        start_from: Optional[str] = None,
    ) -> Dict[str, Optional[RunResult]]:
        """Processes all files matching a pattern within a directory asynchronously.

        Parameters
        ----------
        directory : str or Path
            Path to the directory containing the recordings.
        task : str
            The name of the task to perform (e.g., 'FaceRecognition').
        pattern : str, optional
            Glob pattern to match files within the directory, default is `*.fif`.
        sub_directories : bool, optional
            If True, searches subdirectories recursively, by default False.
        max_concurrent : int, optional
            Maximum number of files to process concurrently, by default 3.
        start_from : str, optional
            Checkpoint every run resumes from.

        Returns
        -------
        dict
            File name to its RunResult, or None when the run failed.
        """
        files = self._find_files(directory, pattern, sub_directories)
        if not files:
            message("warning", f"No files matching '{pattern}' found in {directory}")
            return {}

        message(
            "info",
            f"Starting processing of {len(files)} files with {max_concurrent} concurrent workers",
        )

        # Create semaphore to prevent resource exhaustion
        sem = asyncio.Semaphore(max_concurrent)
        results: Dict[str, Optional[RunResult]] = {}

        # Initialize progress tracking
        pbar = tqdm(total=len(files), desc="Processing files", unit="file")

        async def process_with_semaphore(file_path: Path) -> None:
            async with sem:
                try:
                    results[file_path.name] = await self._entrypoint_async(
                        file_path, task, start_from
                    )
                    pbar.write(f"✓ Completed: {file_path.name}")
                except Exception as e:  # pylint: disable=broad-except
                    results[file_path.name] = None
                    pbar.write(f"✗ Failed: {file_path.name} - {str(e)}")
                finally:
                    pbar.update(1)

        try:
            # Batch size is double the concurrent limit to keep workers busy
            batch_size = max_concurrent * 2
            for i in range(0, len(files), batch_size):
                batch = files[i : i + batch_size]
                await asyncio.gather(
                    *(process_with_semaphore(f) for f in batch), return_exceptions=True
                )
        finally:
            pbar.close()

        failed = sum(1 for result in results.values() if result is None)
        message("info", "Processing Summary:")
        message("info", f"Total files processed: {len(files)}, failed: {failed}")
        return results

    def abort(self) -> None:
        """Ask every active run to stop before its next stage."""
        with self._runners_lock:
            for runner in self._active_runners:
                runner.abort()

    def list_tasks(self) -> list[str]:
        """Get a list of configured processing tasks.

        Examples
        --------
        >>> pipeline.list_tasks()
        ['FaceRecognition']
        """
        return list(self.config["tasks"].keys())

    def list_stage_files(self) -> list[str]:
        """Get a list of configured checkpoint names.

        Examples
        --------
        >>> pipeline.list_stage_files()
        ['post_import', 'post_preprocessing', 'post_epochs', 'post_erp']
        """
        return list(self.config["stage_files"].keys())

    def _validate_task(self, task: str) -> str:
        """Validate that a task is configured and has an implementation.

        Parameters
        ----------
        task : str
            Name of the task to validate (e.g., 'FaceRecognition').

        Returns
        -------
        str
            The validated task name.
        """
        message("debug", "Validating task")

        if task not in self.config["tasks"]:
            raise ValueError(f"Task '{task}' not found in configuration")
        self._task_class(task)

        message("success", f"✓ Task '{task}' found in configuration")
        return task

    def _validate_file(self, file_path: str | Path) -> Path:
        """Validate that an input file exists.

        Parameters
        ----------
        file_path : str or Path
            Path to the recording to validate.

        Returns
        -------
        Path
            The validated file path.
        """
        message("debug", "Validating file")

        path = Path(file_path)
        if not path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        message("success", f"✓ File '{file_path}' found")
        return path
