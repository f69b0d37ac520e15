# Standard library imports
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

# Local imports
from meegflow.core.recording import Recording
from meegflow.core.stage import Condition, Stage, StageContext, Transform
from meegflow.io.importer import import_recording
from meegflow.utils.logging import message


class Task(ABC):
    """Base class for all processing tasks.

    A task turns its configuration into an ordered list of stages. It provides
    the basic structure for:
    1. Validating configuration
    2. Importing the recording (the source stage)
    3. Declaring the processing stages and their checkpoints
    4. Reporting flagged recordings

    It should be inherited from to create new tasks in the meegflow.tasks module.

    Notes
    -----
    Tasks do not run anything themselves. :meth:`build_stages` returns the
    stages, and the pipeline hands them to a
    :class:`~meegflow.core.runner.PipelineRunner`.
    """

    def __init__(self, config: Dict[str, Any]):
        """Initialize a new task instance.

        Parameters
        ----------
        config : Dict[str, Any]
            A dictionary containing all configuration settings for the task.
            Must include:

            - run_id (str): Unique identifier for this processing run
            - unprocessed_file (Path): Path to the raw data file
            - task (str): Name of the task (e.g., "FaceRecognition")
            - tasks (dict): Task-specific settings
            - stage_files (dict): Checkpoint configuration

        Raises
        ------
        ValueError
            If the configuration is missing required fields or contains invalid values.
        TypeError
            If a required field has the wrong type.
        """
        self.config = self.validate_config(config)
        self.flagged = False
        self.flagged_reasons: List[str] = []
        self.context = StageContext(
            run_id=self.config["run_id"],
            subject=self.config.get("subject", ""),
            run=self.config.get("run", ""),
            source_file=self.config["unprocessed_file"],
            task=self.config["task"],
            config=self.config,
        )

    def import_raw(self, recording: Optional[Recording], context: StageContext) -> Recording:
        """Source stage: read the unprocessed file.

        Recordings shorter than one minute are flagged.
        """
        recording = import_recording(context.source_file, subject=context.subject)
        if recording.duration < 60:
            self.flagged = True
            self.flagged_reasons.append(
                f"WARNING: Initial duration ({float(recording.duration):.1f}s) less than 1 minute"
            )
        context.metadata["import"] = {
            "file": str(context.source_file),
            "n_channels": recording.n_channels,
            "sfreq": recording.sfreq,
            "duration": recording.duration,
        }
        return recording

    @abstractmethod
    def build_stages(self) -> List[Stage]:
        """Return the ordered stages of this task."""

    def _check_step_enabled(self, step_name: str) -> Tuple[bool, Dict[str, Any]]:
        return self.context.check_step_enabled(step_name)

    def checkpoint_enabled(self, name: str) -> Optional[str]:
        """``name`` if the checkpoint is enabled under ``stage_files``, else None."""
        stage_file = self.config["stage_files"].get(name)
        if stage_file is None or not stage_file["enabled"]:
            return None
        return name

    def make_stage(
        self,
        name: str,
        transform: Transform,
        step: Optional[str] = None,
        checkpoint: Optional[str] = None,
        preconditions: Sequence[Condition] = (),
        postconditions: Sequence[Condition] = (),
        fan_out: Sequence[str] = (),
        enabled: Optional[bool] = None,
    ) -> Stage:
        """Stage whose ``enabled`` flag follows the configuration of ``step``.

        An explicit ``enabled`` overrides the lookup.
        """
        if enabled is None:
            enabled = True if step is None else self._check_step_enabled(step)[0]
        if not enabled:
            message("debug", f"Stage '{name}' disabled by configuration ({step})")
        return Stage(
            name=name,
            transform=transform,
            preconditions=preconditions,
            postconditions=postconditions,
            checkpoint=self.checkpoint_enabled(checkpoint) if checkpoint else None,
            fan_out=tuple(fan_out),
            enabled=enabled,
        )

    def validate_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate the complete task configuration.

        Parameters
        ----------
        config : Dict[str, Any]
            The configuration dictionary to validate.
            See __init__ docstring for required fields.

        Returns
        -------
        Dict[str, Any]
            The validated configuration dictionary.

        Raises
        ------
        ValueError
            If any required fields are missing or invalid.
        TypeError
            If any fields are of the wrong type.
        """
        required_fields = {
            "run_id": str,
            "unprocessed_file": Path,
            "task": str,
            "tasks": dict,
            "stage_files": dict,
        }

        # Two-stage validation: first check existence, then type
        for field, field_type in required_fields.items():
            if field not in config:
                raise ValueError(f"Missing required field: {field}")

            if not isinstance(config[field], field_type):
                raise TypeError(
                    f"Field '{field}' must be of type {field_type.__name__}, "
                    f"got {type(config[field]).__name__} instead"
                )

        if config["task"] not in config["tasks"]:
            raise ValueError(f"Task '{config['task']}' not found in configuration")

        return self._validate_task_config(config)

    @abstractmethod
    def _validate_task_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate task-specific configuration settings.

        Parameters
        ----------
        config : Dict[str, Any]
            Configuration dictionary that has passed common validation.

        Returns
        -------
        Dict[str, Any]
            The validated configuration dictionary.

        Raises
        ------
        ValueError
            If task-specific configuration is invalid.
        """

    def get_flagged_status(self) -> tuple[bool, list[str]]:
        """Get the flagged status of the task.

        Returns
        -------
        tuple of (bool, list of str)
            A tuple containing a boolean flag and a list of reasons for flagging.
        """
        return self.flagged, self.flagged_reasons
