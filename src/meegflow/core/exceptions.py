"""Error taxonomy for meegflow runs.

Every error raised by the pipeline derives from :class:`PipelineError`. All of
them are fatal for the current run: the runner never retries and never rolls
back, the last written checkpoint is the recovery point. When a run fails the
runner fills in ``last_stage`` and ``last_checkpoint`` on the raised error.
"""

from pathlib import Path
from typing import Optional


class PipelineError(Exception):
    """Base class for all meegflow errors."""

    def __init__(self, *args) -> None:
        super().__init__(*args)
        self.last_stage: Optional[str] = None
        self.last_checkpoint: Optional[Path] = None


class RecordingImportError(PipelineError):
    """The source file is unreadable, malformed or of an unknown format."""


class MetadataError(PipelineError):
    """Channel or event metadata is inconsistent, or a rename table is malformed."""


class OutOfRangeError(MetadataError, IndexError):
    """A channel, event or trial index exceeds the available count."""


class InvalidSelectorError(MetadataError):
    """A selector matched nothing where at least one match was required."""


class ThresholdConfigError(PipelineError, ValueError):
    """Numeric configuration is invalid (e.g. low-pass below high-pass)."""


class CheckpointNotFoundError(PipelineError):
    """A checkpoint was requested that does not exist in the store."""


class StageExecutionError(PipelineError):
    """A stage failed, either its own checks or the delegated algorithm.

    Parameters
    ----------
    stage : str
        Name of the failing stage.
    reason : str
        Human readable description of the failure.
    """

    def __init__(self, stage: str, reason: str) -> None:
        super().__init__(f"Stage '{stage}' failed: {reason}")
        self.stage = stage
        self.reason = reason
