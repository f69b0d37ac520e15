"""MEG/EEG processing pipeline with checkpoints and resume.

This package imports recordings, remaps their trigger events and runs them
through configurable preprocessing, epoching and averaging stages.
"""

__version__ = "0.3.0"

from .core.exceptions import PipelineError
from .core.pipeline import Pipeline
from .core.recording import Channel, Event, Recording

__all__ = [
    "Channel",
    "Event",
    "Pipeline",
    "PipelineError",
    "Recording",
]
