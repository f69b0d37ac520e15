# src/meegflow/core/stage.py
"""Stage abstraction.

A :class:`Stage` is one named transformation of a :class:`Recording` with
optional pre/postconditions and an optional checkpoint name. A stage that fans
out returns a mapping of branch name to Recording instead of a single one; the
stages that follow are then applied to every branch.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Sequence, Tuple, Union

from meegflow.core.exceptions import StageExecutionError
from meegflow.core.recording import Recording

StageOutput = Union[Recording, Mapping[str, Recording]]
Transform = Callable[[Optional[Recording], "StageContext"], StageOutput]


@dataclass(frozen=True)
class Condition:
    """A named predicate over a recording."""

    description: str
    check: Callable[[Recording], bool]

    def __call__(self, recording: Recording) -> bool:
        return bool(self.check(recording))


is_continuous = Condition("recording is continuous", lambda rec: not rec.is_epoched)
is_epoched = Condition("recording is epoched", lambda rec: rec.is_epoched)
has_events = Condition("recording has events", lambda rec: len(rec.events) > 0)
has_components = Condition(
    "recording has a component decomposition", lambda rec: rec.components is not None
)


def has_channels(minimum: int = 1) -> Condition:
    return Condition(
        f"recording has at least {minimum} channel(s)",
        lambda rec: rec.n_channels >= minimum,
    )


@dataclass
class StageContext:
    """Run-level information handed to every stage transform.

    Attributes:
        run_id: Identifier of the current run
        subject: Subject identifier used for checkpoint names
        run: Run identifier used for checkpoint names
        source_file: File the recording is imported from
        task: Name of the task being run
        config: Task configuration (the ``tasks``/``stage_files`` dictionary)
        metadata: Free-form values stages record for the run summary
    """

    run_id: str = ""
    subject: str = ""
    run: str = ""
    source_file: Optional[Path] = None
    task: str = ""
    config: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def check_step_enabled(self, step_name: str) -> Tuple[bool, Dict[str, Any]]:
        """Look up whether a processing step is enabled for the current task.

        Returns:
            Tuple of (is_enabled, settings) where settings is a copy of the step
            configuration without the ``enabled`` key
        """
        settings = self.config.get("tasks", {}).get(self.task, {}).get("settings", {})
        step_settings = dict(settings.get(step_name) or {})
        is_enabled = bool(step_settings.pop("enabled", False))
        return is_enabled, step_settings

    def step_settings(self, step_name: str) -> Dict[str, Any]:
        return self.check_step_enabled(step_name)[1]


@dataclass(frozen=True)
class Stage:
    """One ordered step of a pipeline.

    Attributes:
        name: Unique stage name
        transform: ``transform(recording, context)`` returning a Recording, or a
            mapping of branch name to Recording when ``fan_out`` is set
        preconditions: Checked on the input before the transform runs
        postconditions: Checked on every output after the transform ran
        checkpoint: Name of the snapshot written once the stage completed
        fan_out: Branch names a fan-out stage produces
        enabled: Disabled stages pass their input through unchanged
        source: The stage creates the recording and receives ``None`` as input
    """

    name: str
    transform: Transform
    preconditions: Sequence[Condition] = ()
    postconditions: Sequence[Condition] = ()
    checkpoint: Optional[str] = None
    fan_out: Tuple[str, ...] = ()
    enabled: bool = True
    source: bool = False

    def __post_init__(self):
        object.__setattr__(self, "fan_out", tuple(self.fan_out))
        object.__setattr__(self, "preconditions", tuple(self.preconditions))
        object.__setattr__(self, "postconditions", tuple(self.postconditions))

    def apply(self, recording: Optional[Recording], context: StageContext) -> StageOutput:
        """Check preconditions, run the transform and check postconditions.

        Raises:
            StageExecutionError: If a condition fails or the transform returns
                something other than the declared output
        """
        if recording is not None:
            for condition in self.preconditions:
                if not condition(recording):
                    raise StageExecutionError(
                        self.name, f"precondition failed: {condition.description}"
                    )

        output = self.transform(recording, context)

        if self.fan_out:
            if not isinstance(output, Mapping) or set(output) != set(self.fan_out):
                raise StageExecutionError(
                    self.name,
                    f"expected branches {list(self.fan_out)}, got "
                    f"{list(output) if isinstance(output, Mapping) else type(output).__name__}",
                )
            outputs = {branch: output[branch] for branch in self.fan_out}
        else:
            if not isinstance(output, Recording):
                raise StageExecutionError(
                    self.name, f"transform returned {type(output).__name__}, not a Recording"
                )
            outputs = {"": output}

        for branch, result in outputs.items():
            for condition in self.postconditions:
                if not condition(result):
                    where = f" on branch '{branch}'" if branch else ""
                    raise StageExecutionError(
                        self.name, f"postcondition failed{where}: {condition.description}"
                    )

        if self.fan_out:
            return {branch: rec.add_history(self.name) for branch, rec in outputs.items()}
        return outputs[""].add_history(self.name)


def stage(
    name: str,
    checkpoint: Optional[str] = None,
    preconditions: Sequence[Condition] = (),
    postconditions: Sequence[Condition] = (),
    fan_out: Sequence[str] = (),
    source: bool = False,
) -> Callable[[Transform], Stage]:
    """Decorator turning a ``(recording, context)`` function into a Stage."""

    def decorator(func: Transform) -> Stage:
        return Stage(
            name=name,
            transform=func,
            preconditions=preconditions,
            postconditions=postconditions,
            checkpoint=checkpoint,
            fan_out=tuple(fan_out),
            source=source,
        )

    return decorator
