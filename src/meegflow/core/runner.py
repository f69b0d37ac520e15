# src/meegflow/core/runner.py
"""Sequential stage runner with checkpointing and resume.

The runner drives an ordered list of :class:`~meegflow.core.stage.Stage`
objects over one recording (or, after a fan-out stage, over every branch of
it). It is fail-fast: the first error ends the run, nothing is retried and
nothing is rolled back. The last checkpoint written is the recovery point, and
:meth:`PipelineRunner.run` can resume from it with ``start_from``.
"""

import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from meegflow.core.exceptions import (
    CheckpointNotFoundError,
    PipelineError,
    StageExecutionError,
)
from meegflow.core.recording import Recording
from meegflow.core.stage import Stage, StageContext
from meegflow.io.checkpoint import CheckpointStore
from meegflow.utils.logging import message

__all__ = ["PipelineRunner", "RunResult", "RunState"]


class RunState(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETE = "complete"
    ABORTED = "aborted"


@dataclass
class RunResult:
    """Outcome of one :meth:`PipelineRunner.run` call.

    ``recordings`` maps branch name to the final recording; a run without
    fan-out has the single branch ``""``.
    """

    state: RunState
    recordings: Dict[str, Recording] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)
    last_stage: Optional[str] = None
    last_checkpoint: Optional[Path] = None
    error: Optional[PipelineError] = None

    @property
    def recording(self) -> Optional[Recording]:
        """The final recording of a run without fan-out."""
        return self.recordings.get("")


class PipelineRunner:
    """Run stages in order, persisting checkpoints along the way.

    Parameters
    ----------
    stages : sequence of Stage
        Ordered stages. Stage and checkpoint names must be unique.
    store : CheckpointStore
        Where checkpoints are written and resumed from.
    context : StageContext, optional
        Run information passed to every transform.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        store: CheckpointStore,
        context: Optional[StageContext] = None,
    ):
        self.stages = list(stages)
        self.store = store
        self.context = context or StageContext()
        self.state = RunState.PENDING
        self.current_stage: Optional[str] = None
        self._abort = threading.Event()
        self._validate_stages()

    def _validate_stages(self) -> None:
        names = [s.name for s in self.stages]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate stage names: {sorted(duplicates)}")

        checkpoints = [s.checkpoint for s in self.stages if s.checkpoint]
        duplicates = {c for c in checkpoints if checkpoints.count(c) > 1}
        if duplicates:
            raise ValueError(f"Duplicate checkpoint names: {sorted(duplicates)}")

        fan_outs = [s.name for s in self.stages if s.fan_out]
        if len(fan_outs) > 1:
            raise ValueError(f"Only one fan-out stage is supported, got {fan_outs}")

    def abort(self) -> None:
        """Request the run to stop before the next stage starts."""
        self._abort.set()

    @staticmethod
    def checkpoint_name(checkpoint: str, branch: str) -> str:
        """Name under which ``branch`` of a checkpoint is stored."""
        return f"{checkpoint}_{branch}" if branch else checkpoint

    def branches_after(self, index: int) -> tuple[str, ...]:
        """Branch names that exist once stage ``index`` has completed."""
        for stage in reversed(self.stages[: index + 1]):
            if stage.fan_out:
                return stage.fan_out
        return ("",)

    def _resume_index(self, start_from: str) -> int:
        for index, stage in enumerate(self.stages):
            if stage.checkpoint == start_from:
                return index
        raise CheckpointNotFoundError(
            f"No stage produces checkpoint '{start_from}'"
        )

    def _load_resume_point(self, index: int) -> Dict[str, Recording]:
        checkpoint = self.stages[index].checkpoint
        return {
            branch: self.store.load(self.checkpoint_name(checkpoint, branch))
            for branch in self.branches_after(index)
        }

    def run(
        self, recording: Optional[Recording] = None, start_from: Optional[str] = None
    ) -> RunResult:
        """Execute the stages.

        Parameters
        ----------
        recording : Recording, optional
            Input of the first stage. Not needed when the first stage is a
            source stage or when resuming.
        start_from : str, optional
            Name of a checkpoint. Every stage up to and including the one that
            produces it is skipped and the run continues from the stored
            snapshot.

        Returns
        -------
        RunResult
            State ``COMPLETE`` or ``ABORTED``.

        Raises
        ------
        PipelineError
            The first error of the run, with ``last_stage`` and
            ``last_checkpoint`` filled in. Errors outside the pipeline taxonomy
            are wrapped in :class:`StageExecutionError`.
        """
        # An abort requested before the first run still applies to it
        if self.state is not RunState.PENDING:
            self._abort.clear()
        self.state = RunState.RUNNING
        result = RunResult(state=RunState.RUNNING)
        branches: Dict[str, Recording] = {"": recording} if recording is not None else {}
        start_index = 0

        try:
            if start_from is not None:
                resume_index = self._resume_index(start_from)
                branches = self._load_resume_point(resume_index)
                start_index = resume_index + 1
                result.last_stage = self.stages[resume_index].name
                result.last_checkpoint = self.store.location(
                    self.checkpoint_name(start_from, list(branches)[-1])
                )
                message("header", f"Resuming from checkpoint '{start_from}'")

            for stage in self.stages[start_index:]:
                if self._abort.is_set():
                    message(
                        "warning",
                        f"Run aborted before stage '{stage.name}' "
                        f"(last completed: {result.last_stage})",
                    )
                    self.state = result.state = RunState.ABORTED
                    result.recordings = branches
                    return result

                self.current_stage = stage.name
                branches = self._run_stage(stage, branches)
                result.completed.append(stage.name)
                result.last_stage = stage.name

                if stage.checkpoint:
                    for branch, rec in branches.items():
                        result.last_checkpoint = self.store.save(
                            self.checkpoint_name(stage.checkpoint, branch),
                            rec,
                            stage=stage.name,
                            run_id=self.context.run_id,
                        )

        except Exception as e:  # pylint: disable=broad-except
            error = e if isinstance(e, PipelineError) else StageExecutionError(
                self.current_stage or "<runner>", f"{type(e).__name__}: {e}"
            )
            error.last_stage = result.last_stage
            error.last_checkpoint = result.last_checkpoint
            self.state = result.state = RunState.FAILED
            result.error = error
            message(
                "error",
                f"Run failed in stage '{self.current_stage}': {error}. "
                f"Last completed stage: {result.last_stage}, "
                f"last checkpoint: {result.last_checkpoint}",
            )
            if error is e:
                raise
            raise error from e

        self.state = result.state = RunState.COMPLETE
        self.current_stage = None
        result.recordings = branches
        message("success", f"✓ Completed {len(result.completed)} stage(s)")
        return result

    def _run_stage(self, stage: Stage, branches: Dict[str, Recording]) -> Dict[str, Recording]:
        if stage.source:
            if not stage.enabled:
                raise StageExecutionError(stage.name, "source stage cannot be disabled")
            message("header", f"{stage.name}")
            return self._collect(stage, stage.apply(None, self.context), "")

        if not branches:
            raise StageExecutionError(stage.name, "no input recording")

        if not stage.enabled:
            message("info", f"Skipping disabled stage '{stage.name}'")
            if stage.fan_out:
                # Every branch starts from the unchanged input
                (only,) = branches.values()
                return {branch: only for branch in stage.fan_out}
            return branches

        message("header", f"{stage.name}")
        outputs: Dict[str, Recording] = {}
        for branch, rec in branches.items():
            if branch:
                message("info", f"Branch '{branch}'")
            outputs.update(self._collect(stage, stage.apply(rec, self.context), branch))
        return outputs

    @staticmethod
    def _collect(stage: Stage, output, branch: str) -> Dict[str, Recording]:
        if stage.fan_out:
            if branch:
                raise StageExecutionError(stage.name, "cannot fan out an already branched run")
            return dict(output)
        return {branch: output}
