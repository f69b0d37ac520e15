"""Unit tests for the Task base class and the FaceRecognition task."""

import copy
from pathlib import Path

import pytest

from meegflow.core.stage import Stage
from meegflow.core.task import Task
from meegflow.tasks import task_registry
from meegflow.tasks.face_recognition import FaceRecognition


def run_dict(config, **overrides):
    """Configuration as the pipeline hands it to a task."""
    values = {
        **copy.deepcopy(config),
        "run_id": "01TESTRUN",
        "task": "FaceRecognition",
        "unprocessed_file": Path("sub-01_run-01_meg.fif"),
        "subject": "sub-01",
        "run": "run-01",
    }
    values.update(overrides)
    return values


class TestTaskBase:
    """Tests for the abstract base class."""

    def test_task_is_abstract(self, base_config):
        with pytest.raises(TypeError):
            Task(run_dict(base_config))

    def test_registry(self):
        assert task_registry["facerecognition"] is FaceRecognition


class TestConfigValidation:
    """Configuration checks on task creation."""

    @pytest.mark.parametrize(
        "field", ["run_id", "unprocessed_file", "task", "tasks", "stage_files"]
    )
    def test_missing_field(self, base_config, field):
        config = run_dict(base_config)
        del config[field]
        with pytest.raises(ValueError, match=field):
            FaceRecognition(config)

    def test_wrong_type(self, base_config):
        with pytest.raises(TypeError):
            FaceRecognition(run_dict(base_config, unprocessed_file="sub-01.fif"))

    def test_unknown_task(self, base_config):
        with pytest.raises(ValueError, match="not found"):
            FaceRecognition(run_dict(base_config, task="Other"))

    def test_missing_stage_file(self, base_config):
        config = run_dict(base_config)
        del config["stage_files"]["post_epochs"]
        with pytest.raises(ValueError, match="post_epochs"):
            FaceRecognition(config)

    def test_epochs_need_conditions(self, base_config):
        config = run_dict(base_config)
        config["tasks"]["FaceRecognition"]["settings"]["epoch_settings"]["conditions"] = {}
        with pytest.raises(ValueError, match="condition"):
            FaceRecognition(config)

    def test_context(self, base_config):
        task = FaceRecognition(run_dict(base_config))
        assert task.context.run_id == "01TESTRUN"
        assert task.context.subject == "sub-01"
        assert task.context.source_file == Path("sub-01_run-01_meg.fif")
        assert task.get_flagged_status() == (False, [])


class TestBuildStages:
    """Stage list of the FaceRecognition task."""

    def _stages(self, config):
        return {stage.name: stage for stage in FaceRecognition(run_dict(config)).build_stages()}

    def test_stage_order(self, base_config):
        names = list(self._stages(base_config))
        assert names[0] == "import"
        assert names.index("event_channel") < names.index("chantype")
        assert names.index("rename_events") < names.index("event_shift")
        assert names.index("event_shift") < names.index("resample")
        assert names.index("ica") < names.index("epochs") < names.index("erp")
        assert names[-1] == "erp"

    def test_source_stage(self, base_config):
        stages = self._stages(base_config)
        assert isinstance(stages["import"], Stage)
        assert stages["import"].source

    def test_checkpoints(self, base_config):
        checkpoints = [s.checkpoint for s in self._stages(base_config).values() if s.checkpoint]
        assert checkpoints == ["post_import", "post_preprocessing", "post_epochs", "post_erp"]
        assert self._stages(base_config)["event_shift"].checkpoint == "post_import"

    def test_disabled_checkpoint(self, base_config):
        config = copy.deepcopy(base_config)
        config["stage_files"]["post_epochs"]["enabled"] = False
        assert self._stages(config)["brain_components"].checkpoint is None

    def test_fan_out_conditions(self, base_config):
        stages = self._stages(base_config)
        assert stages["epochs"].fan_out == ("Famous", "Unfamiliar", "Scrambled")

    def test_enabled_flags_follow_config(self, face_config):
        stages = self._stages(face_config)
        assert not stages["channel_types"].enabled
        assert not stages["bad_channels"].enabled
        assert not stages["ica"].enabled
        assert not stages["component_rejection"].enabled
        assert not stages["brain_components"].enabled
        assert stages["event_overrides"].enabled is False
        assert stages["baseline"].enabled
        assert stages["amplitude_rejection"].enabled
        assert stages["erp"].enabled

    def test_epochs_disabled(self, base_config):
        config = copy.deepcopy(base_config)
        config["tasks"]["FaceRecognition"]["settings"]["epoch_settings"]["enabled"] = False
        stages = self._stages(config)
        assert stages["epochs"].fan_out == ()
        assert not stages["epochs"].enabled
        assert not stages["erp"].enabled
