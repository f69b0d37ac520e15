"""End-to-end tests for the Pipeline class."""

import asyncio
import copy
import json

import numpy as np
import pytest

from meegflow import Pipeline
from meegflow.core.exceptions import CheckpointNotFoundError, RecordingImportError
from meegflow.core.runner import RunState

TASK = "FaceRecognition"


@pytest.fixture
def pipeline(tmp_path, face_config):
    return Pipeline(output_dir=tmp_path / "output", config=face_config)


def checkpoint_dir(pipeline):
    return next((pipeline.output_dir / TASK / "derivatives").glob("meegflow-v*")) / "checkpoints"


class TestPipelineInit:
    """Pipeline creation and listing."""

    def test_init_from_file(self, tmp_path):
        from tests.conftest import CONFIG_FILE

        pipeline = Pipeline(output_dir=tmp_path / "output", config=CONFIG_FILE)
        assert pipeline.config_file == CONFIG_FILE.absolute()
        assert len(pipeline.config_hash) == 64

    def test_list_tasks(self, pipeline):
        assert pipeline.list_tasks() == [TASK]

    def test_list_stage_files(self, pipeline):
        assert pipeline.list_stage_files() == [
            "post_import",
            "post_preprocessing",
            "post_epochs",
            "post_erp",
        ]

    def test_unknown_task(self, pipeline, fif_file):
        with pytest.raises(ValueError, match="not found"):
            pipeline.process_file(fif_file, "Nope")


class TestProcessFile:
    """Processing one file."""

    def test_full_run(self, pipeline, fif_file):
        result = pipeline.process_file(fif_file, TASK)

        assert result.state is RunState.COMPLETE
        assert set(result.recordings) == {"Famous", "Unfamiliar", "Scrambled"}
        for branch, erp in result.recordings.items():
            assert not erp.is_epoched
            # 3 s epochs at the resampled 100 Hz
            assert erp.data.shape == (8, 300)
            assert erp.sfreq == 100.0
            assert [ev.label for ev in erp.events] == [branch]

        checkpoints = checkpoint_dir(pipeline)
        assert (checkpoints / "sub-01_run-01_import.npz").is_file()
        assert (checkpoints / "sub-01_run-01_preprocessed.npz").is_file()
        assert (checkpoints / "sub-01_run-01_epochs_Famous.npz").is_file()
        assert (checkpoints / "sub-01_run-01_erp_Scrambled.npz").is_file()

    def test_events_renamed_and_counted(self, pipeline, fif_file):
        pipeline.process_file(fif_file, TASK)
        record = self._record(pipeline, fif_file)
        assert record["metadata"]["events"] == {"Famous": 6, "Scrambled": 5, "Unfamiliar": 6}

    def test_run_record(self, pipeline, fif_file):
        pipeline.process_file(fif_file, TASK)
        record = self._record(pipeline, fif_file)
        assert record["success"] is True
        assert record["status"] == "complete"
        assert record["subject"] == "sub-01"
        assert record["run"] == "run-01"
        assert record["config_hash"] == pipeline.config_hash
        assert record["completed_stages"][0] == "import"
        # Thirty seconds of data is flagged as too short
        assert record["flagged"] is True
        assert set(record["final"]) == {"Famous", "Unfamiliar", "Scrambled"}

    def test_resume_is_bit_identical(self, pipeline, fif_file):
        full = pipeline.process_file(fif_file, TASK)
        resumed = pipeline.process_file(fif_file, TASK, start_from="post_preprocessing")

        assert resumed.completed[0] == "epochs"
        for branch in full.recordings:
            np.testing.assert_array_equal(
                resumed.recordings[branch].data, full.recordings[branch].data
            )
            assert resumed.recordings[branch].events == full.recordings[branch].events

    def test_resume_without_checkpoint(self, pipeline, fif_file):
        with pytest.raises(CheckpointNotFoundError):
            pipeline.process_file(fif_file, TASK, start_from="post_epochs")

    def test_failure_is_recorded(self, pipeline, tmp_path):
        broken = tmp_path / "sub-02_run-01_meg.fif"
        broken.write_bytes(b"not a fif file")
        with pytest.raises(RecordingImportError) as excinfo:
            pipeline.process_file(broken, TASK)
        assert excinfo.value.last_stage is None

        record = self._record(pipeline, broken)
        assert record["success"] is False
        assert record["status"] == "failed"

    def test_missing_file(self, pipeline, tmp_path):
        with pytest.raises(FileNotFoundError):
            pipeline.process_file(tmp_path / "sub-03_run-01_meg.fif", TASK)

    def test_export(self, tmp_path, face_config, fif_file):
        config = copy.deepcopy(face_config)
        settings = config["tasks"][TASK]["settings"]
        settings["epoch_settings"]["enabled"] = False
        config["export"]["enabled"] = True
        pipeline = Pipeline(output_dir=tmp_path / "output", config=config)

        result = pipeline.process_file(fif_file, TASK)
        assert not result.recording.is_epoched
        assert (pipeline.output_dir / TASK / "final_files" / "sub-01_run-01_raw.set").is_file()

    @staticmethod
    def _record(pipeline, file_path):
        metadata_dir = checkpoint_dir(pipeline).parent / "metadata"
        with open(metadata_dir / f"{file_path.stem}_meegflow_metadata.json", encoding="utf8") as f:
            return json.load(f)


class TestProcessDirectory:
    """Batch processing."""

    def test_sequential(self, pipeline, fif_file):
        (fif_file.parent / "sub-02_run-01_meg.fif").write_bytes(b"broken")
        results = pipeline.process_directory(fif_file.parent, TASK)
        assert results[fif_file.name].state is RunState.COMPLETE
        assert results["sub-02_run-01_meg.fif"] is None

    def test_async(self, pipeline, fif_file):
        results = asyncio.run(
            pipeline.process_directory_async(fif_file.parent, TASK, max_concurrent=2)
        )
        assert results[fif_file.name].state is RunState.COMPLETE

    def test_no_matching_files(self, pipeline, tmp_path):
        assert pipeline.process_directory(tmp_path, TASK, pattern="*.vhdr") == {}
