# src/meegflow/tasks/face_recognition.py
"""Task implementation for the face recognition MEG/EEG dataset.

Famous, unfamiliar and scrambled faces, recorded on a Neuromag system with
simultaneous EEG. Triggers come from the ``STI101`` channel.
"""

from typing import Any, Dict, List, Optional

from meegflow.core.recording import ChannelKind, Recording
from meegflow.core.task import Task
from meegflow.core.stage import (
    Stage,
    StageContext,
    has_channels,
    has_components,
    has_events,
    is_continuous,
    is_epoched,
)
from meegflow.functions.epoching.epochs import (
    average_epochs,
    epoch_conditions,
    reject_by_amplitude,
    remove_baseline,
)
from meegflow.functions.events.remap import (
    EventOverride,
    RenameTable,
    apply_overrides,
    events_from_channel,
    keep_codes,
)
from meegflow.functions.ica.classification import (
    ICLabelClassifier,
    ThresholdPolicy,
    brain_components,
    classify_components,
    flag_components,
)
from meegflow.functions.ica.decomposition import fit_ica
from meegflow.functions.preprocessing.channels import (
    detect_bad_channels,
    recenter_channels,
    remove_bad_channels,
    set_channel_types,
)
from meegflow.functions.preprocessing.filtering import filter_data, resample_data
from meegflow.functions.preprocessing.referencing import rereference_data
from meegflow.functions.preprocessing.segments import reject_bad_windows
from meegflow.utils.config import CHANTYPE_SELECTORS
from meegflow.utils.logging import message

REQUIRED_STAGE_FILES = ("post_import", "post_preprocessing", "post_epochs", "post_erp")


class FaceRecognition(Task):
    """Import, preprocess, epoch and average one face recognition run."""

    # ------------------------------------------------------------------
    # Import and event handling
    # ------------------------------------------------------------------
    def set_fiducials(self, recording: Recording, context: StageContext) -> Recording:
        return recording.set_fiducials(context.step_settings("fiducials")["value"])

    def fix_channel_types(self, recording: Recording, context: StageContext) -> Recording:
        return set_channel_types(recording, context.step_settings("channel_types")["value"])

    def extract_events(self, recording: Recording, context: StageContext) -> Recording:
        settings = dict(context.step_settings("event_channel")["value"])
        channel = settings.pop("channel")
        return events_from_channel(recording, channel, **settings)

    def select_chantype(self, recording: Recording, context: StageContext) -> Recording:
        selector = context.step_settings("chantype")["value"].lower()
        recording = recording.pick_types(CHANTYPE_SELECTORS[selector])
        context.metadata["chantype"] = selector
        message("info", f"Kept {recording.n_channels} {selector} channels")
        return recording

    def recenter(self, recording: Recording, context: StageContext) -> Recording:
        return recenter_channels(recording)

    def select_codes(self, recording: Recording, context: StageContext) -> Recording:
        return keep_codes(recording, context.step_settings("event_codes")["value"])

    def override_events(self, recording: Recording, context: StageContext) -> Recording:
        overrides = [
            EventOverride(
                index=entry["index"],
                label=str(entry["label"]),
                expected=None if entry.get("expected") is None else str(entry["expected"]),
            )
            for entry in context.step_settings("event_overrides")["value"]
        ]
        return apply_overrides(recording, overrides)

    def rename_events(self, recording: Recording, context: StageContext) -> Recording:
        settings = context.step_settings("rename_events")
        table = RenameTable.from_config(settings["value"])
        recording = table.apply(recording, unmatched=settings.get("unmatched", "keep"))
        summary = recording.summary()
        context.metadata["events"] = {
            label: int(count) for label, count in zip(summary["label"], summary["count"])
        }
        return recording

    def shift_events(self, recording: Recording, context: StageContext) -> Recording:
        delta_ms = context.step_settings("event_shift")["value"]
        shifted = recording.shift_event_timestamps(delta_ms, drop_out_of_bounds=True)
        dropped = len(recording.events) - len(shifted.events)
        if dropped:
            message("warning", f"Dropped {dropped} events shifted outside the recording")
        return shifted

    # ------------------------------------------------------------------
    # Continuous preprocessing
    # ------------------------------------------------------------------
    def rereference(self, recording: Recording, context: StageContext) -> Recording:
        ref_channels = context.step_settings("reference_step").get("value") or "average"
        return rereference_data(recording, ref_channels=ref_channels)

    def resample(self, recording: Recording, context: StageContext) -> Recording:
        return resample_data(recording, context.step_settings("resample_step")["value"])

    def highpass(self, recording: Recording, context: StageContext) -> Recording:
        return filter_data(recording, l_freq=context.step_settings("highpass_step")["value"])

    def lowpass(self, recording: Recording, context: StageContext) -> Recording:
        return filter_data(recording, h_freq=context.step_settings("lowpass_step")["value"])

    def clean_bad_channels(self, recording: Recording, context: StageContext) -> Recording:
        bads = detect_bad_channels(recording, **context.step_settings("bad_channels"))
        context.metadata["bad_channels"] = bads
        if len(bads) > 0.25 * recording.n_channels:
            self.flagged = True
            self.flagged_reasons.append(
                f"WARNING: {len(bads)} of {recording.n_channels} channels marked bad"
            )
        return remove_bad_channels(recording, bads)

    def reject_windows(self, recording: Recording, context: StageContext) -> Recording:
        cleaned = reject_bad_windows(recording, **context.step_settings("window_rejection"))
        context.metadata["window_rejection"] = {
            "duration_before": recording.duration,
            "duration_after": cleaned.duration,
        }
        return cleaned

    def run_ica(self, recording: Recording, context: StageContext) -> Recording:
        recording, ica = fit_ica(recording, **context.step_settings("ica"))
        if not self._check_step_enabled("ICLabel")[0]:
            return recording

        signal_types = {
            ch.mne_type for ch in recording.channels if ch.kind == ChannelKind.SIGNAL
        }
        if signal_types != {"eeg"}:
            message("warning", "ICLabel classifies EEG components only, skipping classification")
            return recording
        return classify_components(recording, ica, ICLabelClassifier())

    def reject_components(self, recording: Recording, context: StageContext) -> Recording:
        if recording.components.probabilities is None:
            message("warning", "Components are not classified, none removed")
            return recording
        policy = ThresholdPolicy.from_config(context.step_settings("ICLabel").get("flags", {}))
        flagged = flag_components(recording, policy)
        context.metadata["flagged_components"] = flagged
        return recording.remove_components(flagged)

    # ------------------------------------------------------------------
    # Epochs
    # ------------------------------------------------------------------
    def _epoch_settings(self, context: StageContext) -> Dict[str, Any]:
        return context.step_settings("epoch_settings")

    def make_epochs(self, recording: Recording, context: StageContext) -> Dict[str, Recording]:
        settings = self._epoch_settings(context)
        conditions = {
            name: [str(label) for label in labels]
            for name, labels in settings["conditions"].items()
        }
        return epoch_conditions(
            recording,
            conditions,
            tmin=settings["value"]["tmin"],
            tmax=settings["value"]["tmax"],
        )

    def baseline(self, recording: Recording, context: StageContext) -> Recording:
        window = self._epoch_settings(context)["remove_baseline"].get("window")
        return remove_baseline(recording, tuple(window) if window is not None else None)

    def reject_epochs(self, recording: Recording, context: StageContext) -> Recording:
        low, high = self._epoch_settings(context)["threshold_rejection"]["volt_threshold"]
        cleaned, rejected = reject_by_amplitude(recording, low, high)
        context.metadata.setdefault("rejected_epochs", {})[recording.setname] = rejected
        if cleaned.n_trials == 0:
            message("warning", f"All epochs of {recording.setname} were rejected")
        return cleaned

    def keep_brain(self, recording: Recording, context: StageContext) -> Recording:
        return recording.keep_components(brain_components(recording))

    def average(self, recording: Recording, context: StageContext) -> Recording:
        return average_epochs(recording)

    # ------------------------------------------------------------------
    # Stage list
    # ------------------------------------------------------------------
    def _epoch_option(self, option: str) -> bool:
        enabled, settings = self._check_step_enabled("epoch_settings")
        value = settings.get(option)
        if isinstance(value, dict):
            value = value.get("enabled", False)
        return enabled and bool(value)

    def build_stages(self) -> List[Stage]:
        epochs_enabled, epoch_settings = self._check_step_enabled("epoch_settings")
        conditions = tuple(epoch_settings.get("conditions", {})) if epochs_enabled else ()

        return [
            Stage("import", self.import_raw, source=True),
            self.make_stage("fiducials", self.set_fiducials, step="fiducials"),
            self.make_stage("channel_types", self.fix_channel_types, step="channel_types"),
            self.make_stage(
                "event_channel",
                self.extract_events,
                step="event_channel",
                preconditions=[is_continuous],
            ),
            self.make_stage(
                "chantype",
                self.select_chantype,
                step="chantype",
                postconditions=[has_channels(1)],
            ),
            self.make_stage("recenter", self.recenter, step="recenter"),
            self.make_stage("event_codes", self.select_codes, step="event_codes"),
            self.make_stage("event_overrides", self.override_events, step="event_overrides"),
            self.make_stage("rename_events", self.rename_events, step="rename_events"),
            self.make_stage(
                "event_shift", self.shift_events, step="event_shift", checkpoint="post_import"
            ),
            self.make_stage("reference", self.rereference, step="reference_step"),
            self.make_stage("resample", self.resample, step="resample_step"),
            self.make_stage("highpass", self.highpass, step="highpass_step"),
            self.make_stage("lowpass", self.lowpass, step="lowpass_step"),
            self.make_stage(
                "bad_channels",
                self.clean_bad_channels,
                step="bad_channels",
                preconditions=[has_channels(2)],
                postconditions=[has_channels(1)],
            ),
            self.make_stage("rereference", self.rereference, step="reference_step"),
            self.make_stage(
                "window_rejection",
                self.reject_windows,
                step="window_rejection",
                preconditions=[is_continuous],
            ),
            self.make_stage(
                "ica", self.run_ica, step="ica", postconditions=[has_components]
            ),
            self.make_stage(
                "component_rejection",
                self.reject_components,
                step="ICLabel",
                checkpoint="post_preprocessing",
                enabled=self._check_step_enabled("ICLabel")[0]
                and self._check_step_enabled("ica")[0],
                preconditions=[has_components],
            ),
            self.make_stage(
                "epochs",
                self.make_epochs,
                step="epoch_settings",
                fan_out=conditions,
                preconditions=[is_continuous, has_events],
                postconditions=[is_epoched],
            ),
            self.make_stage(
                "baseline",
                self.baseline,
                step="epoch_settings",
                enabled=self._epoch_option("remove_baseline"),
                preconditions=[is_epoched],
            ),
            self.make_stage(
                "amplitude_rejection",
                self.reject_epochs,
                step="epoch_settings",
                enabled=self._epoch_option("threshold_rejection"),
                preconditions=[is_epoched],
            ),
            self.make_stage(
                "brain_components",
                self.keep_brain,
                step="epoch_settings",
                checkpoint="post_epochs",
                enabled=self._epoch_option("keep_brain_components"),
                preconditions=[is_epoched, has_components],
            ),
            self.make_stage(
                "erp",
                self.average,
                step="erp",
                checkpoint="post_erp",
                enabled=epochs_enabled and self._check_step_enabled("erp")[0],
                preconditions=[is_epoched],
            ),
        ]

    def _validate_task_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Validate face recognition specific configuration.

        Args:
            config: Configuration dictionary that has passed common validation

        Returns:
            Validated configuration dictionary

        Raises:
            ValueError: If required fields are missing or invalid
        """
        for stage in REQUIRED_STAGE_FILES:
            if stage not in config["stage_files"]:
                raise ValueError(f"Missing stage in stage_files: {stage}")
            stage_config = config["stage_files"][stage]
            if not isinstance(stage_config, dict):
                raise ValueError(f"Stage {stage} configuration must be a dictionary")
            if "enabled" not in stage_config:
                raise ValueError(f"Stage {stage} must have 'enabled' field")

        settings = config["tasks"][config["task"]].get("settings", {})
        epochs: Optional[dict] = settings.get("epoch_settings")
        if epochs and epochs.get("enabled") and not epochs.get("conditions"):
            raise ValueError("epoch_settings needs at least one condition")

        return config
