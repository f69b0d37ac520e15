# src/meegflow/utils/config.py
"""Configuration loading and validation."""

import hashlib
from pathlib import Path
from typing import Any, Dict

import yaml
from schema import And, Or, Schema
from schema import Optional as Opt

from meegflow.core.exceptions import InvalidSelectorError, ThresholdConfigError
from meegflow.utils.logging import message

# Channel-type selector -> channel types it keeps
CHANTYPE_SELECTORS = {
    "eeg": ("EEG",),
    "megmag": ("MEGMAG",),
    "megplanar": ("MEGPLANAR",),
}

Number = Or(int, float)
Code = Or(int, str)

SETTINGS_SCHEMA = {
    Opt("channel_types"): {"enabled": bool, "value": Or({str: str}, None)},
    Opt("fiducials"): {"enabled": bool, "value": Or({str: [Number]}, None)},
    Opt("event_channel"): {
        "enabled": bool,
        "value": {
            "channel": Or(str, int),
            Opt("bit_mask"): Or(int, None),
            Opt("min_length"): int,
            Opt("mask_first"): bool,
            Opt("delete_channel"): bool,
        },
    },
    Opt("chantype"): {"enabled": bool, "value": str},
    Opt("recenter"): {"enabled": bool},
    Opt("event_codes"): {"enabled": bool, "value": [Code]},
    Opt("event_overrides"): {
        "enabled": bool,
        "value": [{"index": int, "label": Code, Opt("expected"): Or(Code, None)}],
    },
    Opt("rename_events"): {
        "enabled": bool,
        Opt("unmatched"): Or("keep", "drop"),
        "value": {str: [Code]},
    },
    Opt("event_shift"): {"enabled": bool, "value": Number},
    Opt("reference_step"): {"enabled": bool, "value": Or(str, [str], None)},
    Opt("resample_step"): {"enabled": bool, "value": Or(Number, None)},
    Opt("highpass_step"): {"enabled": bool, "value": Or(Number, None)},
    Opt("lowpass_step"): {"enabled": bool, "value": Or(Number, None)},
    Opt("bad_channels"): {
        "enabled": bool,
        Opt("correlation_threshold"): Or(Number, None),
        Opt("max_bad_time"): Number,
        Opt("line_noise_criterion"): Number,
    },
    Opt("window_rejection"): {
        "enabled": bool,
        Opt("burst_criterion"): Number,
        Opt("window_criterion"): Number,
        Opt("window_secs"): Number,
    },
    Opt("ica"): {
        "enabled": bool,
        Opt("method"): Or(str, None),
        Opt("n_components"): Or(int, None),
        Opt("max_iter"): int,
        Opt("random_state"): Or(int, None),
    },
    Opt("ICLabel"): {"enabled": bool, Opt("flags"): {str: [Number]}},
    Opt("epoch_settings"): {
        "enabled": bool,
        "value": {"tmin": Number, "tmax": Number},
        "conditions": {str: [Code]},
        Opt("remove_baseline"): {"enabled": bool, "window": Or([Number], None)},
        Opt("threshold_rejection"): {"enabled": bool, "volt_threshold": [Number]},
        Opt("keep_brain_components"): bool,
    },
    Opt("erp"): {"enabled": bool},
}

CONFIG_SCHEMA = Schema(
    {
        "tasks": {
            str: {
                Opt("description"): str,
                Opt("task_class"): str,
                "settings": SETTINGS_SCHEMA,
            }
        },
        "stage_files": {str: {"enabled": bool, "suffix": str}},
        Opt("export"): {"enabled": bool, Opt("format"): And(str, lambda f: f == "eeglab")},
    }
)


def load_config(config_file: str | Path) -> dict:
    """Load and validate a meegflow configuration file.

    Parameters
    ----------
    config_file : str or Path
        Path to the YAML configuration file.

    Returns
    -------
    config : dict
        The validated configuration dictionary.

    Raises
    ------
    schema.SchemaError
        If the file does not match the configuration layout.
    ThresholdConfigError
        If a numeric setting is invalid.
    """
    message("info", f"Loading config: {config_file}")
    with open(config_file, encoding="utf8") as f:
        config = yaml.safe_load(f)
    return validate_config(config)


def validate_config(config: Dict[str, Any]) -> dict:
    """Validate an already loaded configuration dictionary."""
    config = CONFIG_SCHEMA.validate(config)
    for task in config["tasks"]:
        validate_signal_processing_params(config, task)
    return config


def _step(settings: dict, name: str) -> dict:
    step = settings.get(name) or {}
    return step if step.get("enabled", False) else {}


def _value(settings: dict, name: str):
    return _step(settings, name).get("value")


def validate_signal_processing_params(config: dict, task: str) -> None:
    """Validate signal processing parameters for physical constraints.

    Only enabled steps are checked.

    Parameters
    ----------
    config : dict
        Configuration dictionary
    task : str
        Task whose settings are validated

    Raises
    ------
    ThresholdConfigError
        If parameters violate signal processing constraints
    InvalidSelectorError
        If the channel-type selector is unknown
    """
    settings = config["tasks"][task]["settings"]

    highpass = _value(settings, "highpass_step")
    lowpass = _value(settings, "lowpass_step")
    resample = _value(settings, "resample_step")

    for name, freq in (("High-pass", highpass), ("Low-pass", lowpass)):
        if freq is not None and freq < 0:
            raise ThresholdConfigError(f"[{task}] {name} frequency must be non-negative, got {freq}")
    if highpass is not None and lowpass is not None and lowpass <= highpass:
        raise ThresholdConfigError(
            f"[{task}] Low-pass ({lowpass} Hz) must be above high-pass ({highpass} Hz)"
        )
    if resample is not None:
        if resample <= 0:
            raise ThresholdConfigError(f"[{task}] Resample rate must be positive, got {resample}")
        nyquist = resample / 2
        for name, freq in (("High-pass", highpass), ("Low-pass", lowpass)):
            if freq is not None and freq >= nyquist:
                raise ThresholdConfigError(
                    f"[{task}] {name} frequency {freq} Hz must be below the Nyquist "
                    f"frequency {nyquist} Hz of the resampled data"
                )

    chantype = _value(settings, "chantype")
    if chantype is not None and chantype.lower() not in CHANTYPE_SELECTORS:
        raise InvalidSelectorError(
            f"[{task}] Unknown channel type '{chantype}', expected one of {sorted(CHANTYPE_SELECTORS)}"
        )

    event_channel = _value(settings, "event_channel")
    if event_channel is not None and event_channel.get("min_length", 1) < 1:
        raise ThresholdConfigError(f"[{task}] Edge length must be at least 1")

    bad_channels = _step(settings, "bad_channels")
    threshold = bad_channels.get("correlation_threshold")
    if threshold is not None and not 0 < threshold <= 1:
        raise ThresholdConfigError(
            f"[{task}] Correlation threshold must be in (0, 1], got {threshold}"
        )
    if "max_bad_time" in bad_channels and not 0 < bad_channels["max_bad_time"] <= 1:
        raise ThresholdConfigError(f"[{task}] max_bad_time must be in (0, 1]")

    windows = _step(settings, "window_rejection")
    if "window_criterion" in windows and not 0 < windows["window_criterion"] <= 1:
        raise ThresholdConfigError(
            f"[{task}] Window criterion must be in (0, 1], got {windows['window_criterion']}"
        )
    if windows.get("burst_criterion", 1) <= 0:
        raise ThresholdConfigError(f"[{task}] Burst criterion must be positive")
    if windows.get("window_secs", 1) <= 0:
        raise ThresholdConfigError(f"[{task}] Window length must be positive")

    for label, bounds in (_step(settings, "ICLabel").get("flags") or {}).items():
        if len(bounds) != 2 or not 0 <= bounds[0] <= bounds[1] <= 1:
            raise ThresholdConfigError(
                f"[{task}] ICLabel range for '{label}' must be [low, high] within [0, 1]"
            )

    epoch_settings = _step(settings, "epoch_settings")
    if epoch_settings:
        tmin = epoch_settings["value"]["tmin"]
        tmax = epoch_settings["value"]["tmax"]
        if tmax <= tmin:
            message("error", f"Epoch tmax ({tmax}s) must be greater than tmin ({tmin}s)")
            raise ThresholdConfigError(f"[{task}] Invalid epoch times: tmax {tmax}s <= tmin {tmin}s")

        baseline = epoch_settings.get("remove_baseline") or {}
        window = baseline.get("window")
        if baseline.get("enabled") and window is not None:
            if len(window) != 2 or window[1] <= window[0]:
                raise ThresholdConfigError(f"[{task}] Baseline window must be [start, stop]")
            if window[0] < tmin or window[1] > tmax:
                raise ThresholdConfigError(
                    f"[{task}] Baseline {window} lies outside the epoch [{tmin}, {tmax}]"
                )

        rejection = epoch_settings.get("threshold_rejection") or {}
        if rejection.get("enabled"):
            volts = rejection["volt_threshold"]
            if len(volts) != 2 or volts[0] >= volts[1]:
                raise ThresholdConfigError(
                    f"[{task}] Amplitude thresholds must be [low, high] with low < high, got {volts}"
                )

    message("debug", f"Signal processing parameters validated for task {task}")


def hash_config(content: str | Path | dict, is_file: bool = True) -> str:
    """SHA-256 of the canonical YAML dump of a file or dictionary."""
    if is_file:
        with open(content, "r", encoding="utf8") as f:
            data = yaml.safe_load(f)
    else:
        data = content
    canonical_yaml = yaml.safe_dump(data, sort_keys=True)
    return hashlib.sha256(canonical_yaml.encode("utf-8")).hexdigest()
