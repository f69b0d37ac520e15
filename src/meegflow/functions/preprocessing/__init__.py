"""Preprocessing functions for continuous recordings."""

from .channels import (
    detect_bad_channels,
    recenter_channels,
    remove_bad_channels,
    set_channel_types,
)
from .filtering import filter_data, resample_data
from .referencing import rereference_data
from .segments import find_bad_windows, reject_bad_windows, remove_spans

__all__ = [
    "detect_bad_channels",
    "filter_data",
    "find_bad_windows",
    "recenter_channels",
    "reject_bad_windows",
    "remove_bad_channels",
    "remove_spans",
    "rereference_data",
    "resample_data",
    "set_channel_types",
]
