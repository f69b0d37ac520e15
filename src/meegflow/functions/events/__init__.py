"""Trigger channel decoding and event remapping."""

from .remap import (
    EventOverride,
    RenameRule,
    RenameTable,
    apply_overrides,
    detect_rising_edges,
    events_from_channel,
    keep_codes,
)

__all__ = [
    "EventOverride",
    "RenameRule",
    "RenameTable",
    "apply_overrides",
    "detect_rising_edges",
    "events_from_channel",
    "keep_codes",
]
