"""Epoch creation, baseline removal, rejection and averaging."""

from .epochs import (
    average_epochs,
    create_epochs,
    epoch_conditions,
    epoch_std,
    reject_by_amplitude,
    remove_baseline,
    select_trials,
)

__all__ = [
    "average_epochs",
    "create_epochs",
    "epoch_conditions",
    "epoch_std",
    "reject_by_amplitude",
    "remove_baseline",
    "select_trials",
]
