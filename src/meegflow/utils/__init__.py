"""Utility functions and helpers.

Import specific modules directly:

    from meegflow.utils.config import load_config
    from meegflow.utils.logging import message
"""
