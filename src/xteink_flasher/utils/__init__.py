"""
Utility modules for xteink-flasher.

This package groups host-side helpers that are shared across core logic and the CLI.
"""

from .power import keep_awake

__all__ = [
    "keep_awake",
]
