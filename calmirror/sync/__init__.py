"""Sync engine module."""

from calmirror.sync.engine import (
    cleanup_beyond_window,
    full_sync,
    run_sync,
    targeted_sync,
)

__all__ = [
    "cleanup_beyond_window",
    "full_sync",
    "run_sync",
    "targeted_sync",
]
