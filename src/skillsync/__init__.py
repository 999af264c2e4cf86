from __future__ import annotations

from ._version import __version__
from .errors import SkillsyncError
from .sync import SyncContext, SyncError, SyncOptions, SyncSummary, run_sync

__all__ = [
    "SkillsyncError",
    "SyncContext",
    "SyncError",
    "SyncOptions",
    "SyncSummary",
    "__version__",
    "run_sync",
]
