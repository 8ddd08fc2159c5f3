"""
Beads feature — work items ("beads") driven by the Ralph loop.

Public API:
    from features.beads import WorkItem, Verifier, BeadStatus
    from features.beads import JsonBeadStore, BdCliStore, open_store
    from features.beads import LoopTracker
"""

from features.beads.models import (
    BeadStatus,
    MalformedBeadError,
    SuiteResult,
    Verifier,
    VerifierResult,
    WorkItem,
)
from features.beads.store import (
    BdCliStore,
    BeadNotFoundError,
    BeadStoreError,
    JsonBeadStore,
    open_store,
)
from features.beads.tracker import LoopTracker

__all__ = [
    "BdCliStore",
    "BeadNotFoundError",
    "BeadStatus",
    "BeadStoreError",
    "JsonBeadStore",
    "LoopTracker",
    "MalformedBeadError",
    "SuiteResult",
    "Verifier",
    "VerifierResult",
    "WorkItem",
    "open_store",
]
