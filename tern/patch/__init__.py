from tern.patch.diff import DiffHunk, looks_like_diff, parse_unified_diff
from tern.patch.engine import (
    FileSnapshot,
    HunkOutcome,
    HunkReport,
    HunkStatus,
    PartialFailure,
    PatchEngine,
    RevertReport,
    RevertSelector,
)
from tern.patch.journal import AppliedPatchRecord, FileChange, RevertJournal
from tern.patch.review import Finding, Severity, review

__all__ = [
    "AppliedPatchRecord",
    "DiffHunk",
    "FileChange",
    "FileSnapshot",
    "Finding",
    "HunkOutcome",
    "HunkReport",
    "HunkStatus",
    "PartialFailure",
    "PatchEngine",
    "RevertJournal",
    "RevertReport",
    "RevertSelector",
    "Severity",
    "looks_like_diff",
    "parse_unified_diff",
    "review",
]
