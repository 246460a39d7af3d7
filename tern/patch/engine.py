"""Validating, applying and reverting patch proposals against a workspace.

Each file is read once, all of its hunks are located against that content,
and the file is written once, atomically, with the hunks applied bottom-up.
Files are independent: a failure in one never rolls back another, but every
file that was written lands in the revert journal.
"""

import os
import re
import stat
import tempfile
from collections.abc import Iterable, Mapping
from contextlib import suppress
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from tern.constants import BINARY_SNIFF_BYTES, MAX_DRIFT
from tern.core.models import PatchProposal
from tern.errors import (
    ExternalEditConflict,
    HunkConflict,
    NeedsConfirmation,
    SymlinkRefused,
    TernError,
    ValidationError,
    WorkspaceIOError,
)
from tern.logging import get_logger
from tern.patch.diff import DiffHunk
from tern.patch.journal import AppliedPatchRecord, FileChange, RevertJournal
from tern.patch.merge import align_region, merge3
from tern.utils import sha256_hex

_logger = get_logger(__name__)

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


# --- Workspace files ---


@dataclass(frozen=True)
class FileSnapshot:
    path: str
    data: bytes | None  # None when the file does not exist
    is_symlink: bool = False
    mode: int | None = None

    @property
    def exists(self) -> bool:
        return self.data is not None

    @property
    def is_binary(self) -> bool:
        if self.data is None:
            return False
        if b"\0" in self.data[:BINARY_SNIFF_BYTES]:
            return True
        try:
            self.data.decode("utf-8")
        except UnicodeDecodeError:
            return True
        return False


WorkspaceSnapshot = Mapping[str, FileSnapshot]


@dataclass
class TextFile:
    lines: list[str]
    newline: str = "\n"
    trailing_newline: bool = True

    @classmethod
    def decode(cls, data: bytes | None) -> "TextFile":
        if not data:
            return cls(lines=[])
        text = data.decode("utf-8", errors="surrogateescape")
        crlf = text.count("\r\n")
        counts = {"\r\n": crlf, "\r": text.count("\r") - crlf, "\n": text.count("\n") - crlf}
        newline = max(counts, key=lambda k: (counts[k], k == "\n"))
        lines = _LINE_BREAK.split(text)
        trailing = lines[-1] == ""
        if trailing:
            lines.pop()
        return cls(lines=lines, newline=newline, trailing_newline=trailing)

    def encode(self) -> bytes:
        if not self.lines:
            return b""
        text = self.newline.join(self.lines)
        if self.trailing_newline:
            text += self.newline
        return text.encode("utf-8", errors="surrogateescape")


def _default_mode() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return 0o666 & ~mask


def atomic_write(path: Path, data: bytes, mode: int | None = None) -> None:
    """Write via a temp file in the same directory, then rename over the target."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, stat.S_IMODE(mode) if mode is not None else _default_mode())
        os.replace(tmp, path)
    except BaseException:
        with suppress(FileNotFoundError):
            os.unlink(tmp)
        raise


# --- Outcomes and reports ---


class HunkStatus(StrEnum):
    OK = "ok"
    NEEDS_MERGE = "needs_merge"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class HunkOutcome:
    hunk: DiffHunk
    status: HunkStatus
    reason: str | None = None
    start: int = 0  # 0-based index of the live region this hunk replaces
    length: int = 0
    replacement: tuple[str, ...] = ()
    offset: int = 0

    @property
    def applicable(self) -> bool:
        return self.status is not HunkStatus.CONFLICT


@dataclass(frozen=True)
class HunkReport:
    file_path: str
    hunk_index: int
    status: str  # ok | merged | conflict | skipped | failed
    reason: str | None = None
    error: TernError | None = None

    def to_dict(self) -> dict:
        return {
            "file": self.file_path,
            "hunk": self.hunk_index,
            "status": self.status,
            "reason": self.reason,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class PartialFailure:
    succeeded: list[HunkReport]
    failed: list[HunkReport]
    record: AppliedPatchRecord | None = None

    @property
    def failed_files(self) -> list[str]:
        return list(dict.fromkeys(r.file_path for r in self.failed))

    def summary(self) -> str:
        lines = [f"{len(self.failed)} hunk(s) failed, {len(self.succeeded)} applied"]
        lines.extend(f"  {r.file_path} #{r.hunk_index}: {r.reason}" for r in self.failed)
        return "\n".join(lines)


@dataclass(frozen=True)
class RevertSelector:
    record_id: int | None = None
    count: int | None = None

    @classmethod
    def by_id(cls, record_id: int) -> "RevertSelector":
        return cls(record_id=record_id)

    @classmethod
    def last(cls, count: int = 1) -> "RevertSelector":
        return cls(count=count)

    def select(self, journal: RevertJournal) -> list[AppliedPatchRecord]:
        if self.record_id is not None:
            record = journal.get(self.record_id)
            if record is None:
                raise ValidationError(f"no journal record with id {self.record_id}")
            return [record]
        count = self.count if self.count is not None else 1
        if count < 1:
            raise ValidationError(f"revert count must be positive, got {count}")
        return journal.latest(count)


@dataclass
class RevertReport:
    reverted: list[AppliedPatchRecord] = field(default_factory=list)
    conflicts: list[ExternalEditConflict] = field(default_factory=list)
    errors: list[TernError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.conflicts and not self.errors


# --- Hunk location ---


def _matches_at(lines: list[str], context: list[str], start: int) -> bool:
    return 0 <= start and start + len(context) <= len(lines) and lines[start : start + len(context)] == context


def locate(hunk: DiffHunk, lines: list[str], max_drift: int = MAX_DRIFT) -> HunkOutcome:
    context = list(hunk.context_lines)
    new = tuple(hunk.new_content)

    if not context:
        if hunk.is_new_file and lines:
            return HunkOutcome(hunk, HunkStatus.CONFLICT, reason="file already exists")
        expected = 0 if hunk.is_new_file else hunk.start
        if expected > len(lines):
            return HunkOutcome(
                hunk,
                HunkStatus.CONFLICT,
                reason=f"insertion point {expected} is past end of file ({len(lines)} lines)",
            )
        return HunkOutcome(hunk, HunkStatus.OK, start=expected, replacement=new)

    if not lines:
        return HunkOutcome(hunk, HunkStatus.CONFLICT, reason="file is empty or missing")

    expected = max(hunk.start - 1, 0)
    if _matches_at(lines, context, expected):
        return HunkOutcome(hunk, HunkStatus.OK, start=expected, length=len(context), replacement=new)

    for distance in range(1, max_drift + 1):
        for candidate in (expected + distance, expected - distance):
            if _matches_at(lines, context, candidate):
                return HunkOutcome(
                    hunk,
                    HunkStatus.NEEDS_MERGE,
                    reason=f"offset {candidate - expected:+d}",
                    start=candidate,
                    length=len(context),
                    replacement=new,
                    offset=candidate - expected,
                )

    region = align_region(lines, context, expected, max_drift)
    if region is None:
        return HunkOutcome(
            hunk,
            HunkStatus.CONFLICT,
            reason=f"context not found within {max_drift} lines of line {hunk.start}",
        )
    start, length = region
    merged = merge3(context, lines[start : start + length], list(new))
    if merged is None:
        return HunkOutcome(hunk, HunkStatus.CONFLICT, reason=f"conflicting changes near line {start + 1}")
    return HunkOutcome(
        hunk,
        HunkStatus.NEEDS_MERGE,
        reason="three-way merge",
        start=start,
        length=length,
        replacement=tuple(merged),
        offset=start - expected,
    )


def resolve_file(hunks: list[DiffHunk], lines: list[str], max_drift: int = MAX_DRIFT) -> list[HunkOutcome]:
    """Locate every hunk of one file against the same content; overlapping regions conflict."""
    outcomes = [locate(h, lines, max_drift) for h in hunks]
    order = sorted(
        (i for i, o in enumerate(outcomes) if o.applicable),
        key=lambda i: (outcomes[i].start, i),
    )
    prev_end = -1
    for i in order:
        outcome = outcomes[i]
        if outcome.start < prev_end:
            outcomes[i] = HunkOutcome(outcome.hunk, HunkStatus.CONFLICT, reason="overlaps another hunk")
            continue
        prev_end = max(prev_end, outcome.start + outcome.length)
    return outcomes


def splice(lines: list[str], outcomes: list[HunkOutcome]) -> list[str]:
    result = list(lines)
    indexed = sorted(enumerate(outcomes), key=lambda p: (p[1].start, p[0]), reverse=True)
    for _, outcome in indexed:
        result[outcome.start : outcome.start + outcome.length] = outcome.replacement
    return result


def _group_by_file(proposal: PatchProposal) -> dict[str, list[tuple[int, DiffHunk]]]:
    groups: dict[str, list[tuple[int, DiffHunk]]] = {}
    for index, hunk in enumerate(proposal.hunks):
        groups.setdefault(hunk.file_path, []).append((index, hunk))
    return groups


# --- Engine ---


class PatchEngine:
    def __init__(self, root: Path | str, journal: RevertJournal, max_drift: int = MAX_DRIFT):
        self.root = Path(root).resolve()
        self.journal = journal
        self.max_drift = max_drift

    def resolve(self, file_path: str) -> Path:
        """Map a proposal path into the workspace, refusing anything outside it."""
        candidate = Path(file_path)
        normalized = Path(os.path.normpath(candidate if candidate.is_absolute() else self.root / candidate))
        if not normalized.name or normalized == self.root:
            raise ValidationError("not a file path", target=file_path)
        parent = normalized.parent.resolve()
        if not parent.is_relative_to(self.root):
            raise ValidationError("path escapes the workspace", target=file_path)
        return parent / normalized.name

    def read(self, file_path: str) -> FileSnapshot:
        target = self.resolve(file_path)
        try:
            st = os.lstat(target)
        except FileNotFoundError:
            return FileSnapshot(path=file_path, data=None)
        except OSError as e:
            raise WorkspaceIOError(f"cannot stat: {e}", target=file_path, cause=e) from e

        is_symlink = stat.S_ISLNK(st.st_mode)
        try:
            if is_symlink:
                st = os.stat(target)
            if stat.S_ISDIR(st.st_mode):
                raise WorkspaceIOError("is a directory", target=file_path)
            data = target.read_bytes()
        except FileNotFoundError:
            # dangling symlink
            return FileSnapshot(path=file_path, data=None, is_symlink=is_symlink)
        except OSError as e:
            raise WorkspaceIOError(f"cannot read: {e}", target=file_path, cause=e) from e
        return FileSnapshot(path=file_path, data=data, is_symlink=is_symlink, mode=st.st_mode)

    def snapshot(self, paths: Iterable[str]) -> dict[str, FileSnapshot]:
        return {path: self.read(path) for path in paths}

    def validate(self, proposal: PatchProposal, snapshot: WorkspaceSnapshot | None = None) -> list[HunkOutcome]:
        """One outcome per hunk, in proposal order."""
        groups = _group_by_file(proposal)
        if snapshot is None:
            snapshot = self.snapshot(groups)
        outcomes: list[HunkOutcome | None] = [None] * len(proposal.hunks)
        for path, indexed in groups.items():
            snap = snapshot.get(path) or FileSnapshot(path=path, data=None)
            lines = TextFile.decode(snap.data).lines
            resolved = resolve_file([h for _, h in indexed], lines, self.max_drift)
            for (index, _), outcome in zip(indexed, resolved, strict=True):
                outcomes[index] = outcome
        return outcomes

    def binary_files(self, proposal: PatchProposal) -> list[str]:
        binary = []
        for path, indexed in _group_by_file(proposal).items():
            if any("\0" in line for _, h in indexed for line in h.new_content):
                binary.append(path)
                continue
            try:
                if self.read(path).is_binary:
                    binary.append(path)
            except TernError:
                # apply() reports unreadable paths per file
                continue
        return binary

    def apply(
        self,
        proposal: PatchProposal,
        *,
        allow_symlinks: bool = False,
        allow_binary: bool = False,
        excluded: Mapping[str, TernError] | None = None,
    ) -> AppliedPatchRecord | PartialFailure:
        """Apply a proposal file by file.

        Returns the journal record when every hunk landed. Otherwise returns a
        PartialFailure; files that were written are still journaled and the
        record is attached to it. `excluded` maps paths that must not be
        touched (e.g. denied by the permission gate) to the reason.
        """
        if not proposal:
            raise ValidationError("nothing to apply", target=proposal.turn_id)
        excluded = excluded or {}
        succeeded: list[HunkReport] = []
        failed: list[HunkReport] = []
        changes: list[FileChange] = []

        for path, indexed in _group_by_file(proposal).items():
            if path in excluded:
                error = excluded[path]
                failed.extend(HunkReport(path, i, "failed", error.message, error) for i, _ in indexed)
                continue
            try:
                change, ok, bad = self._apply_file(path, indexed, allow_symlinks, allow_binary)
            except TernError as e:
                _logger.warning("Patch for %s failed: %s", path, e.message)
                failed.extend(HunkReport(path, i, "failed", e.message, e) for i, _ in indexed)
                continue
            succeeded.extend(ok)
            failed.extend(bad)
            if change is not None:
                changes.append(change)

        record = self.journal.record(proposal.turn_id, changes) if changes else None
        if record is not None:
            _logger.info("Applied patch %d to %d file(s)", record.id, len(record.files))
        if failed:
            return PartialFailure(succeeded=succeeded, failed=failed, record=record)
        return record

    def _apply_file(
        self,
        path: str,
        indexed: list[tuple[int, DiffHunk]],
        allow_symlinks: bool,
        allow_binary: bool,
    ) -> tuple[FileChange | None, list[HunkReport], list[HunkReport]]:
        hunks = [h for _, h in indexed]
        target = self.resolve(path)
        snap = self.read(path)

        if snap.is_symlink and not allow_symlinks:
            raise SymlinkRefused("symlink refused", target=path)
        if not snap.exists and not all(h.is_new_file or not h.context_lines for h in hunks):
            raise HunkConflict("file does not exist", target=path)
        new_has_nul = any("\0" in line for h in hunks for line in h.new_content)
        if (snap.is_binary or new_has_nul) and not allow_binary:
            raise NeedsConfirmation("binary content requires confirmation", target=path)

        text = TextFile.decode(snap.data)
        outcomes = resolve_file(hunks, text.lines, self.max_drift)
        if any(not o.applicable for o in outcomes):
            failed = []
            for (index, _), outcome in zip(indexed, outcomes, strict=True):
                if outcome.applicable:
                    failed.append(HunkReport(path, index, "skipped", "another hunk in this file conflicts"))
                else:
                    error = HunkConflict(outcome.reason or "conflict", target=path)
                    failed.append(HunkReport(path, index, "conflict", outcome.reason, error))
            return None, [], failed

        text.lines = splice(text.lines, outcomes)
        new_bytes = text.encode()
        write_path = Path(os.path.realpath(target)) if snap.is_symlink else target
        try:
            atomic_write(write_path, new_bytes, snap.mode)
        except OSError as e:
            raise WorkspaceIOError(f"write failed: {e}", target=path, cause=e) from e

        change = FileChange(
            file_path=path,
            preimage_hash=sha256_hex(snap.data) if snap.data is not None else None,
            postimage_hash=sha256_hex(new_bytes),
            preimage=snap.data,
            hunks=tuple(hunks),
        )
        reports = [
            HunkReport(path, index, "merged" if o.status is HunkStatus.NEEDS_MERGE else "ok", o.reason)
            for (index, _), o in zip(indexed, outcomes, strict=True)
        ]
        return change, reports, []

    def revert(self, selector: RevertSelector) -> RevertReport:
        if not self.journal:
            raise ValidationError("nothing to revert")
        report = RevertReport()
        for record in selector.select(self.journal):
            try:
                self._revert_record(record)
            except ExternalEditConflict as e:
                _logger.warning("Skipping revert of patch %d: %s", record.id, e.message)
                report.conflicts.append(e)
                continue
            except TernError as e:
                _logger.warning("Revert of patch %d failed: %s", record.id, e.message)
                report.errors.append(e)
                continue
            self.journal.pop(record.id)
            report.reverted.append(record)
            _logger.info("Reverted patch %d", record.id)
        return report

    def _revert_record(self, record: AppliedPatchRecord) -> None:
        """Restore every file of `record` or none of them."""
        plans: list[tuple[FileChange, Path, bytes, int | None]] = []
        for change in record.files:
            snap = self.read(change.file_path)
            if snap.data is None or sha256_hex(snap.data) != change.postimage_hash:
                raise ExternalEditConflict(
                    f"{change.file_path} changed since patch {record.id} was applied",
                    target=change.file_path,
                )
            target = self.resolve(change.file_path)
            write_path = Path(os.path.realpath(target)) if snap.is_symlink else target
            plans.append((change, write_path, snap.data, snap.mode))

        restored: list[tuple[FileChange, Path, bytes, int | None]] = []
        for plan in plans:
            change, write_path, _, mode = plan
            try:
                if change.preimage is None:
                    write_path.unlink()
                else:
                    atomic_write(write_path, change.preimage, mode)
            except OSError as e:
                self._rollback_restores(record, restored)
                raise WorkspaceIOError(f"restore failed: {e}", target=change.file_path, cause=e) from e
            restored.append(plan)

    def _rollback_restores(
        self, record: AppliedPatchRecord, restored: list[tuple[FileChange, Path, bytes, int | None]]
    ) -> None:
        # put the postimages back so the record still matches the workspace
        for change, write_path, postimage, mode in reversed(restored):
            try:
                atomic_write(write_path, postimage, mode)
            except OSError as e:
                _logger.error("Could not roll back %s for patch %d: %s", change.file_path, record.id, e)
