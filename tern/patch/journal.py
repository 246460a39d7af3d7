import base64
from dataclasses import dataclass, field
from datetime import UTC, datetime

from tern.patch.diff import DiffHunk


@dataclass(frozen=True)
class FileChange:
    file_path: str
    preimage_hash: str | None  # None when the apply created the file
    postimage_hash: str
    preimage: bytes | None
    hunks: tuple[DiffHunk, ...]

    def to_dict(self) -> dict:
        return {
            "file_path": self.file_path,
            "preimage_hash": self.preimage_hash,
            "postimage_hash": self.postimage_hash,
            "preimage": base64.b64encode(self.preimage).decode() if self.preimage is not None else None,
            "hunks": [h.to_dict() for h in self.hunks],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileChange":
        raw = data.get("preimage")
        return cls(
            file_path=data["file_path"],
            preimage_hash=data.get("preimage_hash"),
            postimage_hash=data["postimage_hash"],
            preimage=base64.b64decode(raw) if raw is not None else None,
            hunks=tuple(DiffHunk.from_dict(h) for h in data.get("hunks", [])),
        )


@dataclass(frozen=True)
class AppliedPatchRecord:
    id: int
    timestamp: datetime
    turn_id: str
    files: tuple[FileChange, ...]

    @property
    def paths(self) -> list[str]:
        return [f.file_path for f in self.files]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "turn_id": self.turn_id,
            "files": [f.to_dict() for f in self.files],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AppliedPatchRecord":
        return cls(
            id=data["id"],
            timestamp=datetime.fromisoformat(data["timestamp"]),
            turn_id=data["turn_id"],
            files=tuple(FileChange.from_dict(f) for f in data["files"]),
        )


@dataclass
class RevertJournal:
    """Ordered applied-patch records. Ids increase monotonically and are never reused."""

    records: list[AppliedPatchRecord] = field(default_factory=list)
    next_id: int = 1

    def record(self, turn_id: str, files: list[FileChange]) -> AppliedPatchRecord:
        entry = AppliedPatchRecord(
            id=self.next_id,
            timestamp=datetime.now(UTC),
            turn_id=turn_id,
            files=tuple(files),
        )
        self.next_id += 1
        self.records.append(entry)
        return entry

    def get(self, record_id: int) -> AppliedPatchRecord | None:
        for entry in self.records:
            if entry.id == record_id:
                return entry
        return None

    def latest(self, count: int) -> list[AppliedPatchRecord]:
        """The `count` most recent records, newest first."""
        if count <= 0:
            return []
        return list(reversed(self.records[-count:]))

    def pop(self, record_id: int) -> AppliedPatchRecord:
        for i, entry in enumerate(self.records):
            if entry.id == record_id:
                return self.records.pop(i)
        raise KeyError(record_id)

    def __len__(self) -> int:
        return len(self.records)

    def __bool__(self) -> bool:
        return bool(self.records)

    def to_dict(self) -> dict:
        return {"next_id": self.next_id, "records": [r.to_dict() for r in self.records]}

    @classmethod
    def from_dict(cls, data: dict | None) -> "RevertJournal":
        if not data:
            return cls()
        records = [AppliedPatchRecord.from_dict(r) for r in data.get("records", [])]
        next_id = max(data.get("next_id", 1), max((r.id for r in records), default=0) + 1)
        return cls(records=records, next_id=next_id)
