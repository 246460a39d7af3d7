import os
import stat
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from tern.constants import DEFAULT_LIST_LIMIT, FILE_READ_LIMIT
from tern.permissions import PermissionRequest
from tern.tools.base import LocalToolProvider, ToolOutput, ToolSpec
from tern.tools.formatting import cap_output, format_lines_with_pagination

_DEFAULT_OFFSET = 1
_DEFAULT_LINE_LIMIT = 500


class ReadInput(BaseModel):
    path: str = Field(description="Path to the file, relative to the workspace root")
    offset: int = Field(
        default=_DEFAULT_OFFSET, description=f"Line number to start from (1-based, default: {_DEFAULT_OFFSET})"
    )
    limit: int = Field(
        default=_DEFAULT_LINE_LIMIT, description=f"Maximum lines to read (default: {_DEFAULT_LINE_LIMIT})"
    )


class ListInput(BaseModel):
    path: str = Field(default=".", description="Directory to list, relative to the workspace root")
    limit: int = Field(default=DEFAULT_LIST_LIMIT, description="Maximum entries to return")


class StatInput(BaseModel):
    path: str = Field(description="Path to inspect, relative to the workspace root")


class FilesystemProvider(LocalToolProvider):
    """Read-only access to files under one root directory."""

    kind = "fs"
    specs = {
        "read": ToolSpec(
            "read",
            "Read a text file. For large files, use offset and limit to read in chunks.",
            ReadInput,
        ),
        "list": ToolSpec("list", "List the entries of a directory.", ListInput),
        "stat": ToolSpec("stat", "Show size, type and modification time of a path.", StatInput),
    }

    def __init__(self, root: Path | str, server_id: str = "fs"):
        super().__init__(server_id)
        self.root = Path(root).resolve()

    def _resolve(self, path: str) -> Path | None:
        candidate = Path(path)
        full = (candidate if candidate.is_absolute() else self.root / candidate).resolve()
        return full if full.is_relative_to(self.root) else None

    def _relative(self, path: str) -> str:
        full = self._resolve(path)
        if full is None:
            return path
        rel = full.relative_to(self.root).as_posix()
        return rel or "."

    def permission_request(self, name: str, input: dict[str, Any], request_id: str | None = None) -> PermissionRequest:
        raw = input.get("path", ".")
        path = self._relative(raw) if isinstance(raw, str) else None
        return PermissionRequest(tool_kind=self.kind, server_id=self.server_id, path=path, request_id=request_id)

    def _outside(self, path: str) -> ToolOutput:
        return ToolOutput(content=f"Path is outside the workspace: {path}", preview="Outside workspace", is_error=True)

    async def _tool_read(self, path: str, offset: int = _DEFAULT_OFFSET, limit: int = _DEFAULT_LINE_LIMIT) -> ToolOutput:
        full = self._resolve(path)
        if full is None:
            return self._outside(path)
        if not full.exists():
            return ToolOutput(content=f"File not found: {path}. Use list to see the directory.", preview="Not found")
        if not full.is_file():
            return ToolOutput(content=f"Path is a directory, not a file: {path}. Use list instead.", preview="Not a file")
        try:
            content = full.read_text(encoding="utf-8", errors="replace")
        except PermissionError:
            return ToolOutput(content=f"Permission denied: {path}", preview="Denied", is_error=True)
        except OSError as e:
            return ToolOutput(content=f"Error reading file: {e}", preview="Read failed", is_error=True)
        formatted = format_lines_with_pagination(content, offset, limit)
        lines = len(content.split("\n"))
        return ToolOutput(content=cap_output(formatted, FILE_READ_LIMIT), preview=f"Read {lines} lines")

    async def _tool_list(self, path: str = ".", limit: int = DEFAULT_LIST_LIMIT) -> ToolOutput:
        full = self._resolve(path)
        if full is None:
            return self._outside(path)
        if not full.is_dir():
            return ToolOutput(content=f"Not a directory: {path}", preview="Not a directory", is_error=True)
        try:
            entries = sorted(full.iterdir(), key=lambda p: p.name)
        except OSError as e:
            return ToolOutput(content=f"Error listing directory: {e}", preview="List failed", is_error=True)
        shown = [f"{p.name}/" if p.is_dir() else p.name for p in entries[:limit]]
        if len(entries) > limit:
            shown.append(f"... and {len(entries) - limit} more")
        return ToolOutput(content="\n".join(shown) or "(empty)", preview=f"{len(entries)} entries")

    async def _tool_stat(self, path: str) -> ToolOutput:
        full = self._resolve(path)
        if full is None:
            return self._outside(path)
        try:
            st = os.lstat(full)
        except FileNotFoundError:
            return ToolOutput(content=f"Not found: {path}", preview="Not found")
        except OSError as e:
            return ToolOutput(content=f"Error: {e}", preview="Stat failed", is_error=True)
        if stat.S_ISLNK(st.st_mode):
            kind = "symlink"
        elif stat.S_ISDIR(st.st_mode):
            kind = "directory"
        else:
            kind = "file"
        modified = datetime.fromtimestamp(st.st_mtime, UTC).isoformat(timespec="seconds")
        content = f"path: {self._relative(path)}\ntype: {kind}\nsize: {st.st_size}\nmode: {stat.filemode(st.st_mode)}\nmodified: {modified}"
        return ToolOutput(content=content, preview=kind)
