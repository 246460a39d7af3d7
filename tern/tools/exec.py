import asyncio
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from tern.constants import EXEC_OUTPUT_LIMIT, EXEC_TIMEOUT
from tern.logging import get_logger
from tern.permissions import PermissionRequest, is_blocked_command
from tern.tools.base import LocalToolProvider, ToolOutput, ToolSpec
from tern.tools.formatting import cap_output

_logger = get_logger(__name__)

RUN_DESCRIPTION = """Execute a shell command in the workspace.

USE run FOR:
- Build and test commands: make, pytest, npm test
- Checking repository state: git status, git diff

SAFETY: Destructive commands (rm -rf /, mkfs, ...) are blocked. Other commands may require approval."""


class RunInput(BaseModel):
    command: str = Field(description="The shell command to execute")
    working_dir: str | None = Field(default=None, description="Working directory relative to the workspace root")


def format_output(stdout: str, stderr: str, returncode: int | None) -> str:
    output = stdout
    if stderr:
        if output:
            output += "\n"
        output += f"[stderr]\n{stderr}"
    if returncode:
        output += f"\n[exit code: {returncode}]"
    return cap_output(output, EXEC_OUTPUT_LIMIT) if output else "(no output)"


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            return
        await proc.wait()


async def execute_command(command: str, cwd: Path, timeout: float = EXEC_TIMEOUT) -> ToolOutput:
    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
    except TimeoutError:
        await _kill(proc)
        return ToolOutput(content=f"Error: Command timed out after {timeout}s", preview="Timed out", is_error=True)
    except asyncio.CancelledError:
        _logger.debug("Killing cancelled command: %s", command)
        await _kill(proc)
        raise

    output = format_output(
        stdout.decode("utf-8", errors="replace"),
        stderr.decode("utf-8", errors="replace"),
        proc.returncode,
    )
    lines = output.count("\n") + 1
    return ToolOutput(content=output, preview=f"{lines} lines", is_error=proc.returncode != 0)


class ExecProvider(LocalToolProvider):
    kind = "exec"
    specs = {"run": ToolSpec("run", RUN_DESCRIPTION, RunInput)}

    def __init__(self, root: Path | str, server_id: str = "exec", timeout: float = EXEC_TIMEOUT):
        super().__init__(server_id)
        self.root = Path(root).resolve()
        self.timeout = timeout

    def permission_request(self, name: str, input: dict[str, Any], request_id: str | None = None) -> PermissionRequest:
        command = input.get("command")
        return PermissionRequest(
            tool_kind=self.kind,
            server_id=self.server_id,
            command=command if isinstance(command, str) else None,
            request_id=request_id,
        )

    async def _tool_run(self, command: str, working_dir: str | None = None) -> ToolOutput:
        if not command.strip():
            return ToolOutput(content="Error: command is required", preview="Missing command", is_error=True)
        if is_blocked_command(command):
            return ToolOutput(content=f"Blocked: {command}", preview="Blocked", is_error=True)

        cwd = (self.root / working_dir).resolve() if working_dir else self.root
        if not cwd.is_relative_to(self.root):
            return ToolOutput(content=f"Working directory is outside the workspace: {working_dir}", preview="Outside workspace", is_error=True)
        if not cwd.is_dir():
            return ToolOutput(content=f"Not a directory: {working_dir}", preview="Not a directory", is_error=True)
        return await execute_command(command, cwd, self.timeout)
