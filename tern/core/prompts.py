import re
from collections.abc import Mapping
from datetime import UTC, datetime

from tern.tools.base import ToolSpec

BASE_SYSTEM_PROMPT = """You are tern, an expert coding assistant working inside the user's repository. Keep answers concise and propose safe, minimal diffs.

## TOOL CALLS

To run a tool, emit exactly one fenced json block and nothing else inside it:

```json
{"tool_call": {"server": "<server-id>", "name": "<tool-name>", "input": {}}}
```

- Only valid JSON inside the block: double quotes, no comments, no trailing commas.
- Use exactly the keys server, name, input. No extra keys.
- One tool call per response. After the tool runs you receive its result and continue.

## PATCHES

When proposing file changes, output unified diffs in a ```diff block (or between *** Begin Patch / *** End Patch lines). Include a few lines of unchanged context around each change. Paths are relative to the repository root. Changes are applied only after the user approves them."""

ENVIRONMENT_TEMPLATE = """## CONTEXT
Today is {date}. The workspace root is {root}."""

TOOLS_HEADER = """## AVAILABLE TOOLS"""

_OPENAI = re.compile(r"\bgpt|\bo[0-9]")
_CLAUDE = re.compile(r"claude")
_GEMINI = re.compile(r"gemini|google")

_ONE_LINER_SCHEMA = '{"tool_call":{"server":"<id>","name":"<tool>","input":{}}}'


def tool_call_one_liner(model: str, overrides: Mapping[str, str] | None = None) -> str:
    """Short tool-call reminder phrased for the model family."""
    model_id = (model or "").lower()
    for key, line in (overrides or {}).items():
        if key.lower() == model_id:
            return line
    if _OPENAI.search(model_id):
        return f"Tool calls: emit a fenced json block only {_ONE_LINER_SCHEMA}, valid JSON (double quotes), no trailing commas, no prose."
    if _CLAUDE.search(model_id):
        return f"Tool calls: output a single fenced json block with {_ONE_LINER_SCHEMA} only, no extra text inside the block."
    if _GEMINI.search(model_id):
        return f"Tool calls: use a fenced json block containing only {_ONE_LINER_SCHEMA}, strictly valid JSON, no commentary."
    return f"For tool calls, output a fenced json block with only {_ONE_LINER_SCHEMA} (no prose)."


def format_tools(tools: Mapping[str, list[ToolSpec]]) -> str | None:
    if not tools:
        return None
    lines = [TOOLS_HEADER]
    for server_id, specs in tools.items():
        lines.append(f"\n**{server_id}**")
        if not specs:
            lines.append("- (no tools listed)")
        for spec in specs:
            description = spec.description.strip().split("\n", 1)[0]
            lines.append(f"- {spec.name}: {description}")
    return "\n".join(lines)


def build_system_prompt(
    model: str,
    root: str,
    tools: Mapping[str, list[ToolSpec]] | None = None,
    overrides: Mapping[str, str] | None = None,
) -> str:
    sections = [
        BASE_SYSTEM_PROMPT,
        ENVIRONMENT_TEMPLATE.format(date=datetime.now(UTC).strftime("%A, %B %d, %Y"), root=root),
    ]
    if tools_section := format_tools(tools or {}):
        sections.append(tools_section)
    sections.append(tool_call_one_liner(model, overrides))
    return "\n\n".join(sections)
