from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, ClassVar

from pydantic import BaseModel, ValidationError

from tern.permissions import PermissionRequest


def _inline_refs(schema: dict) -> dict:
    """Resolve $ref pointers by inlining definitions from $defs."""
    defs = schema.get("$defs", {})
    if not defs:
        return schema

    def _resolve(node: Any) -> Any:
        if isinstance(node, dict):
            if "$ref" in node:
                ref_name = node["$ref"].rsplit("/", 1)[-1]
                if ref_name in defs:
                    return _resolve(defs[ref_name])
                return node
            return {k: _resolve(v) for k, v in node.items() if k != "$defs"}
        if isinstance(node, list):
            return [_resolve(item) for item in node]
        return node

    return _resolve(schema)


@dataclass(frozen=True)
class ToolOutput:
    content: str
    preview: str = ""
    is_error: bool = False


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_model: type[BaseModel] | None = None
    input_schema: dict | None = None  # remote tools describe themselves with raw JSON schema

    def to_dict(self) -> dict:
        data: dict = {"name": self.name, "description": self.description}
        if self.input_model is not None:
            json_schema = _inline_refs(self.input_model.model_json_schema())
            data["input"] = {
                "type": "object",
                "properties": json_schema.get("properties", {}),
                "required": json_schema.get("required", []),
            }
        elif self.input_schema is not None:
            data["input"] = self.input_schema
        return data


def format_validation_error(e: ValidationError) -> str:
    return "; ".join(f"{'.'.join(str(l) for l in err['loc'])}: {err['msg']}" for err in e.errors() if err.get("loc"))


class ToolProvider(ABC):
    """A named server of tools. `kind` is the permission tool kind its calls are checked under."""

    kind: ClassVar[str]

    def __init__(self, server_id: str):
        self.server_id = server_id

    @abstractmethod
    async def list_tools(self) -> list[ToolSpec]: ...

    @abstractmethod
    async def call_tool(self, name: str, input: dict[str, Any]) -> ToolOutput: ...

    def permission_request(self, name: str, input: dict[str, Any], request_id: str | None = None) -> PermissionRequest:
        return PermissionRequest(tool_kind=self.kind, server_id=self.server_id, request_id=request_id)

    async def close(self) -> None:
        return None


class LocalToolProvider(ToolProvider):
    """Provider whose tools are `_tool_<name>` coroutines validated against pydantic input models."""

    specs: ClassVar[dict[str, ToolSpec]] = {}

    async def list_tools(self) -> list[ToolSpec]:
        return list(self.specs.values())

    async def call_tool(self, name: str, input: dict[str, Any]) -> ToolOutput:
        spec = self.specs.get(name)
        if spec is None:
            available = ", ".join(sorted(self.specs))
            return ToolOutput(
                content=f"Unknown tool '{name}' on {self.server_id}. Available: {available}",
                preview="Unknown tool",
                is_error=True,
            )
        arguments = dict(input)
        if spec.input_model is not None:
            try:
                arguments = spec.input_model(**arguments).model_dump()
            except ValidationError as e:
                return ToolOutput(
                    content=f"Invalid arguments: {format_validation_error(e)}",
                    preview="Validation error",
                    is_error=True,
                )
        handler = getattr(self, f"_tool_{name}")
        return await handler(**arguments)
