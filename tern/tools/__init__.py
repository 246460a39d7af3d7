"""Tool providers, the provider registry and the tool-call block protocol."""

from tern.tools.base import LocalToolProvider, ToolOutput, ToolProvider, ToolSpec
from tern.tools.exec import ExecProvider
from tern.tools.filesystem import FilesystemProvider
from tern.tools.protocol import ToolCallTracker, parse
from tern.tools.registry import ProviderRegistry
from tern.tools.remote import RemoteToolProvider

__all__ = [
    "ExecProvider",
    "FilesystemProvider",
    "LocalToolProvider",
    "ProviderRegistry",
    "RemoteToolProvider",
    "ToolCallTracker",
    "ToolOutput",
    "ToolProvider",
    "ToolSpec",
    "parse",
]
