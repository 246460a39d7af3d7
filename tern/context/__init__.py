from tern.context.builder import ContextBuilder, DefaultContextBuilder
from tern.context.compression import (
    compress_context,
    count_tokens,
    find_compressible_range,
    mask_old_tool_results,
    should_compress,
)
from tern.context.store import SessionStore

__all__ = [
    "ContextBuilder",
    "DefaultContextBuilder",
    "SessionStore",
    "compress_context",
    "count_tokens",
    "find_compressible_range",
    "mask_old_tool_results",
    "should_compress",
]
