from tern.constants import (
    CHARS_PER_TOKEN,
    COMPRESSION_THRESHOLD,
    DEFAULT_CONTEXT_TOKENS,
    MASK_PRESERVE_RECENT,
    MASK_PREVIEW_CHARS,
    MASK_THRESHOLD,
    TAIL_TOKEN_BUDGET,
)
from tern.context.prompts import HANDOFF_PREFIX, SUMMARIZE_PROMPT
from tern.core.models import Message, Role
from tern.llm.endpoint import ModelEndpoint
from tern.logging import get_logger

_logger = get_logger(__name__)

_MESSAGE_OVERHEAD_CHARS = 16


def _count_message_tokens(msg: Message) -> int:
    return (_MESSAGE_OVERHEAD_CHARS + len(msg.content) + len(msg.role.value)) // CHARS_PER_TOKEN


def count_tokens(messages: list[Message]) -> int:
    total_chars = sum(_MESSAGE_OVERHEAD_CHARS + len(m.content) + len(m.role.value) for m in messages)
    return total_chars // CHARS_PER_TOKEN


def should_compress(
    messages: list[Message],
    context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    threshold: float = COMPRESSION_THRESHOLD,
) -> bool:
    return count_tokens(messages) > int(context_tokens * threshold)


def find_compressible_range(
    messages: list[Message],
    tail_token_budget: int = TAIL_TOKEN_BUDGET,
) -> tuple[int, int]:
    """(start, end) of the middle slice to summarize, or (0, 0) when there is nothing to do.

    A leading system message and the tail within `tail_token_budget` are kept.
    """
    start = 1 if messages and messages[0].role is Role.SYSTEM else 0
    if len(messages) - start <= 3:
        return (0, 0)

    tail_tokens = 0
    tail_start = len(messages)
    for i in range(len(messages) - 1, start, -1):
        msg_tokens = _count_message_tokens(messages[i])
        if tail_tokens + msg_tokens > tail_token_budget:
            break
        tail_tokens += msg_tokens
        tail_start = i

    tail_start = min(tail_start, len(messages) - 4)

    # never open the kept tail with an orphaned tool result
    while tail_start < len(messages) and messages[tail_start].role is Role.TOOL:
        tail_start += 1

    if tail_start <= start:
        return (0, 0)
    return (start, tail_start)


def _build_conversation_text(messages: list[Message], start: int, end: int) -> str:
    return "\n\n".join(f"{m.role.value}: {m.content}" for m in messages[start:end] if m.content)


async def summarize_messages(
    endpoint: ModelEndpoint,
    model: str,
    messages: list[Message],
    start: int,
    end: int,
) -> str:
    request = [
        Message(role=Role.SYSTEM, content=SUMMARIZE_PROMPT),
        Message(role=Role.USER, content=_build_conversation_text(messages, start, end)),
    ]
    summary = await endpoint.complete(request, model)
    return summary or "Unable to summarize."


def build_compressed_messages(messages: list[Message], start: int, end: int, summary: str) -> list[Message]:
    return [
        *messages[:start],
        Message(role=Role.ASSISTANT, content=f"{HANDOFF_PREFIX}\n{summary}"),
        *messages[end:],
    ]


async def compress_context(
    messages: list[Message],
    endpoint: ModelEndpoint,
    model: str,
    *,
    context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    threshold: float = COMPRESSION_THRESHOLD,
    tail_token_budget: int = TAIL_TOKEN_BUDGET,
    force: bool = False,
) -> tuple[list[Message], bool]:
    if not force and not should_compress(messages, context_tokens, threshold):
        return messages, False

    start, end = find_compressible_range(messages, tail_token_budget)
    if start == 0 and end == 0:
        return messages, False

    _logger.info("Compressing context (%d messages)", end - start)
    summary = await summarize_messages(endpoint, model, messages, start, end)
    return build_compressed_messages(messages, start, end, summary), True


def mask_old_tool_results(messages: list[Message], preserve_recent: int = MASK_PRESERVE_RECENT) -> list[Message]:
    tool_indices = [i for i, m in enumerate(messages) if m.role is Role.TOOL]
    if not tool_indices:
        return messages

    recent = set(tool_indices[-preserve_recent:]) if preserve_recent > 0 else set()

    result = []
    for i, msg in enumerate(messages):
        if msg.role is Role.TOOL and i not in recent and len(msg.content) > MASK_THRESHOLD:
            masked = msg.content[:MASK_PREVIEW_CHARS] + f"\n[...{len(msg.content) - MASK_PREVIEW_CHARS} chars masked]"
            result.append(Message(role=msg.role, content=masked))
        else:
            result.append(msg)
    return result
