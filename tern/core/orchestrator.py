"""Turn orchestration.

One Turn is driven at a time per Session. A turn runs as a background task
from `submit()` until it completes, fails, is cancelled, or stops in
PatchProposed to wait for `apply()` or `discard()`. Input submitted while a
turn is active waits in a FIFO queue.
"""

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path

from tern.bus import EventBus
from tern.constants import (
    COMPRESSION_THRESHOLD,
    DEFAULT_CONTEXT_TOKENS,
    MAX_TOOL_ROUNDS,
    TAIL_TOKEN_BUDGET,
)
from tern.context.builder import ContextBuilder, DefaultContextBuilder
from tern.context.compression import compress_context
from tern.context.store import SessionStore
from tern.core.models import Message, Role, Session, ToolCallRequest, ToolResult, Turn
from tern.core.state import TERMINAL_STATES, TurnState, can_transition
from tern.errors import (
    AuthorizationError,
    DiffParseError,
    HookError,
    InvalidTransition,
    ProtocolError,
    TernError,
    TurnCancelled,
    UnknownServer,
    UnterminatedBlock,
    ValidationError,
)
from tern.events import (
    DiffHunkEvent,
    PatchAppliedEvent,
    PatchProposedEvent,
    PatchRevertedEvent,
    PermissionDecisionEvent,
    TextDeltaEvent,
    ToolCallDetectedEvent,
    ToolResultEvent,
    TurnErrorEvent,
    TurnEvent,
    TurnQueuedEvent,
    TurnStateChangedEvent,
    TurnWarningEvent,
)
from tern.llm.endpoint import ModelEndpoint
from tern.logging import get_logger
from tern.patch.engine import PartialFailure, PatchEngine, RevertReport, RevertSelector
from tern.patch.journal import AppliedPatchRecord
from tern.patch.review import has_blocking_findings, review
from tern.permissions import Authorization, PermissionGate, PermissionRequest, ask
from tern.stream import DecodeError, DiffHunkComplete, StreamDecoder, TextDelta, ToolCallBlockComplete
from tern.tools.base import ToolOutput
from tern.tools.protocol import ToolCallTracker
from tern.tools.registry import ProviderRegistry
from tern.utils import ms_now

_logger = get_logger(__name__)

type EmitCallback = Callable[[TurnEvent], Awaitable[None] | None]
type HookCallback = Callable[[str], Awaitable[None] | None]

HOOK_PRE_PROMPT = "pre-prompt"
HOOK_POST_RESPONSE = "post-response"
HOOK_PRE_APPLY = "pre-apply"
HOOK_POST_APPLY = "post-apply"


@dataclass(frozen=True)
class SubmitAck:
    turn_id: str
    queued: bool
    position: int = 0


async def _maybe_await(result) -> None:
    if inspect.isawaitable(result):
        await result


def format_tool_message(request: ToolCallRequest, result: ToolResult) -> str:
    status = "error" if result.is_error else "ok"
    return f"[tool result {request.summary()} id={request.id} status={status}]\n{result.content}"


class Orchestrator:
    def __init__(
        self,
        session: Session,
        endpoint: ModelEndpoint,
        registry: ProviderRegistry,
        gate: PermissionGate,
        *,
        model: str,
        root: Path | str,
        engine: PatchEngine | None = None,
        builder: ContextBuilder | None = None,
        store: SessionStore | None = None,
        bus: EventBus | None = None,
        emit: EmitCallback | None = None,
        hooks: HookCallback | None = None,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        context_tokens: int = DEFAULT_CONTEXT_TOKENS,
        compaction_threshold: float = COMPRESSION_THRESHOLD,
        tail_token_budget: int = TAIL_TOKEN_BUDGET,
        allow_symlinks: bool = False,
    ):
        self.session = session
        self.endpoint = endpoint
        self.registry = registry
        self.gate = gate
        self.model = model
        self.root = Path(root)
        self.engine = engine or PatchEngine(self.root, session.journal)
        self.builder = builder or DefaultContextBuilder(model, self.root, registry)
        self.store = store
        self.bus = bus
        self.emit = emit
        self.hooks = hooks
        self.max_tool_rounds = max_tool_rounds
        self.context_tokens = context_tokens
        self.compaction_threshold = compaction_threshold
        self.tail_token_budget = tail_token_budget
        self.allow_symlinks = allow_symlinks

        self.turn: Turn | None = None
        self._queue: deque[Turn] = deque()
        self._task: asyncio.Task | None = None
        self._decoder = StreamDecoder()

    # --- Public operations ---

    @property
    def queued(self) -> list[Turn]:
        return list(self._queue)

    @property
    def driving(self) -> bool:
        return self._task is not None and not self._task.done()

    async def submit(self, user_input: str) -> SubmitAck:
        turn = Turn(input=user_input)
        if self.turn is not None or self._queue:
            self._queue.append(turn)
            position = len(self._queue)
            _logger.debug("Queued turn %s at position %d", turn.id, position)
            await self._publish(TurnQueuedEvent(turn_id=turn.id, position=position))
            return SubmitAck(turn_id=turn.id, queued=True, position=position)
        self._start(turn)
        return SubmitAck(turn_id=turn.id, queued=False)

    async def cancel(self, turn_id: str | None = None) -> Turn:
        """Cancel the active turn, or a queued one by id. Applied patches stay applied."""
        if turn_id is not None and (self.turn is None or self.turn.id != turn_id):
            return await self._cancel_queued(turn_id)

        turn = self.turn
        if turn is None or turn.state in TERMINAL_STATES:
            raise InvalidTransition("no active turn to cancel")
        turn.cancelled = True
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        if self.turn is turn:
            # not being driven: never started, or waiting in PatchProposed
            await self._set_state(turn, TurnState.CANCELLED)
            await self._finish(turn)
        return turn

    async def apply(self, *, allow_binary: bool = False) -> AppliedPatchRecord | PartialFailure:
        """Apply the proposed patch.

        `cancel()` may run while this waits on a confirmation or a hook. Nothing
        is written once the turn is cancelled; a cancel that lands after the write
        leaves the patch applied and journaled.
        """
        turn = self._require(TurnState.PATCH_PROPOSED)

        if has_blocking_findings(turn.findings):
            summary = "; ".join(f.message for f in turn.findings)
            approved = self.gate.confirm is not None and await ask(
                self.gate.confirm, f"Patch review flagged: {summary}. Apply anyway?"
            )
            self._ensure_live(turn)
            if not approved:
                raise AuthorizationError("apply refused: patch has high-severity review findings", target=turn.id)

        await self._set_state(turn, TurnState.APPLYING)
        try:
            await self._hook(HOOK_PRE_APPLY)
            self._ensure_live(turn)
            result = await self._apply_proposal(turn, allow_binary)
        except TurnCancelled:
            raise
        except TernError as e:
            if self.turn is turn:
                await self._fail(turn, e)
            raise

        if isinstance(result, PartialFailure):
            for report in result.failed:
                if report.error is not None:
                    await self._warn(turn, report.error)
            await self._publish(
                PatchAppliedEvent(
                    turn_id=turn.id,
                    record_id=result.record.id if result.record else None,
                    files=result.record.paths if result.record else [],
                    failed=[r.to_dict() for r in result.failed],
                )
            )
            if self.turn is turn:
                await self._fail(turn, ValidationError(result.summary(), target=turn.id))
            return result

        await self._publish(PatchAppliedEvent(turn_id=turn.id, record_id=result.id, files=result.paths))
        if self.turn is not turn:
            return result
        await self._set_state(turn, TurnState.APPLIED)
        try:
            await self._hook(HOOK_POST_APPLY)
        except TernError as e:
            if self.turn is turn:
                await self._fail(turn, e)
            raise
        if self.turn is turn:
            await self._complete(turn)
        return result

    async def discard(self) -> Turn:
        turn = self._require(TurnState.PATCH_PROPOSED)
        await self._set_state(turn, TurnState.DISCARDED)
        await self._complete(turn)
        return turn

    async def revert(self, selector: RevertSelector | None = None) -> RevertReport:
        if not self.session.journal:
            raise InvalidTransition("nothing to revert: the journal is empty")
        report = self.engine.revert(selector or RevertSelector.last(1))
        await self._publish(
            PatchRevertedEvent(
                record_ids=[r.id for r in report.reverted],
                conflicts=[e.to_dict() for e in [*report.conflicts, *report.errors]],
            )
        )
        await self._save()
        return report

    async def join(self) -> None:
        """Wait until no turn is being driven (idle, or waiting for an apply/discard decision)."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def close(self) -> None:
        if self.turn is not None and self.turn.state not in TERMINAL_STATES:
            self._queue.clear()
            await self.cancel()
        await self.registry.close()
        await self.endpoint.close()

    # --- Turn driving ---

    def _start(self, turn: Turn) -> None:
        self.turn = turn
        self._task = asyncio.create_task(self._drive(turn), name=f"turn-{turn.id}")

    async def _drive(self, turn: Turn) -> None:
        try:
            await self._run_turn(turn)
        except asyncio.CancelledError:
            if not turn.cancelled:
                raise
            _logger.debug("Turn %s cancelled in %s", turn.id, turn.state.value)
            await self._set_state(turn, TurnState.CANCELLED)
            await self._finish(turn)
        except TernError as e:
            await self._fail(turn, e)
        except Exception as e:
            _logger.exception("Turn %s failed unexpectedly", turn.id)
            await self._fail(turn, TernError(f"unexpected error: {e}", target=turn.id, cause=e))

    async def _run_turn(self, turn: Turn) -> None:
        self.session.append(Message(role=Role.USER, content=turn.input))
        await self._hook(HOOK_PRE_PROMPT)
        messages = await self.builder.build(self.session)
        await self._set_state(turn, TurnState.CONTEXT_BUILT)

        tracker = ToolCallTracker(self.registry, turn.id)
        rounds = 0
        while True:
            await self._set_state(turn, TurnState.MODEL_REQUESTED)
            tracker.reset()
            await self._stream_segment(turn, messages, tracker)
            await self._hook(HOOK_POST_RESPONSE)

            request = tracker.take()
            if request is None:
                break
            if rounds >= self.max_tool_rounds:
                error = ProtocolError(
                    f"tool round limit ({self.max_tool_rounds}) reached; {request.summary()} was not run",
                    target=request.id,
                )
                await self._warn(turn, error)
                await self._reject_tool_call(turn, request, f"Error: {error.message}")
                break
            rounds += 1
            await self._set_state(turn, TurnState.TOOL_PENDING)
            await self._dispatch(turn, request)
            messages = await self.builder.build(self.session)

        if turn.proposal:
            await self._propose(turn)
            return
        await self._complete(turn)

    async def _stream_segment(self, turn: Turn, messages: list[Message], tracker: ToolCallTracker) -> None:
        decoder = self._decoder
        decoder.reset()
        async with aclosing(self.endpoint.stream(messages, self.model)) as stream:
            async for chunk in stream:
                if turn.state is TurnState.MODEL_REQUESTED:
                    await self._set_state(turn, TurnState.STREAMING)
                for event in decoder.feed(chunk):
                    await self._on_decoder_event(turn, event, tracker)
        if turn.state is TurnState.MODEL_REQUESTED:
            await self._set_state(turn, TurnState.STREAMING)
        for event in decoder.close():
            await self._on_decoder_event(turn, event, tracker)

        if text := decoder.raw_text:
            self.session.append(Message(role=Role.ASSISTANT, content=text))

    async def _on_decoder_event(self, turn: Turn, event, tracker: ToolCallTracker) -> None:
        match event:
            case TextDelta(text=text):
                turn.text += text
                await self._publish(TextDeltaEvent(turn_id=turn.id, text=text))
            case ToolCallBlockComplete(raw_json=raw):
                try:
                    request = tracker.offer(raw)
                except ProtocolError as e:
                    await self._warn(turn, e)
                    return
                turn.tool_calls.append(request)
                await self._publish(
                    ToolCallDetectedEvent(
                        turn_id=turn.id,
                        request_id=request.id,
                        server=request.server_id,
                        name=request.tool_name,
                        input=request.input,
                    )
                )
            case DiffHunkComplete(hunk=hunk):
                turn.proposal.hunks.append(hunk)
                await self._publish(
                    DiffHunkEvent(
                        turn_id=turn.id,
                        file_path=hunk.file_path,
                        start=hunk.start,
                        removed=len(hunk.context_lines),
                        added=len(hunk.new_content),
                    )
                )
            case DecodeError(reason=reason, line=line):
                error_type = UnterminatedBlock if reason.startswith("unterminated") else DiffParseError
                await self._warn(turn, error_type(reason, target=f"{turn.id}:{line}"))

    async def _dispatch(self, turn: Turn, request: ToolCallRequest) -> None:
        provider = self.registry.get(request.server_id)
        if provider is None:
            error = UnknownServer(f"tool provider {request.server_id!r} is no longer attached", target=request.id)
            await self._warn(turn, error)
            await self._reject_tool_call(turn, request, f"Error: {error.message}")
            return

        permission = provider.permission_request(request.tool_name, request.input, request_id=request.id)
        authorization = await self.gate.authorize(permission)
        await self._publish_decision(turn, permission, authorization)
        if not authorization.allowed:
            error = AuthorizationError(
                f"permission denied for {permission.summary()} ({authorization.decision.source})",
                target=request.id,
            )
            await self._warn(turn, error)
            content = f"Permission denied: {permission.summary()}. The tool was not run."
            await self._reject_tool_call(turn, request, content)
            return

        await self._set_state(turn, TurnState.TOOL_EXECUTING)
        started = ms_now()
        try:
            output = await provider.call_tool(request.tool_name, request.input)
        except TernError as e:
            _logger.warning("Tool %s failed: %s", request.summary(), e.message)
            output = ToolOutput(content=f"Error: {e.message}", preview="Failed", is_error=True)

        result = ToolResult(request.id, output.content, output.is_error)
        await self._publish(
            ToolResultEvent(
                turn_id=turn.id,
                request_id=request.id,
                server=request.server_id,
                name=request.tool_name,
                result=output.content,
                preview=output.preview,
                is_error=output.is_error,
                duration_ms=ms_now() - started,
            )
        )
        self._append_tool_result(request, result)

    async def _reject_tool_call(self, turn: Turn, request: ToolCallRequest, content: str) -> None:
        await self._publish(
            ToolResultEvent(
                turn_id=turn.id,
                request_id=request.id,
                server=request.server_id,
                name=request.tool_name,
                result=content,
                preview="Not run",
                is_error=True,
                duration_ms=0,
            )
        )
        self._append_tool_result(request, ToolResult(request.id, content, is_error=True))

    def _append_tool_result(self, request: ToolCallRequest, result: ToolResult) -> None:
        self.session.append(Message(role=Role.TOOL, content=format_tool_message(request, result)))

    async def _propose(self, turn: Turn) -> None:
        await self._set_state(turn, TurnState.PATCH_PROPOSED)
        turn.findings = review(turn.proposal)
        for finding in turn.findings:
            await self._warn(
                turn,
                ValidationError(f"[{finding.severity.value}] {finding.message}", target=finding.file_path),
            )
        await self._publish(
            PatchProposedEvent(
                turn_id=turn.id,
                files=turn.proposal.files,
                hunks=len(turn.proposal),
                findings=[
                    {"severity": f.severity.value, "message": f.message, "file": f.file_path} for f in turn.findings
                ],
            )
        )
        await self._save()

    async def _apply_proposal(self, turn: Turn, allow_binary: bool) -> AppliedPatchRecord | PartialFailure:
        proposal = turn.proposal
        excluded: dict[str, TernError] = {}
        for path in proposal.files:
            permission = PermissionRequest(tool_kind="fs_patch", path=path, request_id=turn.id)
            authorization = await self.gate.authorize(permission)
            await self._publish_decision(turn, permission, authorization)
            if not authorization.allowed:
                excluded[path] = AuthorizationError(
                    f"patch to {path} denied ({authorization.decision.source})", target=path
                )

        if not allow_binary and self.gate.confirm is not None:
            binary = [p for p in self.engine.binary_files(proposal) if p not in excluded]
            if binary:
                allow_binary = await ask(self.gate.confirm, f"Apply changes to binary file(s) {', '.join(binary)}?")

        self._ensure_live(turn)
        return self.engine.apply(
            proposal,
            allow_symlinks=self.allow_symlinks,
            allow_binary=allow_binary,
            excluded=excluded,
        )

    async def _complete(self, turn: Turn) -> None:
        await self._set_state(turn, TurnState.COMPACTED)
        await self._maybe_compact(turn)
        await self._set_state(turn, TurnState.IDLE)
        await self._finish(turn)

    async def _maybe_compact(self, turn: Turn) -> None:
        try:
            messages, compressed = await compress_context(
                self.session.messages,
                self.endpoint,
                self.model,
                context_tokens=self.context_tokens,
                threshold=self.compaction_threshold,
                tail_token_budget=self.tail_token_budget,
            )
        except TernError as e:
            await self._warn(turn, TernError(f"context compaction failed: {e.message}", target=turn.id, cause=e))
            return
        if compressed:
            self.session.messages = messages

    async def _fail(self, turn: Turn, error: TernError) -> None:
        _logger.warning("Turn %s errored: %s", turn.id, error.message)
        turn.error = error
        await self._publish(TurnErrorEvent(turn_id=turn.id, error=error.to_dict()))
        if turn.state not in TERMINAL_STATES:
            await self._set_state(turn, TurnState.ERRORED)
        await self._finish(turn)

    async def _finish(self, turn: Turn) -> None:
        self.session.archived_turns.append(turn)
        if self.turn is turn:
            self.turn = None
        await self._save()
        if self._queue:
            self._start(self._queue.popleft())

    async def _cancel_queued(self, turn_id: str) -> Turn:
        for turn in self._queue:
            if turn.id == turn_id:
                self._queue.remove(turn)
                turn.cancelled = True
                await self._set_state(turn, TurnState.CANCELLED)
                self.session.archived_turns.append(turn)
                return turn
        raise InvalidTransition(f"no active or queued turn {turn_id}")

    # --- Helpers ---

    def _require(self, state: TurnState) -> Turn:
        turn = self.turn
        if turn is None or turn.state is not state:
            current = turn.state.value if turn else "no active turn"
            raise InvalidTransition(f"operation requires {state.value}, current state is {current}")
        return turn

    def _ensure_live(self, turn: Turn) -> None:
        if turn.cancelled or self.turn is not turn:
            raise TurnCancelled(f"turn {turn.id} was cancelled", target=turn.id)

    async def _set_state(self, turn: Turn, target: TurnState) -> None:
        if not can_transition(turn.state, target):
            raise InvalidTransition(f"invalid transition {turn.state.value} -> {target.value}", target=turn.id)
        previous, turn.state = turn.state, target
        await self._publish(TurnStateChangedEvent(turn_id=turn.id, previous=previous.value, state=target.value))

    async def _warn(self, turn: Turn, warning: TernError) -> None:
        _logger.info("Turn %s warning: %s", turn.id, warning.message)
        turn.warnings.append(warning)
        await self._publish(TurnWarningEvent(turn_id=turn.id, warning=warning.to_dict()))

    async def _publish_decision(self, turn: Turn, request: PermissionRequest, authorization: Authorization) -> None:
        await self._publish(
            PermissionDecisionEvent(
                turn_id=turn.id,
                request=request.summary(),
                decision=authorization.decision.action.value,
                source=authorization.decision.source,
                allowed=authorization.allowed,
            )
        )

    async def _publish(self, event: TurnEvent) -> None:
        if self.bus is not None:
            await self.bus.publish(event)
        if self.emit is not None:
            await _maybe_await(self.emit(event))

    async def _hook(self, name: str) -> None:
        if self.hooks is None:
            return
        try:
            await _maybe_await(self.hooks(name))
        except Exception as e:
            raise HookError(f"hook {name!r} failed: {e}", cause=e) from e

    async def _save(self) -> None:
        if self.store is None:
            return
        try:
            await self.store.save_session(self.session)
        except Exception as e:
            _logger.warning("Failed to save session: %s", e)
