"""Agent session: the tool-calling loop that drives one conversation.

An :class:`AgentSession` owns its transcript and wires the model client, tool
registry, checkpoint manager and context manager together. Several sessions
can coexist; each runs at most one turn at a time.

Per turn the session:

1. records the user message and a checkpoint for it,
2. optimizes the history into chat-completion payloads,
3. alternates model calls and tool batches until the model stops calling
   tools, an error or safety rail ends the turn, or the user aborts.

Observers follow progress through the :class:`~.events.EventBus`; approvals
are answered with :meth:`AgentSession.approve` / :meth:`AgentSession.reject`.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Mapping, MutableMapping, Sequence

from ..context.config import ContextConfig
from ..context.manager import ContextManager, compress_messages
from ..context.truncation import truncate_tool_result
from ..messages import (
    ContentPart,
    Conversation,
    Message,
    MessageRole,
    ToolCall,
    ToolCallStatus,
    new_id,
    to_openai_messages,
)
from ..tools.builtin import FILE_EDIT_TOOLS
from ..tools.errors import PathOutsideWorkspaceError, ToolError, ToolRejectedError, ToolValidationError
from ..tools.filesystem import FileSystem, LocalFileSystem, SessionFileTracker, resolve_path
from .checkpoints import CheckpointManager, CheckpointType
from .errors import AbortedError, AgentBusyError, MaxLoopExceeded, ModelCallError, RepeatedCallDetected
from .event_log import ChatEventLogger
from .events import (
    AgentErrorEvent,
    AgentEvent,
    ApprovalRequested,
    CheckpointCreated,
    ContextCompacted,
    EventBus,
    PhaseChanged,
    ReasoningAppended,
    TextAppended,
    ToolCallLog,
    ToolCallUpdated,
    TurnCompleted,
    snapshot_tool_call,
)
from .plan import Plan, PlanStore
from .retry import RetryPolicy, is_retryable_error, retry_async
from .stream import AssembledTurn, AssemblerUpdate, ModelClient, StreamAssembler, assemble
from .tool_dispatcher import DispatchResult, ToolDispatcher
from .tools.registry import ToolRegistry
from .tools.types import ApprovalType, ToolContext

__all__ = [
    "AgentConfig",
    "AgentPhase",
    "AgentSession",
    "AutoApprove",
    "LoopDetectionConfig",
    "LoopDetector",
    "TurnResult",
    "PLAN_REMINDER",
    "REJECTED_CONTENT",
]

LOGGER = logging.getLogger(__name__)

PLAN_REMINDER = (
    "Reminder: You have performed some actions. Please use `update_plan` to update the plan status "
    "(e.g., mark the current step as completed) before finishing your response."
)
REJECTED_CONTENT = "Tool call was rejected by the user."
REPEATED_NOTICE = "\n\n⚠️ Detected repeated operations. Stopping to prevent infinite loop."
REPEATED_CALL_ERROR = "Skipped: repeated tool call"
SKIPPED_AFTER_REJECTION = "Skipped: an earlier tool call in this batch was rejected"
MAX_LOOPS_NOTICE = "\n\n⚠️ Reached maximum tool call limit."
ABORTED_MESSAGE = "Aborted by user"

_LINT_ERROR_PATTERN = re.compile(r"\[error\]|failed to compile|syntax error", re.IGNORECASE)
_MAX_OBSERVED_ERRORS = 3
# Executor metadata too large to keep on the transcript's tool calls.
_BULKY_META_KEYS = frozenset({"old_content", "new_content"})


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------


class AgentPhase:
    """Coarse session state shown to observers."""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_PENDING = "tool_pending"
    TOOL_RUNNING = "tool_running"


@dataclass(slots=True)
class AutoApprove:
    """Approval classes that run without asking the user."""

    edits: bool = False
    terminal: bool = False
    dangerous: bool = False

    def allows(self, approval_type: str | None) -> bool:
        if not approval_type or approval_type == ApprovalType.NONE:
            return True
        return bool(getattr(self, approval_type, False))

    def enable(self, approval_type: str) -> None:
        if approval_type in {ApprovalType.EDITS, ApprovalType.TERMINAL, ApprovalType.DANGEROUS}:
            setattr(self, approval_type, True)

    def to_dict(self) -> dict[str, bool]:
        return {"edits": self.edits, "terminal": self.terminal, "dangerous": self.dangerous}


@dataclass(slots=True, frozen=True)
class LoopDetectionConfig:
    max_history: int = 5
    max_exact_repeats: int = 2


@dataclass(slots=True, frozen=True)
class AgentConfig:
    """Limits and retry knobs for the agent loop.

    Attributes:
        max_tool_loops: Model calls allowed per turn.
        max_history_messages: Most recent transcript messages sent per turn.
        max_tool_result_chars: Character budget for a single tool result.
        max_retries: Extra model attempts, and tool attempts, on retryable errors.
        retry_delay: Base delay in seconds between retries.
        retry_backoff_multiplier: Growth factor of the model retry delay.
        tool_timeout: Seconds allowed per tool attempt.
        context_compress_threshold: Character size above which old payload
            messages are compressed before each model call.
        keep_recent_turns: User turns protected from compression.
        loop_detection: Repeated-call detector settings.
        enable_auto_fix: Run diagnostics on edited files after write batches.
        auto_approve: Approval classes granted up front.
    """

    max_tool_loops: int = 30
    max_history_messages: int = 60
    max_tool_result_chars: int = 10_000
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff_multiplier: float = 1.5
    tool_timeout: float = 60.0
    context_compress_threshold: int = 40_000
    keep_recent_turns: int = 3
    loop_detection: LoopDetectionConfig = field(default_factory=LoopDetectionConfig)
    enable_auto_fix: bool = True
    auto_approve: AutoApprove = field(default_factory=AutoApprove)


# -----------------------------------------------------------------------------
# Loop Detection
# -----------------------------------------------------------------------------


class LoopDetector:
    """Spots a model that keeps requesting the same batch of tool calls.

    Each batch is reduced to a signature. The loop stops when the same
    signature arrives ``max_exact_repeats`` times in a row, or when batches
    seen earlier in the recent window keep coming back (``A, B, A, B``)
    that many times without a fresh batch in between.
    """

    def __init__(self, config: LoopDetectionConfig | None = None) -> None:
        self._config = config or LoopDetectionConfig()
        self._recent: deque[str] = deque(maxlen=max(1, self._config.max_history))
        self._streak = 0
        self._window_hits = 0

    @property
    def streak(self) -> int:
        """Consecutive identical batches, the current one included."""
        return self._streak

    @staticmethod
    def signature(tool_calls: Iterable[ToolCall]) -> str:
        """Order-insensitive signature of a batch of calls."""
        return "|".join(sorted(call.signature() for call in tool_calls))

    def record(self, signature: str) -> bool:
        """Remember ``signature``; True once a repeat limit is reached."""
        limit = max(2, self._config.max_exact_repeats)
        consecutive = bool(self._recent) and self._recent[-1] == signature
        self._streak = self._streak + 1 if consecutive else 1
        if signature in self._recent:
            self._window_hits += 1
            LOGGER.warning("Repeated tool calls (%d/%d): %s", max(self._streak, self._window_hits), limit, signature[:100])
        else:
            self._window_hits = 0
        self._recent.append(signature)
        return self._streak >= limit or self._window_hits >= limit

    def reset(self) -> None:
        self._recent.clear()
        self._streak = 0
        self._window_hits = 0


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class TurnResult:
    """Summary of one :meth:`AgentSession.send_message` call."""

    message_id: str | None
    text: str
    reason: str
    loops: int
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


@dataclass(slots=True)
class _ToolOutcome:
    call: ToolCall
    content: str
    success: bool
    rejected: bool = False
    error: ToolError | None = None


class _RetryableToolFailure(Exception):
    def __init__(self, result: DispatchResult) -> None:
        super().__init__(result.error.message if result.error is not None else "Tool execution failed")
        self.result = result


# -----------------------------------------------------------------------------
# Agent Session
# -----------------------------------------------------------------------------


class AgentSession:
    """One conversation with the model and its tools.

    Example:
        session = AgentSession(client, registry, checkpoints=manager, workspace_path="/repo")
        bus.subscribe(render)
        result = await session.send_message("Fix the failing test")
    """

    def __init__(
        self,
        client: ModelClient,
        registry: ToolRegistry,
        *,
        checkpoints: CheckpointManager | None = None,
        context_manager: ContextManager | None = None,
        plan_store: PlanStore | None = None,
        event_bus: EventBus | None = None,
        tool_log: ToolCallLog | None = None,
        file_tracker: SessionFileTracker | None = None,
        file_system: FileSystem | None = None,
        config: AgentConfig | None = None,
        workspace_path: str | None = None,
        dispatcher: ToolDispatcher | None = None,
        event_logger: ChatEventLogger | None = None,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or new_id("session-")
        self._client = client
        self._registry = registry
        self._file_system = file_system if file_system is not None else LocalFileSystem()
        self._checkpoints = checkpoints if checkpoints is not None else CheckpointManager(self._file_system)
        self._context_manager = context_manager if context_manager is not None else ContextManager(ContextConfig())
        self._plan_store = plan_store if plan_store is not None else PlanStore()
        self._bus = event_bus if event_bus is not None else EventBus()
        self._tool_log = tool_log if tool_log is not None else ToolCallLog()
        self._file_tracker = file_tracker if file_tracker is not None else SessionFileTracker()
        self._config = config or AgentConfig()
        self._auto_approve = replace(self._config.auto_approve)
        self._workspace_path = workspace_path
        self._dispatcher = dispatcher if dispatcher is not None else ToolDispatcher(registry)
        self._event_logger = event_logger if event_logger is not None else ChatEventLogger(enabled=False)
        self._result_config = replace(
            self._context_manager.config,
            max_tool_result_chars=self._config.max_tool_result_chars,
        )

        self._conversation = Conversation()
        self._phase = AgentPhase.IDLE
        self._running = False
        self._cancel = asyncio.Event()
        self._approvals: dict[str, asyncio.Future[bool]] = {}
        self._awaiting: dict[str, ToolCall] = {}
        self._assistant: Message | None = None
        self._loops = 0

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def phase(self) -> str:
        return self._phase

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def config(self) -> AgentConfig:
        return self._config

    @property
    def auto_approve(self) -> AutoApprove:
        return self._auto_approve

    @property
    def event_bus(self) -> EventBus:
        return self._bus

    @property
    def tool_log(self) -> ToolCallLog:
        return self._tool_log

    @property
    def checkpoints(self) -> CheckpointManager:
        return self._checkpoints

    @property
    def conversation(self) -> Conversation:
        return self._conversation

    @property
    def messages(self) -> list[Message]:
        return self._conversation.messages

    @property
    def current_plan(self) -> Plan | None:
        return self._plan_store.plan

    @property
    def workspace_path(self) -> str | None:
        return self._workspace_path

    @property
    def pending_approvals(self) -> list[ToolCall]:
        return list(self._awaiting.values())

    def set_workspace(self, workspace_path: str | None) -> None:
        if self._running:
            raise AgentBusyError("Cannot switch workspace while a turn is running")
        self._workspace_path = workspace_path
        self._file_tracker.clear()

    def clear_session(self) -> None:
        """Forget which files were read; edits require fresh reads afterwards."""
        self._file_tracker.clear()

    # ------------------------------------------------------------------
    # Turn entry point
    # ------------------------------------------------------------------

    async def send_message(
        self,
        content: str | list[ContentPart],
        system_prompt: str = "",
        *,
        mode: str = "agent",
    ) -> TurnResult:
        """Run one user turn to completion.

        ``mode`` is ``agent`` (tools without plan tools), ``plan`` (all tools)
        or ``chat`` (no tools).

        Raises:
            AgentBusyError: A turn is already running in this session.
        """
        if self._running:
            raise AgentBusyError()
        self._running = True
        self._cancel = asyncio.Event()
        self._approvals.clear()
        self._awaiting.clear()

        assistant = Message.assistant(streaming=True)
        reason = "completed"
        loops = 0
        error: str | None = None
        user_message = Message.user(content)
        log_run = self._event_logger.start_run(
            run_id=user_message.id,
            prompt=user_message.text,
            workspace_path=self._workspace_path,
            mode=mode,
            history=[message.to_openai() for message in self._conversation.non_checkpoint()[-10:]],
        )
        try:
            with log_run:
                self._conversation.append(user_message)
                await self._create_user_checkpoint(user_message)
                llm_messages = self._build_llm_messages(system_prompt, log_run)

                self._assistant = assistant
                self._conversation.append(assistant)
                self._set_phase(AgentPhase.STREAMING)
                reason, loops = await self._run_loop(assistant, llm_messages, mode, log_run)
                log_run.log_completion(
                    response_text=assistant.text,
                    tool_call_count=len(assistant.tool_calls),
                    loops=loops,
                    reason=reason,
                )
        except Exception as exc:
            LOGGER.exception("Agent turn failed")
            reason = "error"
            error = str(exc) or type(exc).__name__
            if not assistant.is_frozen:
                assistant.append_text(f"❌ {error}" if not assistant.text else f"\n\n❌ Error: {error}")
            self._publish(AgentErrorEvent(self.session_id, message=error, code=getattr(exc, "code", None)))
        finally:
            assistant.finalize()
            self._assistant = None
            self._approvals.clear()
            self._awaiting.clear()
            self._running = False
            self._set_phase(AgentPhase.IDLE)

        self._publish(TurnCompleted(self.session_id, message_id=assistant.id, reason=reason, loops=loops))
        return TurnResult(
            message_id=assistant.id,
            text=assistant.text,
            reason=reason,
            loops=loops,
            tool_calls=[call.to_dict() for call in assistant.tool_calls],
            error=error,
        )

    # ------------------------------------------------------------------
    # Approvals and cancellation
    # ------------------------------------------------------------------

    def approve(self, tool_call_id: str | None = None) -> bool:
        return self._resolve_approval(tool_call_id, True)

    def reject(self, tool_call_id: str | None = None) -> bool:
        return self._resolve_approval(tool_call_id, False)

    def approve_and_enable_auto(self, tool_call_id: str | None = None) -> bool:
        """Approve the awaiting call and auto-approve its approval class from now on."""
        call = self._awaiting_call(tool_call_id)
        if call is None:
            return False
        if call.approval_type:
            self._auto_approve.enable(call.approval_type)
            LOGGER.info("Auto-approve enabled for %s", call.approval_type)
        return self._resolve_approval(call.id, True)

    def abort(self) -> None:
        """Stop the running turn at the next opportunity."""
        if not self._running:
            return
        LOGGER.info("Abort requested for %s", self.session_id)
        self._cancel.set()
        for future in self._approvals.values():
            if not future.done():
                future.set_result(False)
        assistant = self._assistant
        if assistant is None:
            return
        for call in assistant.tool_calls:
            if call.status in {ToolCallStatus.PENDING, ToolCallStatus.AWAITING_APPROVAL, ToolCallStatus.RUNNING}:
                call.error = ABORTED_MESSAGE
                call.transition(ToolCallStatus.ERROR)
                self._publish_call(call)

    def _awaiting_call(self, tool_call_id: str | None) -> ToolCall | None:
        if tool_call_id is not None:
            return self._awaiting.get(tool_call_id)
        return next(iter(self._awaiting.values()), None)

    def _resolve_approval(self, tool_call_id: str | None, approved: bool) -> bool:
        call = self._awaiting_call(tool_call_id)
        if call is None:
            return False
        future = self._approvals.get(call.id)
        if future is None or future.done():
            return False
        future.set_result(approved)
        return True

    async def _wait_for_approval(self, call: ToolCall) -> bool:
        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._approvals[call.id] = future
        self._awaiting[call.id] = call
        try:
            return await future
        finally:
            self._approvals.pop(call.id, None)
            self._awaiting.pop(call.id, None)

    # ------------------------------------------------------------------
    # Turn preparation
    # ------------------------------------------------------------------

    async def _create_user_checkpoint(self, user_message: Message) -> None:
        await self._checkpoints.ensure_loaded(self._workspace_path)
        description = user_message.text[:50] or "User message"
        checkpoint = await self._checkpoints.create_checkpoint(
            CheckpointType.USER_MESSAGE,
            description,
            message_id=user_message.id,
        )
        self._conversation.append(Message.checkpoint_marker(checkpoint.id, description))
        self._publish(
            CheckpointCreated(
                self.session_id,
                checkpoint_id=checkpoint.id,
                description=description,
                file_count=len(checkpoint.snapshots),
            )
        )

    def _build_llm_messages(self, system_prompt: str, log_run: Any) -> list[dict[str, Any]]:
        history = self._conversation.non_checkpoint()[-self._config.max_history_messages:]
        while history and history[0].role is MessageRole.TOOL:
            history.pop(0)
        result = self._context_manager.optimize(history, system_prompt or None)
        stats = result.stats.to_dict()
        log_run.log_context(stats, summary=result.summary)
        if result.stats.compacted_turns:
            self._publish(ContextCompacted(self.session_id, stats=stats))
        return pair_tool_messages(to_openai_messages(result.messages, result.system_prompt))

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(
        self,
        assistant: Message,
        llm_messages: list[dict[str, Any]],
        mode: str,
        log_run: Any,
    ) -> tuple[str, int]:
        self._loops = 0
        try:
            reason = await self._iterate(assistant, llm_messages, mode, log_run)
        except RepeatedCallDetected as exc:
            LOGGER.warning("Stopping turn: %s", exc)
            assistant.append_text(REPEATED_NOTICE)
            reason = "repeated_calls"
        except MaxLoopExceeded as exc:
            LOGGER.warning("Stopping turn: %s", exc)
            assistant.append_text(MAX_LOOPS_NOTICE)
            reason = "max_loops"
        return reason, self._loops

    async def _iterate(
        self,
        assistant: Message,
        llm_messages: list[dict[str, Any]],
        mode: str,
        log_run: Any,
    ) -> str:
        """Alternate model calls and tool batches; safety rails raise."""
        config = self._config
        detector = LoopDetector(config.loop_detection)
        tools = [] if mode == "chat" else self._registry.definitions(include_plan=mode == "plan")
        reminded = False

        while self._loops < config.max_tool_loops:
            if self._cancel.is_set():
                return "aborted"
            self._loops += 1
            loops = self._loops
            LOGGER.info("Agent loop iteration %d", loops)
            compress_messages(
                llm_messages,
                config.context_compress_threshold,
                protected_user_turns=config.keep_recent_turns,
            )

            prefix = assistant.text
            try:
                turn = await self._call_model(assistant, prefix, llm_messages, tools)
            except AbortedError:
                return "aborted"
            except ModelCallError as exc:
                LOGGER.warning("Model call failed after retries: %s", exc.message)
                assistant.append_text(f"\n\n❌ Error: {exc.message}")
                self._publish(AgentErrorEvent(self.session_id, message=exc.message, code=exc.code))
                return "error"

            if assistant.text != prefix + turn.text:
                assistant.set_text(prefix + turn.text)
            log_run.log_assistant_message(
                loop_index=loops,
                response_text=turn.text,
                tool_calls=[call.to_dict() for call in turn.tool_calls],
                usage=turn.usage,
            )

            if not turn.tool_calls:
                if not reminded and loops < config.max_tool_loops and self._needs_plan_reminder(llm_messages):
                    LOGGER.info("Reminding the model to update the plan")
                    llm_messages.append({"role": "user", "content": PLAN_REMINDER})
                    reminded = True
                    continue
                return "completed"

            calls = [assistant.add_tool_call(call) for call in turn.tool_calls]
            for call in calls:
                self._publish_call(call)

            signature = LoopDetector.signature(calls)
            if detector.record(signature):
                self._close_calls(calls, REPEATED_CALL_ERROR)
                raise RepeatedCallDetected(signature)

            llm_messages.append(
                {
                    "role": "assistant",
                    "content": turn.text or None,
                    "tool_calls": [call.to_openai() for call in calls],
                }
            )

            outcomes, rejected = await self._execute_batch(calls, llm_messages)
            log_run.log_tool_batch(
                loop_index=loops,
                records=[_batch_record(outcome) for outcome in outcomes],
            )
            if self._cancel.is_set():
                return "aborted"

            write_calls = [call for call in calls if not self._registry.is_parallel(call.name)]
            if config.enable_auto_fix and not rejected and write_calls and self._workspace_path:
                await self._observe_changes(assistant, write_calls, llm_messages)

            if rejected:
                return "rejected"
            self._set_phase(AgentPhase.STREAMING)

        raise MaxLoopExceeded(config.max_tool_loops)

    def _needs_plan_reminder(self, llm_messages: Sequence[Mapping[str, Any]]) -> bool:
        if self._plan_store.plan is None:
            return False
        read_only = set(self._registry.read_only_tools())
        names = [
            call.get("function", {}).get("name")
            for message in llm_messages
            if message.get("role") == "assistant"
            for call in message.get("tool_calls") or ()
        ]
        has_actions = any(name not in read_only for name in names)
        return has_actions and "update_plan" not in names

    # ------------------------------------------------------------------
    # Model calls
    # ------------------------------------------------------------------

    async def _call_model(
        self,
        assistant: Message,
        prefix: str,
        llm_messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
    ) -> AssembledTurn:
        config = self._config
        policy = RetryPolicy(
            max_attempts=config.max_retries + 1,
            base_delay=config.retry_delay,
            multiplier=config.retry_backoff_multiplier,
        )
        assembler = StreamAssembler()

        async def _attempt() -> AssembledTurn:
            if self._cancel.is_set():
                raise AbortedError()
            if assistant.text != prefix:
                assistant.set_text(prefix)
            stream = self._client.stream_turn(list(llm_messages), list(tools))
            turn = await assemble(stream, lambda update: self._on_stream_update(assistant, update), assembler=assembler)
            if self._cancel.is_set():
                raise AbortedError()
            if turn.error is not None:
                code = turn.error.code
                retryable = code in {"timeout", "rate_limit", "network"} or is_retryable_error(turn.error.message)
                raise ModelCallError(turn.error.message, code=code, retryable=retryable)
            return turn

        def _on_retry(attempt: int, exc: BaseException, delay: float) -> None:
            LOGGER.info("Model call attempt %d failed (%s); retrying in %.2fs", attempt, exc, delay)

        return await retry_async(_attempt, policy, on_retry=_on_retry)

    def _on_stream_update(self, assistant: Message, update: AssemblerUpdate) -> None:
        if self._cancel.is_set():
            raise AbortedError()
        if update.kind == "text" and update.text:
            assistant.append_text(update.text)
            self._publish(TextAppended(self.session_id, message_id=assistant.id, text=update.text))
        elif update.kind == "reasoning" and update.text:
            assistant.metadata["reasoning"] = assistant.metadata.get("reasoning", "") + update.text
            self._publish(ReasoningAppended(self.session_id, message_id=assistant.id, text=update.text))

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _execute_batch(
        self,
        calls: Sequence[ToolCall],
        llm_messages: list[dict[str, Any]],
    ) -> tuple[list[_ToolOutcome], bool]:
        parallel = [call for call in calls if self._registry.is_parallel(call.name)]
        sequential = [call for call in calls if not self._registry.is_parallel(call.name)]
        outcomes: list[_ToolOutcome] = []
        rejected = False

        if parallel and not self._cancel.is_set():
            LOGGER.info("Executing %d read tool(s) concurrently", len(parallel))
            results = await asyncio.gather(*(self._execute_tool_call(call) for call in parallel))
            for outcome in results:
                self._record_outcome(outcome, llm_messages)
                outcomes.append(outcome)
                rejected = rejected or outcome.rejected

        for index, call in enumerate(sequential):
            if self._cancel.is_set():
                break
            if rejected:
                for outcome in self._close_calls(sequential[index:], SKIPPED_AFTER_REJECTION):
                    self._record_outcome(outcome, llm_messages)
                    outcomes.append(outcome)
                break
            await asyncio.sleep(0)
            outcome = await self._execute_tool_call(call)
            self._record_outcome(outcome, llm_messages)
            outcomes.append(outcome)
            rejected = outcome.rejected
        return outcomes, rejected

    def _close_calls(self, calls: Iterable[ToolCall], reason: str) -> list[_ToolOutcome]:
        """Fail every call that has not finished yet with ``reason``."""
        outcomes: list[_ToolOutcome] = []
        for call in calls:
            if call.status.is_terminal:
                continue
            call.error = reason
            call.transition(ToolCallStatus.ERROR)
            self._publish_call(call)
            outcomes.append(_ToolOutcome(call, f"Error: {reason}", success=False))
        return outcomes

    def _record_outcome(self, outcome: _ToolOutcome, llm_messages: list[dict[str, Any]]) -> None:
        call = outcome.call
        self._conversation.append(Message.tool(call.id, outcome.content, name=call.name))
        llm_messages.append({"role": "tool", "tool_call_id": call.id, "content": outcome.content})

    async def _execute_tool_call(self, call: ToolCall) -> _ToolOutcome:
        approval_type = self._registry.approval_type(call.name)
        call.approval_type = approval_type
        if call.status.is_terminal:
            return self._terminal_outcome(call)

        if not self._auto_approve.allows(approval_type):
            call.transition(ToolCallStatus.AWAITING_APPROVAL)
            self._publish_call(call)
            self._set_phase(AgentPhase.TOOL_PENDING)
            self._publish(
                ApprovalRequested(
                    self.session_id,
                    tool_call_id=call.id,
                    tool_name=call.name,
                    approval_type=approval_type or ApprovalType.NONE,
                    arguments=dict(call.arguments),
                )
            )
            approved = await self._wait_for_approval(call)
            if call.status.is_terminal:
                return self._terminal_outcome(call)
            if not approved:
                rejection = ToolRejectedError()
                call.error = rejection.message
                call.result = rejection.message
                call.transition(ToolCallStatus.REJECTED)
                self._publish_call(call)
                return _ToolOutcome(call, rejection.message, success=False, rejected=True, error=rejection)

        call.transition(ToolCallStatus.RUNNING)
        self._publish_call(call)
        self._set_phase(AgentPhase.TOOL_RUNNING)

        started = time.perf_counter()
        self._tool_log.record_request(call.name, call.arguments)
        await self._snapshot_before_write(call)
        result = await self._dispatch_with_retry(call)
        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        self._tool_log.record_response(
            call.name,
            result.result if result.success else result.content,
            success=result.success,
            duration_ms=duration_ms,
        )

        if call.status.is_terminal:
            return self._terminal_outcome(call)

        call.metadata.update({key: value for key, value in result.metadata.items() if key not in _BULKY_META_KEYS})
        if result.success:
            call.result = result.result
            call.transition(ToolCallStatus.SUCCESS)
        else:
            call.error = result.error.message if result.error is not None else "Unknown error"
            call.transition(ToolCallStatus.ERROR)
        self._publish_call(call)
        content = truncate_tool_result(result.content, call.name, self._result_config)
        return _ToolOutcome(call, content, success=result.success, error=result.error)

    def _terminal_outcome(self, call: ToolCall) -> _ToolOutcome:
        if call.status is ToolCallStatus.REJECTED:
            return _ToolOutcome(call, REJECTED_CONTENT, success=False, rejected=True)
        return _ToolOutcome(call, f"Error: {call.error or ABORTED_MESSAGE}", success=False)

    async def _dispatch_with_retry(self, call: ToolCall) -> DispatchResult:
        parse_error = call.metadata.get("parse_error")
        if parse_error:
            error = ToolValidationError(message=f"Invalid JSON arguments: {parse_error}")
            return DispatchResult(success=False, result="", error=error, tool_name=call.name)

        config = self._config
        context = ToolContext(
            workspace_path=self._workspace_path,
            session=self._file_tracker,
            tool_call_id=call.id,
        )
        policy = RetryPolicy(max_attempts=max(1, config.max_retries), base_delay=config.retry_delay, backoff="linear")

        async def _attempt() -> DispatchResult:
            result = await self._dispatcher.dispatch(call.name, call.arguments, context, timeout=config.tool_timeout)
            if not result.success and _is_retryable_failure(result) and not self._cancel.is_set():
                raise _RetryableToolFailure(result)
            return result

        try:
            return await retry_async(
                _attempt,
                policy,
                is_retryable=lambda exc: isinstance(exc, _RetryableToolFailure),
            )
        except _RetryableToolFailure as exc:
            LOGGER.warning("Tool %s still failing after %d attempt(s)", call.name, policy.max_attempts)
            return exc.result

    async def _snapshot_before_write(self, call: ToolCall) -> None:
        """Store the pre-write content of the file ``call`` is about to change."""
        if not self._workspace_path or not self._registry.is_write(call.name):
            return
        path = call.arguments.get("path")
        if not isinstance(path, str) or not path or path.endswith("/"):
            return
        try:
            full_path = resolve_path(path, self._workspace_path)
        except PathOutsideWorkspaceError:
            return
        registration = self._registry.get_registration(call.name)
        requires_read = bool(registration and registration.metadata.get("requires_read"))
        if requires_read and not self._file_tracker.has_read(full_path):
            # The tool refuses unread edits, so there is nothing to restore.
            return
        original = await self._file_system.read_file(full_path)
        if original is None and await self._file_system.exists(full_path):
            LOGGER.debug("Not snapshotting %s: not a readable file", full_path)
            return
        await self._checkpoints.add_snapshot(full_path, original)

    # ------------------------------------------------------------------
    # Diagnostics pass
    # ------------------------------------------------------------------

    async def _observe_changes(
        self,
        assistant: Message,
        write_calls: Sequence[ToolCall],
        llm_messages: list[dict[str, Any]],
    ) -> None:
        if "get_lint_errors" not in self._registry:
            return
        paths: list[str] = []
        for call in write_calls:
            path = call.arguments.get("path")
            if call.name not in FILE_EDIT_TOOLS or call.status is not ToolCallStatus.SUCCESS:
                continue
            if isinstance(path, str) and path and not path.endswith("/") and path not in paths:
                paths.append(path)
        if not paths:
            return

        context = ToolContext(workspace_path=self._workspace_path, session=self._file_tracker)
        errors: list[str] = []
        for path in paths:
            result = await self._dispatcher.dispatch(
                "get_lint_errors",
                {"path": path, "refresh": True},
                context,
                timeout=self._config.tool_timeout,
            )
            if result.success and _LINT_ERROR_PATTERN.search(result.result):
                errors.append(f"File: {path}\n{result.result}")
        if not errors:
            return

        LOGGER.info("Diagnostics found problems in %d file(s)", len(errors))
        observed = "\n\n".join(errors[:_MAX_OBSERVED_ERRORS])
        llm_messages.append(
            {
                "role": "user",
                "content": f"[Observation] The following problems were detected in the code; please fix them:\n\n{observed}",
            }
        )
        assistant.append_text(f"\n\n🔍 **Auto-check**: Detected {len(errors)} issue(s). Attempting to fix...")

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _set_phase(self, phase: str) -> None:
        if phase == self._phase:
            return
        previous = self._phase
        self._phase = phase
        self._publish(PhaseChanged(self.session_id, previous=previous, phase=phase))

    def _publish_call(self, call: ToolCall) -> None:
        assistant = self._assistant
        message_id = assistant.id if assistant is not None else ""
        self._publish(ToolCallUpdated(self.session_id, message_id=message_id, tool_call=snapshot_tool_call(call)))

    def _publish(self, event: AgentEvent) -> None:
        self._bus.publish(event)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _is_retryable_failure(result: DispatchResult) -> bool:
    error = result.error
    if error is None:
        return False
    return is_retryable_error(error) or is_retryable_error(error.message)


def _batch_record(outcome: _ToolOutcome) -> dict[str, Any]:
    record = {**outcome.call.to_dict(), "content": outcome.content[:500]}
    if outcome.error is not None:
        record["error_code"] = outcome.error.error_code
    return record


def pair_tool_messages(payload: list[MutableMapping[str, Any]]) -> list[MutableMapping[str, Any]]:
    """Drop unanswered tool calls and orphaned tool messages from ``payload``.

    Chat-completion APIs reject a history where an assistant tool call has no
    tool message or a tool message answers no call.
    """
    answered = {message.get("tool_call_id") for message in payload if message.get("role") == "tool"}
    requested: set[Any] = set()
    cleaned: list[MutableMapping[str, Any]] = []
    for message in payload:
        role = message.get("role")
        if role == "assistant" and message.get("tool_calls"):
            kept = [call for call in message["tool_calls"] if call.get("id") in answered]
            message = dict(message)
            if kept:
                message["tool_calls"] = kept
                requested.update(call.get("id") for call in kept)
            else:
                message.pop("tool_calls")
                if message.get("content") is None:
                    message["content"] = ""
        elif role == "tool" and message.get("tool_call_id") not in requested:
            continue
        cleaned.append(message)
    return cleaned
