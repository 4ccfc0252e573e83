import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum

from parley import instrumentation
from parley.completion import CompletionClient, TurnResolution
from parley.config import ParleySettings
from parley.errors import ParleyError, ThreadBusyError, ToolRoundLimitError
from parley.events import (
    ContentDelta,
    DebugMessage,
    StateChanged,
    StreamEvent,
    ToolCallStarted,
    ToolResultEvent,
    TurnComplete,
    TurnFailed,
)
from parley.executor import ToolExecutor
from parley.message import (
    Message,
    MessageRole,
    Thread,
    ToolCall,
    ToolResult,
    ToolResultStatus,
)
from parley.sections import ChatSection, system_prompt_for
from parley.store import ThreadStore

logger = logging.getLogger(__name__)

DEFAULT_THREAD_NAME = "New Chat"
THREAD_NAME_LENGTH = 30


class TurnState(Enum):
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting_completion"
    TOOLS_PENDING = "tools_pending"
    EXECUTING_TOOLS = "executing_tools"
    AWAITING_FINAL_COMPLETION = "awaiting_final_completion"
    DONE = "done"
    FAILED = "failed"


@dataclass
class _Turn:
    """Working state of one turn. Never shared between turns."""

    thread: Thread
    state: TurnState = TurnState.IDLE
    tool_rounds: int = 0
    # Results produced by this turn's rounds, waiting for the final answer.
    results: list[ToolResult] = field(default_factory=list)


class ToolOrchestrator:
    """Drives a conversation turn through as many tool rounds as the model
    needs.

    A turn submits the thread to the completion service.  When the model
    asks for tools, every call is dispatched concurrently, the orchestrator
    waits for all of them (up to ``tool_wait_timeout``), appends one tool
    message per call and asks again.  The turn ends when a completion
    resolves with content only.

    Only one turn may run per thread at a time; a second one is rejected
    with :class:`ThreadBusyError`.  Turns on different threads are
    independent.

    ``run_turn()`` drains ``iter_turn()``.  ``iter_turn()`` is the streaming
    entry point.

    Args:
        completion: Client used for every round.
        executor: Runs the tool calls; ``None`` offers no tools.
        store: Persistence collaborator that receives every appended
            message.  Requires ``section``.
        section: Store section the threads belong to.  A
            :class:`ChatSection` also supplies the system instruction.
        system_prompt: System instruction for a thread's first user
            message; overrides the section's.
        tool_wait_timeout: Seconds to wait for a round's tools to settle
            before continuing with whatever finished.
        max_tool_rounds: Tool rounds allowed per turn.
        debug: Append diagnostic system notes (request summaries, raw tool
            results) to the thread.  They are never sent to the model.
    """

    def __init__(
        self,
        completion: CompletionClient,
        executor: ToolExecutor | None = None,
        store: ThreadStore | None = None,
        section: ChatSection | str | None = None,
        system_prompt: str | None = None,
        tool_wait_timeout: float = 5.0,
        max_tool_rounds: int = 5,
        debug: bool = False,
    ):
        if store is not None and section is None:
            raise ValueError("a section is required when a store is configured")
        self.completion = completion
        self.executor = executor
        self.store = store
        self.section = section.value if isinstance(section, ChatSection) else section
        if system_prompt is None and isinstance(section, ChatSection):
            system_prompt = system_prompt_for(section)
        self.system_prompt = system_prompt
        self.tool_wait_timeout = tool_wait_timeout
        self.max_tool_rounds = max_tool_rounds
        self.debug = debug

        self._thread_locks: dict[str, asyncio.Lock] = {}
        self._associations: dict[str, list[ToolResult]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: ParleySettings,
        completion: CompletionClient,
        executor: ToolExecutor | None = None,
        store: ThreadStore | None = None,
        section: ChatSection | str | None = None,
    ) -> "ToolOrchestrator":
        return cls(
            completion=completion,
            executor=executor,
            store=store,
            section=section,
            tool_wait_timeout=settings.tool_wait_timeout,
            max_tool_rounds=settings.max_tool_rounds,
            debug=settings.debug,
        )

    # ------------------------------------------------------------------
    # Threads and results
    # ------------------------------------------------------------------

    def new_thread(self, name: str | None = None) -> Thread:
        if self.store is not None:
            return self.store.create_thread(self.section, name)
        return Thread(name=name) if name else Thread()

    def is_busy(self, thread_id: str) -> bool:
        lock = self._thread_locks.get(thread_id)
        return lock is not None and lock.locked()

    def results_for(self, message_id: str) -> list[ToolResult]:
        """Tool results associated with a final assistant message."""
        return list(self._associations.get(message_id, []))

    def _associate(self, message_id: str, results: list[ToolResult]) -> None:
        if message_id in self._associations:
            logger.error(f"Tool results already associated with message {message_id}")
            return
        self._associations[message_id] = list(results)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def run_turn(self, thread: Thread, user_text: str) -> TurnComplete:
        """Run a turn to completion and return its final event.

        Raises:
            ThreadBusyError: If a turn is already running on *thread*.
            ParleyError: Whatever ended the turn, as carried by
                :class:`TurnFailed`.
        """
        outcome: StreamEvent | None = None
        async for event in self.iter_turn(thread, user_text):
            if isinstance(event, (TurnComplete, TurnFailed)):
                outcome = event
        if isinstance(outcome, TurnFailed):
            raise outcome.error
        if outcome is None:
            raise RuntimeError("iter_turn() ended without a final event")
        return outcome

    async def iter_turn(self, thread: Thread, user_text: str) -> AsyncIterator[StreamEvent]:
        """Run a turn, yielding events as it proceeds.

        The last event is always :class:`TurnComplete` or
        :class:`TurnFailed`.
        """
        lock = self._thread_locks.setdefault(thread.id, asyncio.Lock())
        if lock.locked():
            raise ThreadBusyError(thread.id)

        try:
            async with lock:
                turn = _Turn(thread=thread)
                async with instrumentation.turn_span(thread.id, self.completion.model) as span:
                    try:
                        async for event in self._drive(turn, user_text):
                            yield event
                    except ParleyError as e:
                        failed_in = turn.state
                        logger.error(f"Turn on thread {thread.id} failed in {failed_in.value}: {e}")
                        instrumentation.record_error(span, e)
                        yield self._transition(turn, TurnState.FAILED)
                        yield TurnFailed(error=e, state=failed_in)
        finally:
            if self._thread_locks.get(thread.id) is lock and not lock.locked():
                del self._thread_locks[thread.id]

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _drive(self, turn: _Turn, user_text: str) -> AsyncIterator[StreamEvent]:
        self._start(turn, user_text)
        yield self._transition(turn, TurnState.AWAITING_COMPLETION)
        manifest = self.executor.manifest() if self.executor is not None else []

        while True:
            resolution = None
            async for item in self._complete(turn, manifest):
                if isinstance(item, TurnResolution):
                    resolution = item
                else:
                    yield item

            if not self._needs_tools(resolution):
                message = self._append(turn, Message(
                    role=MessageRole.ASSISTANT, content=resolution.content,
                ))
                self._associate(message.id, turn.results)
                results, turn.results = turn.results, []
                yield self._transition(turn, TurnState.DONE)
                yield TurnComplete(message=message, tool_results=results)
                return

            if turn.tool_rounds >= self.max_tool_rounds:
                raise ToolRoundLimitError(self.max_tool_rounds)
            turn.tool_rounds += 1

            calls = resolution.tool_calls
            if resolution.content:
                logger.debug("Dropping content streamed alongside tool calls")
            yield self._transition(turn, TurnState.TOOLS_PENDING)
            self._append(turn, Message(role=MessageRole.ASSISTANT, tool_calls=calls))
            for call in calls:
                yield ToolCallStarted(tool_call=call)

            yield self._transition(turn, TurnState.EXECUTING_TOOLS)
            results: list[ToolResult] = []
            async for event in self._execute_round(calls, results):
                yield event

            for call, result in zip(calls, results):
                self._append(turn, Message(
                    role=MessageRole.TOOL,
                    content=result.to_message_content(),
                    tool_call_id=call.id,
                ))
                if self.debug:
                    yield self._debug_note(turn, "MCP Tool Result: " + call.name, result.model_dump(mode="json"))
            turn.results.extend(results)
            yield self._transition(turn, TurnState.AWAITING_FINAL_COMPLETION)

    def _needs_tools(self, resolution: TurnResolution) -> bool:
        if not resolution.is_tool_pending:
            return False
        if resolution.tool_calls:
            return True
        if resolution.decode_errors:
            # Every streamed call was unusable; there is nothing to continue with.
            raise resolution.decode_errors[0]
        logger.warning("Model finished with tool_calls but streamed none")
        return False

    def _start(self, turn: _Turn, user_text: str) -> None:
        thread = turn.thread
        first = not any(
            m.role != MessageRole.SYSTEM for m in thread.messages if not m.debug
        )
        if first and self.system_prompt:
            self._append(turn, Message(role=MessageRole.SYSTEM, content=self.system_prompt))
        self._append(turn, Message(role=MessageRole.USER, content=user_text))

        if thread.name == DEFAULT_THREAD_NAME and user_text.strip():
            name = user_text.strip()[:THREAD_NAME_LENGTH]
            if len(user_text.strip()) > THREAD_NAME_LENGTH:
                name += "..."
            thread.name = name
            if self.store is not None:
                self.store.update_thread(self.section, thread.id, name=name)

    async def _complete(self, turn: _Turn, manifest: list[dict]) -> AsyncIterator[StreamEvent | TurnResolution]:
        messages = turn.thread.wire_messages()
        if self.debug:
            yield self._debug_note(turn, "Completion Request", {
                "model": self.completion.model,
                "messages": messages,
                "tools": [t["function"]["name"] for t in manifest],
                "round": turn.tool_rounds,
            })
        async with instrumentation.completion_span(self.completion.model, turn.tool_rounds) as span:
            try:
                async for item in self.completion.stream_turn(messages, manifest or None):
                    if isinstance(item, TurnResolution):
                        instrumentation.record_tool_calls(
                            span, len(item.tool_calls), len(item.decode_errors),
                        )
                        yield item
                    else:
                        yield ContentDelta(text=item.text)
            except ParleyError as e:
                instrumentation.record_error(span, e)
                raise

    async def _execute_round(
        self, calls: list[ToolCall], results: list[ToolResult],
    ) -> AsyncIterator[StreamEvent]:
        """Run every call concurrently and fill *results* in call order.

        Results are yielded as they settle.  Calls still running when the
        wait ceiling passes are cancelled and recorded as pending.
        """
        settled: dict[int, ToolResult] = {}
        tasks = {asyncio.create_task(self._run_tool(call)): i for i, call in enumerate(calls)}
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.tool_wait_timeout
        pending = set(tasks)

        try:
            while pending:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                done, pending = await asyncio.wait(
                    pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED,
                )
                for task in sorted(done, key=tasks.get):
                    result = task.result()
                    settled[tasks[task]] = result
                    yield ToolResultEvent(result=result)
        finally:
            for task in pending:
                task.cancel()

        if pending:
            names = [calls[tasks[t]].name for t in pending]
            logger.warning(
                f"Tool execution incomplete after {self.tool_wait_timeout}s, "
                f"continuing without: {', '.join(names)}"
            )
            for task in sorted(pending, key=tasks.get):
                call = calls[tasks[task]]
                result = ToolResult(tool_call_id=call.id, tool_name=call.name)
                settled[tasks[task]] = result
                yield ToolResultEvent(result=result)

        results.extend(settled[i] for i in range(len(calls)))

    async def _run_tool(self, call: ToolCall) -> ToolResult:
        if self.executor is None:
            return ToolResult.error(call, "no tools are available")
        try:
            result = await self.executor.execute(call)
        except Exception as e:
            logger.exception(f"Executor raised for {call.name}")
            return ToolResult.error(call, str(e) or type(e).__name__)
        if result.status == ToolResultStatus.ERROR:
            logger.info(f"Tool {call.name} returned an error: {result.error_message}")
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _append(self, turn: _Turn, message: Message) -> Message:
        turn.thread.append(message)
        if self.store is not None:
            self.store.append_message(self.section, turn.thread.id, message)
        return message

    def _transition(self, turn: _Turn, state: TurnState) -> StateChanged:
        logger.debug(f"Thread {turn.thread.id}: {turn.state.value} -> {state.value}")
        turn.state = state
        return StateChanged(state=state)

    def _debug_note(self, turn: _Turn, title: str, body: dict) -> DebugMessage:
        content = f"**{title}**\n```json\n{json.dumps(body, indent=2, default=str)}\n```"
        message = self._append(turn, Message(
            role=MessageRole.SYSTEM, content=content, debug=True,
        ))
        return DebugMessage(message=message)
