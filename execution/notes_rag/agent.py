"""
Agent Orchestrator

Runs one user turn as a bounded tool-calling loop:

    model step -> (tool calls -> tool results -> model step)* -> final answer

- At most ``max_steps`` model steps (default 5). When the budget runs out
  the text streamed so far is the answer.
- Tool calls requested in one step run concurrently, and their results go
  back to the model in the order they were requested.
- The whole turn is bounded by a wall-clock deadline and can be cancelled.
  Each model request gets the time left as its timeout, and tool calls are
  waited on only until the deadline.
- The final answer's sources block is checked against the sources
  searchNotes actually returned.

stream_turn() yields AgentEvents for the HTTP layer; run_turn() drains it.
"""

import os
import json
import time
import logging
import threading
from typing import Any, Iterator, Optional
from dataclasses import dataclass, field
from contextlib import closing
from concurrent.futures import ThreadPoolExecutor, wait

from .citation import Citation, SourceTracker, SourcesBlockFilter, finalize_answer, format_sources_block
from .llm_client import ModelReply
from .prompts import SYSTEM_PROMPT
from .tools import ToolInvocation

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant", "system")

STEP_BUDGET_NOTICE = "I wasn't able to complete an answer within the allowed number of steps."
TIMEOUT_NOTICE = "The response took too long and was stopped. Please try again."
MODEL_ERROR_NOTICE = "Something went wrong while generating the response. Please try again."
MODEL_TIMEOUT_NOTICE = "The language model timed out. Please try again."

CANCEL_POLL_SECONDS = 0.25


@dataclass
class AgentConfig:
    """Configuration for the agent loop."""
    max_steps: int = field(default_factory=lambda: int(os.getenv("AGENT_MAX_STEPS", "5")))
    turn_timeout_seconds: float = field(default_factory=lambda: float(os.getenv("AGENT_TURN_TIMEOUT", "55")))
    max_parallel_tools: int = 4


@dataclass
class AgentResult:
    """Outcome of one turn."""
    answer: str
    sources: list[Citation] = field(default_factory=list)
    invocations: list[ToolInvocation] = field(default_factory=list)
    steps: int = 0
    finished: bool = True
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
            "invocations": [i.to_dict() for i in self.invocations],
            "steps": self.steps,
            "finished": self.finished,
            "error": self.error,
        }


@dataclass
class AgentEvent:
    """
    One event of a streamed turn.

    type is one of: token (data=str), tool_call (data=dict),
    tool_result (data=ToolInvocation), error (data=str), done (data=AgentResult).
    """
    type: str
    data: Any = None


def _step_separator(text: str) -> str:
    """Whitespace needed before appending a new paragraph to ``text``."""
    if not text.strip() or text.endswith("\n\n"):
        return ""
    if text.endswith("\n"):
        return "\n"
    return "\n\n"


class _TurnAborted(Exception):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


def validate_messages(messages) -> list[dict]:
    """Check the incoming history; raises ValueError on malformed input."""
    if not isinstance(messages, list) or not messages:
        raise ValueError("Messages array is required")

    history = []
    for i, message in enumerate(messages):
        if not isinstance(message, dict):
            raise ValueError(f"Message {i} must be an object")
        role = message.get("role")
        content = message.get("content")
        if role not in VALID_ROLES:
            raise ValueError(f"Message {i} has invalid role: {role!r}")
        if not isinstance(content, str):
            raise ValueError(f"Message {i} content must be a string")
        history.append({"role": role, "content": content})
    return history


class NotesAgent:
    """
    Tool-calling agent over a tenant's notes.

    Args:
        toolkit: NotesToolkit bound to the requesting tenant
        model: ChatModel (anything with a compatible ``stream`` method)
        config: Loop limits
    """

    def __init__(self, toolkit, model, config: Optional[AgentConfig] = None, system_prompt: str = SYSTEM_PROMPT):
        self.toolkit = toolkit
        self.model = model
        self.config = config or AgentConfig()
        self.system_prompt = system_prompt

    def run_turn(self, messages: list[dict], cancel_event: Optional[threading.Event] = None) -> AgentResult:
        """Run a turn to completion and return its result."""
        result = None
        for event in self.stream_turn(messages, cancel_event=cancel_event):
            if event.type == "done":
                result = event.data
        return result

    def stream_turn(
        self,
        messages: list[dict],
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[AgentEvent]:
        """
        Run one turn, yielding events as they happen.

        The last event is always ``done`` carrying the AgentResult, unless the
        consumer stops iterating (which abandons the turn and closes the model
        stream). The result's answer is the text the consumer was sent.
        """
        history = [{"role": "system", "content": self.system_prompt}] + validate_messages(messages)
        deadline = time.monotonic() + self.config.turn_timeout_seconds
        tracker = SourceTracker()
        invocations: list[ToolInvocation] = []
        tools = self.toolkit.openai_tools()
        streamed: list[str] = []
        last_text = ""
        step = 0

        def check_budget():
            if cancel_event is not None and cancel_event.is_set():
                raise _TurnAborted("cancelled")
            if time.monotonic() >= deadline:
                raise _TurnAborted("timeout")

        def token(text: str) -> AgentEvent:
            streamed.append(text)
            return AgentEvent("token", text)

        def transcript() -> str:
            return "".join(streamed)

        try:
            while step < self.config.max_steps:
                check_budget()
                step += 1
                stream_filter = SourcesBlockFilter()
                separator = _step_separator(transcript())
                reply = None

                try:
                    remaining = deadline - time.monotonic()
                    with closing(self.model.stream(history, tools=tools, timeout=remaining)) as replies:
                        for item in replies:
                            if isinstance(item, ModelReply):
                                reply = item
                                continue
                            visible = stream_filter.feed(item)
                            if visible:
                                yield token(separator + visible)
                                separator = ""
                            check_budget()
                except _TurnAborted:
                    raise
                except Exception as e:
                    if time.monotonic() >= deadline:
                        raise _TurnAborted("timeout") from e
                    message = self._describe_model_error(e)
                    logger.error(f"Model step {step} failed: {type(e).__name__}: {e}")
                    yield AgentEvent("error", message)
                    yield AgentEvent("done", AgentResult(
                        answer=transcript().strip(), invocations=invocations, steps=step,
                        finished=False, error=message,
                    ))
                    return

                reply = reply or ModelReply()
                if reply.content.strip():
                    last_text = reply.content

                tail = stream_filter.flush()
                if tail:
                    yield token(separator + tail)

                if not reply.tool_calls:
                    _, citations = finalize_answer(reply.content, tracker)
                    if citations:
                        yield token(self._block_token(transcript(), citations))
                    logger.info(f"Turn finished after {step} step(s), {len(citations)} source(s) cited")
                    yield AgentEvent("done", AgentResult(
                        answer=transcript().strip(), sources=citations, invocations=invocations, steps=step,
                    ))
                    return

                history.append(reply.to_message())
                for call in reply.tool_calls:
                    yield AgentEvent("tool_call", {"id": call.id, "name": call.name, "arguments": call.arguments})

                step_invocations = self._dispatch(reply.tool_calls, deadline, cancel_event)
                for invocation in step_invocations:
                    invocations.append(invocation)
                    if invocation.tool_name == "searchNotes" and invocation.success:
                        tracker.record(invocation.result)
                    history.append({
                        "role": "tool",
                        "tool_call_id": invocation.call_id,
                        "content": json.dumps(invocation.result, default=str),
                    })
                    yield AgentEvent("tool_result", invocation)

        except _TurnAborted as e:
            if e.reason == "timeout":
                logger.warning(f"Turn exceeded {self.config.turn_timeout_seconds}s after {step} step(s)")
                yield AgentEvent("error", TIMEOUT_NOTICE)
                error = TIMEOUT_NOTICE
            else:
                logger.info(f"Turn cancelled after {step} step(s)")
                error = "cancelled"
            yield AgentEvent("done", AgentResult(
                answer=transcript().strip(), invocations=invocations, steps=step, finished=False, error=error,
            ))
            return
        except GeneratorExit:
            logger.info(f"Turn abandoned by consumer after {step} step(s)")
            raise

        # Step budget exhausted while the model still wanted tools
        logger.warning(f"Step budget of {self.config.max_steps} exhausted")
        _, citations = finalize_answer(last_text, tracker)
        if not transcript().strip():
            yield token(STEP_BUDGET_NOTICE)
            citations = []
        elif citations:
            yield token(self._block_token(transcript(), citations))
        yield AgentEvent("done", AgentResult(
            answer=transcript().strip(), sources=citations, invocations=invocations, steps=step, finished=False,
        ))

    def _dispatch(self, calls, deadline: float, cancel_event: Optional[threading.Event] = None) -> list[ToolInvocation]:
        """
        Run a step's tool calls concurrently; results keep the requested order.

        Waits no longer than the turn deadline. Calls still running when the
        turn is aborted are left to finish in the background; their results
        are discarded.
        """
        workers = min(len(calls), self.config.max_parallel_tools)
        executor = ThreadPoolExecutor(max_workers=workers)
        try:
            futures = [executor.submit(self.toolkit.invoke, call) for call in calls]
            pending = set(futures)
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    raise _TurnAborted("cancelled")
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise _TurnAborted("timeout")
                _, pending = wait(pending, timeout=min(remaining, CANCEL_POLL_SECONDS))
            return [future.result() for future in futures]
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _block_token(emitted: str, citations: list[Citation]) -> str:
        return _step_separator(emitted) + format_sources_block(citations)

    @staticmethod
    def _describe_model_error(error: Exception) -> str:
        from openai import APITimeoutError
        if isinstance(error, APITimeoutError):
            return MODEL_TIMEOUT_NOTICE
        return MODEL_ERROR_NOTICE
