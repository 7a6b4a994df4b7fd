"""
Chat model client (OpenAI-compatible chat completions).

Two entry points:
- generate_text(): one blocking completion, used by the generative tools
- stream(): a streamed completion with tool schemas, used by the agent loop.
  Yields text deltas as ``str`` and finishes with one ``ModelReply`` holding
  the full text and any tool calls (reassembled from their deltas).
"""

import os
import logging
from typing import Iterator, Optional, Union
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass
class LLMConfig:
    """Configuration for the chat model."""
    model: str = field(default_factory=lambda: os.getenv("CHAT_MODEL", "gpt-4o"))
    base_url: Optional[str] = field(default_factory=lambda: os.getenv("OPENAI_BASE_URL") or None)
    timeout: float = field(default_factory=lambda: float(os.getenv("LLM_TIMEOUT", "60")))
    temperature: float = 0.2
    max_tokens: int = 2000


@dataclass
class ToolCallRequest:
    """One tool call requested by the model; ``arguments`` is the raw JSON string."""
    id: str
    name: str
    arguments: str = ""

    def to_message(self) -> dict:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ModelReply:
    """The complete result of one model step."""
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)

    def to_message(self) -> dict:
        message = {"role": "assistant", "content": self.content or None}
        if self.tool_calls:
            message["tool_calls"] = [call.to_message() for call in self.tool_calls]
        return message


class ChatModel:
    """Thin wrapper around the OpenAI client used by the agent and its tools."""

    def __init__(self, config: Optional[LLMConfig] = None, client=None):
        self.config = config or LLMConfig()
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                base_url=self.config.base_url,
                api_key=os.getenv("OPENAI_API_KEY"),
                timeout=self.config.timeout,
            )
        return self._client

    def generate_text(self, prompt: str, system: Optional[str] = None, timeout: Optional[float] = None) -> str:
        """Single non-streamed completion; returns the reply text."""
        messages = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        response = self._get_client().chat.completions.create(
            model=self.config.model,
            messages=messages,
            max_tokens=self.config.max_tokens,
            temperature=self.config.temperature,
            timeout=timeout if timeout is not None else self.config.timeout,
        )
        return response.choices[0].message.content or ""

    def stream(
        self,
        messages: list[dict],
        tools: Optional[list[dict]] = None,
        timeout: Optional[float] = None,
    ) -> Iterator[Union[str, ModelReply]]:
        """
        Stream one model step.

        ``timeout`` caps this request (defaults to the configured timeout).
        The provider stream is closed when the generator finishes or is
        closed early.

        Yields:
            Text deltas (str), then exactly one ModelReply.
        """
        kwargs = {
            "model": self.config.model,
            "messages": messages,
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
            "stream": True,
            "timeout": timeout if timeout is not None else self.config.timeout,
        }
        if tools:
            kwargs["tools"] = tools

        stream = self._get_client().chat.completions.create(**kwargs)

        text_parts = []
        calls: dict[int, ToolCallRequest] = {}
        try:
            for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta.content:
                    text_parts.append(delta.content)
                    yield delta.content
                for tc in delta.tool_calls or []:
                    call = calls.setdefault(tc.index, ToolCallRequest(id="", name=""))
                    if tc.id:
                        call.id = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            call.name += tc.function.name
                        if tc.function.arguments:
                            call.arguments += tc.function.arguments
        finally:
            stream.close()

        tool_calls = [calls[i] for i in sorted(calls)]
        for position, call in enumerate(tool_calls):
            if not call.id:
                call.id = f"call_{position}"
        yield ModelReply(content="".join(text_parts), tool_calls=tool_calls)
