"""Async model client wrapper built around OpenAI-compatible endpoints.

:class:`AIClient` turns the SDK's chat-completion stream into the
:data:`~codeloop.ai.orchestration.stream.StreamEvent` contract consumed by
the agent loop. Failures never escape the stream; they arrive as a terminal
:class:`~codeloop.ai.orchestration.stream.StreamError`.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Mapping, Sequence, cast

import httpx
import tiktoken
from openai import APIConnectionError, APITimeoutError, AsyncOpenAI, InternalServerError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from .context.estimator import HeuristicCounter, TokenCounter
from .orchestration.retry import classify_error
from .orchestration.stream import (
    FullToolCall,
    ReasoningDelta,
    StreamDone,
    StreamError,
    StreamEvent,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)

__all__ = ["AIClient", "ClientSettings", "TiktokenCounter"]

LOGGER = logging.getLogger(__name__)

# Failures worth a fresh connection attempt before anything was streamed.
_RETRYABLE_SETUP_ERRORS = (
    APIConnectionError,
    APITimeoutError,
    InternalServerError,
    RateLimitError,
    httpx.TimeoutException,
)


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = HeuristicCounter()

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.count(text)

    @staticmethod
    def _load_encoding(model_name: str, encoding_name: str | None) -> Any:
        if encoding_name:
            return tiktoken.get_encoding(encoding_name)
        try:
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the model client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    default_headers: Mapping[str, str] | None = None
    temperature: float | None = 0.2
    debug_logging: bool = False


class _StreamState:
    def __init__(self) -> None:
        self.emitted = False
        self.ids_by_index: dict[int, str] = {}
        self.ended: set[str] = set()


class AIClient:
    """Async client streaming chat completions with retry semantics.

    Example:
        client = AIClient(ClientSettings(base_url=url, api_key=key, model="gpt-4o-mini"))
        turn = await assemble(client.stream_turn(messages, tools))
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_counter: TokenCounter | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_counter = token_counter or self._build_token_counter(settings.model)

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Streaming
    # ------------------------------------------------------------------

    async def stream_turn(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        system_prompt: str | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one model turn as normalized events.

        Connection setup is retried while nothing has been emitted yet; once
        the first event was yielded a failure ends the stream with an error.
        """
        payload = self._build_payload(messages, tools, system_prompt)
        LOGGER.debug(
            "Starting streamed chat completion via %s with %d message(s) and %d tool(s)",
            self._settings.model,
            len(payload["messages"]),
            len(tools),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        state = _StreamState()
        try:
            async for attempt in self._retrying(state):
                with attempt:
                    async with self._client.chat.completions.stream(**payload) as stream:
                        async for event in stream:
                            for normalized in self._normalize_stream_event(event, state):
                                state.emitted = True
                                yield normalized
                        completion = await stream.get_final_completion()
                    for normalized in self._final_events(completion, state):
                        yield normalized
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Model stream failed", exc_info=True)
            yield StreamError(message=str(exc) or type(exc).__name__, code=classify_error(exc))

    def _retrying(self, state: _StreamState) -> AsyncRetrying:
        def _should_retry(exc: BaseException) -> bool:
            return not state.emitted and isinstance(exc, _RETRYABLE_SETUP_ERRORS)

        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception(_should_retry),
        )

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any], state: _StreamState) -> List[StreamEvent]:
        event_type = getattr(event, "type", None)
        if event_type == "chunk":
            return self._chunk_events(getattr(event, "chunk", None), state)
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            return [TextDelta(str(delta_text))] if delta_text else []
        if event_type == "tool_calls.function.arguments.delta":
            call_id = state.ids_by_index.get(getattr(event, "index", -1))
            fragment = getattr(event, "arguments_delta", None)
            if call_id is None or not fragment:
                return []
            return [ToolCallDelta(id=call_id, args_fragment=fragment)]
        if event_type == "tool_calls.function.arguments.done":
            call_id = state.ids_by_index.get(getattr(event, "index", -1))
            if call_id is None or call_id in state.ended:
                return []
            state.ended.add(call_id)
            return [ToolCallEnd(id=call_id)]
        return []

    def _chunk_events(self, chunk: Any, state: _StreamState) -> List[StreamEvent]:
        choices = getattr(chunk, "choices", None) or []
        if not choices:
            return []
        delta = getattr(choices[0], "delta", None)
        if delta is None:
            return []
        events: List[StreamEvent] = []
        reasoning = getattr(delta, "reasoning_content", None) or getattr(delta, "reasoning", None)
        if isinstance(reasoning, str) and reasoning:
            events.append(ReasoningDelta(reasoning))
        for tool_delta in getattr(delta, "tool_calls", None) or []:
            call_id = getattr(tool_delta, "id", None)
            index = getattr(tool_delta, "index", None)
            if not call_id or index is None or index in state.ids_by_index:
                continue
            state.ids_by_index[index] = call_id
            function = getattr(tool_delta, "function", None)
            events.append(ToolCallStart(id=call_id, name=getattr(function, "name", None) or ""))
        return events

    def _final_events(self, completion: Any, state: _StreamState) -> List[StreamEvent]:
        message = completion.choices[0].message if completion.choices else None
        calls: list[FullToolCall] = []
        for tool_call in getattr(message, "tool_calls", None) or []:
            function = getattr(tool_call, "function", None)
            if function is None:
                continue
            calls.append(
                FullToolCall(id=tool_call.id, name=function.name, arguments=function.arguments or "{}")
            )
        usage = None
        if completion.usage is not None:
            usage = {
                "prompt_tokens": completion.usage.prompt_tokens,
                "completion_tokens": completion.usage.completion_tokens,
                "total_tokens": completion.usage.total_tokens,
            }
        return [StreamDone(tool_calls=tuple(calls), usage=usage)]

    # ------------------------------------------------------------------
    # Payloads
    # ------------------------------------------------------------------

    def _build_payload(
        self,
        messages: Sequence[Mapping[str, Any]],
        tools: Sequence[Mapping[str, Any]],
        system_prompt: str | None,
    ) -> Dict[str, Any]:
        normalized = [dict(message) for message in messages]
        if system_prompt and not (normalized and normalized[0].get("role") == "system"):
            normalized.insert(0, {"role": "system", "content": system_prompt})
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": normalized,
            "stream_options": {"include_usage": True},
        }
        if tools:
            payload["tools"] = list(tools)
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("Model prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("Model prompt payload:\n%s", serialized)

    # ------------------------------------------------------------------
    # Tokens and lifecycle
    # ------------------------------------------------------------------

    def count_tokens(self, text: str) -> int:
        if not text:
            return 0
        return self._token_counter.count(text)

    @staticmethod
    def _build_token_counter(model_name: str) -> TokenCounter:
        if not model_name:
            return HeuristicCounter()
        try:
            return TiktokenCounter(model_name)
        except Exception as exc:
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            return HeuristicCounter()

    @staticmethod
    def _build_client(settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await cast(Any, result)
