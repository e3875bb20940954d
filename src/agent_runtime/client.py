# client.py
# Model completion client.
#
# Sends the conversation plus the plan tool definition (tool_choice forced to
# the plan tool) and streams the tool-call argument deltas. Every accumulated
# prefix is parsed leniently and handed to `on_partial` so the reconciler can
# show the plan while it is still being written. The whole request races the
# cancellation token.

import logging
from collections.abc import Callable
from typing import Any

from openai import AsyncOpenAI

from agent_runtime.cancellation import Canceled, CancellationToken, race
from agent_runtime.models import Completion, CompletionResult, HistoryEntry, ToolCall
from agent_runtime.partial_json import parse_partial_json
from agent_runtime.schema import PLAN_TOOL_NAME, plan_tool_definition

logger = logging.getLogger(__name__)

PartialCallback = Callable[[dict[str, Any]], None]


class ModelClient:
    """
    Thin wrapper over openai.AsyncOpenAI chat completions.

    Example:
        client = ModelClient(model="gpt-4.1-mini", api_key=os.getenv("OPENAI_API_KEY"))
        result = await client.request_completion(history, token=token)
    """

    def __init__(self, model: str, api_key: str | None = None, base_url: str | None = None,
                 client: Any = None) -> None:
        self.model = model
        self._client = client or AsyncOpenAI(base_url=base_url, api_key=api_key)

    def _request_kwargs(self, history: list[HistoryEntry]) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [entry.to_message() for entry in history],
            "tools": [plan_tool_definition()],
            "tool_choice": {"type": "function", "function": {"name": PLAN_TOOL_NAME}},
            "stream": True,
        }

    async def _stream(self, history: list[HistoryEntry],
                      on_partial: PartialCallback | None) -> Completion:
        stream = await self._client.chat.completions.create(**self._request_kwargs(history))

        content: list[str] = []
        calls: dict[int, dict[str, str]] = {}
        last_partial: str | None = None

        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta is None:
                continue
            if delta.content:
                content.append(delta.content)

            for tool_delta in delta.tool_calls or []:
                entry = calls.setdefault(tool_delta.index, {"id": "", "name": "", "arguments": ""})
                if tool_delta.id:
                    entry["id"] = tool_delta.id
                function = tool_delta.function
                if function is None:
                    continue
                if function.name:
                    entry["name"] = function.name
                if function.arguments:
                    entry["arguments"] += function.arguments

                if on_partial is not None and tool_delta.index == min(calls):
                    arguments = entry["arguments"]
                    if arguments == last_partial:
                        continue
                    last_partial = arguments
                    parsed = parse_partial_json(arguments)
                    if isinstance(parsed, dict):
                        on_partial(parsed)

        tool_calls = [
            ToolCall(name=call["name"], call_id=call["id"], arguments=call["arguments"])
            for _, call in sorted(calls.items())
        ]
        logger.debug("completion received: %d chars content, %d tool calls", len("".join(content)), len(tool_calls))
        return Completion(content="".join(content), tool_calls=tool_calls)

    async def request_completion(self, history: list[HistoryEntry],
                                 token: CancellationToken | None = None,
                                 on_partial: PartialCallback | None = None) -> CompletionResult:
        result = await race(self._stream(history, on_partial), token)
        if isinstance(result, Canceled):
            logger.info("model request canceled: %s", result.payload)
            return CompletionResult(status="canceled", reason=result.payload)
        return CompletionResult(status="success", completion=result)


def extract_tool_call(completion: Completion | None) -> ToolCall | None:
    """The plan tool call if present, else the first tool call, else None."""
    if completion is None or not completion.tool_calls:
        return None
    for call in completion.tool_calls:
        if call.name == PLAN_TOOL_NAME:
            return call
    return completion.tool_calls[0]
