import abc
import json
import logging
from typing import Any, Dict, List, Sequence

from openai import APIError, AsyncOpenAI

from ..errors import ModelUnavailable
from ..models import AssistantOutput, Message, ToolInvocationRequest, new_call_id
from ..settings import Settings

logger = logging.getLogger(__name__)


class ChatModel(abc.ABC):
    """Black-box model boundary: conversation + tool catalog -> text or one tool call."""

    @abc.abstractmethod
    async def invoke(
        self, messages: Sequence[Message], tools: List[Dict[str, Any]]
    ) -> AssistantOutput:
        """Return the model's next output. Transport failures raise ModelUnavailable."""


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


def to_openai_messages(messages: Sequence[Message], system_prompt: str = "") -> List[Dict[str, Any]]:
    """Convert session messages to chat-completions message dicts."""
    out: List[Dict[str, Any]] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})
    for msg in messages:
        if msg.role == "tool":
            content = _result_text(msg.tool_result)
            if msg.content:
                content = f"{msg.content}\n{content}"
            out.append({"role": "tool", "tool_call_id": msg.tool_call_id, "content": content})
        elif msg.tool_call is not None:
            out.append(
                {
                    "role": "assistant",
                    "content": msg.content or None,
                    "tool_calls": [
                        {
                            "id": msg.tool_call.id,
                            "type": "function",
                            "function": {
                                "name": msg.tool_call.name,
                                "arguments": json.dumps(msg.tool_call.arguments),
                            },
                        }
                    ],
                }
            )
        else:
            out.append({"role": msg.role, "content": msg.content})
    return out


def _parse_arguments(raw: str | None) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Model returned undecodable tool arguments: %s", raw[:200])
        return {"_raw": raw}
    return parsed if isinstance(parsed, dict) else {"_raw": parsed}


class OpenAIChatModel(ChatModel):
    """ChatModel backed by the OpenAI chat-completions API."""

    def __init__(self, settings: Settings, client: AsyncOpenAI | None = None) -> None:
        self._settings = settings
        self._client = client or AsyncOpenAI(
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            timeout=settings.request_timeout_seconds,
        )

    async def invoke(
        self, messages: Sequence[Message], tools: List[Dict[str, Any]]
    ) -> AssistantOutput:
        payload = to_openai_messages(messages, self._settings.agent_system_prompt)
        kwargs: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": payload,
            "temperature": self._settings.temperature,
        }
        if tools:
            kwargs.update(tools=tools, tool_choice="auto", parallel_tool_calls=False)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (APIError, TimeoutError, ConnectionError) as e:
            logger.warning("Model call failed: %s", e)
            raise ModelUnavailable(f"Model call failed: {e}") from e

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError) as e:
            logger.error("Model response parse failed: %s", e)
            raise ModelUnavailable(f"Malformed model response: {e}") from e

        if message.tool_calls:
            call = message.tool_calls[0]
            if len(message.tool_calls) > 1:
                logger.warning(
                    "Model returned %d tool calls; only %s is honoured",
                    len(message.tool_calls),
                    call.function.name,
                )
            return AssistantOutput(
                tool_call=ToolInvocationRequest(
                    name=call.function.name,
                    arguments=_parse_arguments(call.function.arguments),
                    id=call.id or new_call_id(),
                )
            )
        return AssistantOutput.reply(message.content or "")
