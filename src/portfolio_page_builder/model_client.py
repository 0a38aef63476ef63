"""Model invocation boundary.

Stage agents only see ``ModelClient.stream_completion(messages, options)``,
which returns a ``ModelStream``: an async iterable of text fragments whose
``stop_reason`` and ``tool_calls`` are filled in once iteration finishes.

``Ag2ModelClient`` fulfils the contract with AG2's ``OpenAIWrapper`` routed
per stage through ``build_role_llm_config``. The wrapper call is blocking and
non-streaming, so it runs in a worker thread and the completed text is
replayed as fragments.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Protocol

import autogen

from .config import build_role_llm_config
from .errors import TransientModelError
from .models import ModelOptions, ProjectConfig, ToolCall

logger = logging.getLogger(__name__)


class ModelStream:
    """One model round. Iterate once; then read ``stop_reason`` / ``tool_calls``."""

    def __init__(self) -> None:
        self.stop_reason: str | None = None
        self.tool_calls: list[ToolCall] = []

    def __aiter__(self) -> AsyncIterator[str]:
        return self._fragments()

    def _fragments(self) -> AsyncIterator[str]:
        raise NotImplementedError


class ModelClient(Protocol):
    def stream_completion(
        self, messages: list[dict[str, Any]], options: ModelOptions,
    ) -> ModelStream: ...


# ---------------------------------------------------------------------------
# AG2 adapter
# ---------------------------------------------------------------------------


def _parse_tool_call(raw: Any) -> ToolCall:
    function = raw.function
    try:
        arguments = json.loads(function.arguments or "{}")
    except ValueError:
        logger.warning("Tool call %s had non-JSON arguments", function.name)
        arguments = {}
    if not isinstance(arguments, dict):
        arguments = {"value": arguments}
    return ToolCall(id=raw.id or "", name=function.name, arguments=arguments)


class _Ag2Stream(ModelStream):
    def __init__(
        self,
        client: Ag2ModelClient,
        messages: list[dict[str, Any]],
        options: ModelOptions,
    ) -> None:
        super().__init__()
        self._client = client
        self._messages = messages
        self._options = options

    async def _fragments(self) -> AsyncIterator[str]:
        kwargs: dict[str, Any] = {
            "messages": self._messages,
            "max_tokens": self._options.max_tokens,
            "temperature": self._options.temperature,
            "cache_seed": None,
        }
        if self._options.tools:
            kwargs["tools"] = self._options.tools
        try:
            wrapper = self._client.wrapper_for(self._options.role)
            response = await asyncio.to_thread(wrapper.create, **kwargs)
        except Exception as e:
            raise TransientModelError(f"{type(e).__name__}: {e}") from e

        choice = response.choices[0]
        self.stop_reason = choice.finish_reason
        self.tool_calls = [_parse_tool_call(c) for c in (choice.message.tool_calls or [])]
        text = choice.message.content or ""
        size = self._client.fragment_chars
        for start in range(0, len(text), size):
            yield text[start:start + size]


class Ag2ModelClient:
    """``ModelClient`` backed by one ``autogen.OpenAIWrapper`` per stage role."""

    def __init__(self, config: ProjectConfig, *, fragment_chars: int = 48) -> None:
        self.config = config
        self.fragment_chars = max(fragment_chars, 1)
        self._wrappers: dict[str, autogen.OpenAIWrapper] = {}

    def wrapper_for(self, role: str) -> autogen.OpenAIWrapper:
        if role not in self._wrappers:
            llm_config = build_role_llm_config(role, self.config)
            logger.debug("Creating OpenAIWrapper for %s (%s)", role, llm_config["config_list"][0]["model"])
            self._wrappers[role] = autogen.OpenAIWrapper(**llm_config)
        return self._wrappers[role]

    def stream_completion(
        self, messages: list[dict[str, Any]], options: ModelOptions,
    ) -> ModelStream:
        return _Ag2Stream(self, messages, options)
