import json
from typing import List, Optional, Sequence, Union

import pytest

from gateway.domain.models.conversation import ConversationMessage
from gateway.domain.streaming.completion_client import (
    CompletionDelta, CompletionResult, FunctionFragment, ToolCallFragment
)
from gateway.infrastructure.config.settings import GatewaySettings, ProviderConfig

Turn = Union[List[CompletionDelta], Exception]


def text_turn(*pieces: str) -> List[CompletionDelta]:
    return [CompletionDelta(content=piece) for piece in pieces]


def tool_turn(*calls, content: Optional[str] = None) -> List[CompletionDelta]:
    """One completion requesting tools; each call is (id, name, arguments)"""

    deltas = [CompletionDelta(content=content)] if content else []
    for index, (call_id, name, arguments) in enumerate(calls):
        if not isinstance(arguments, str):
            arguments = json.dumps(arguments)
        half = len(arguments) // 2
        deltas.append(CompletionDelta(tool_calls=[ToolCallFragment(
            index=index, id=call_id, type="function",
            function=FunctionFragment(name=name, arguments=arguments[:half])
        )]))
        deltas.append(CompletionDelta(tool_calls=[ToolCallFragment(
            index=index, function=FunctionFragment(arguments=arguments[half:])
        )]))
    return deltas


class ScriptedCompletionClient:
    """Plays back one scripted turn per completion call"""

    def __init__(self, turns: Sequence[Turn] = (), summary: str = "Short chat summary"):
        self.turns = list(turns)
        self.summary = summary
        self.requests: List[List[ConversationMessage]] = []
        self.tools_seen: List[List[str]] = []
        self.completions: List[List[ConversationMessage]] = []

    async def stream_chat_completion(self, provider, messages, tools=None):
        self.requests.append(list(messages))
        self.tools_seen.append([tool.name for tool in tools or []])
        turn = self.turns.pop(0) if self.turns else text_turn("")
        if isinstance(turn, Exception):
            raise turn
        for delta in turn:
            yield delta

    async def complete(self, provider, messages):
        self.completions.append(list(messages))
        return CompletionResult(content=self.summary, usage={"total_tokens": 12})


@pytest.fixture
def provider() -> ProviderConfig:
    return ProviderConfig(base_url="http://llm.test", model="test-model")


@pytest.fixture
def settings(tmp_path, provider) -> GatewaySettings:
    return GatewaySettings(
        agents_dir=tmp_path / "agents",
        tools_dir=None,
        providers=[provider],
        agents=[{"id": "luna", "name": "Luna", "system_prompt": "You are Luna."}]
    )
