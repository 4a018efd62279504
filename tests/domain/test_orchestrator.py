import json

import pytest

from gateway.domain.errors import UpstreamAPIError
from gateway.domain.models.conversation import ConversationMessage, LoopStatus
from gateway.domain.models.tool import ToolContext, ToolDefinition
from gateway.domain.orchestration.core.main_agent import ToolCallOrchestrator
from gateway.domain.tool.tool_registry import ToolRegistry
from tests.conftest import ScriptedCompletionClient, text_turn, tool_turn


def initial_history():
    return [ConversationMessage.system("You are helpful."), ConversationMessage.user("What is 2+3?")]


def make_registry(calls=None):
    registry = ToolRegistry()

    async def add(args, context):
        if calls is not None:
            calls.append((args, context))
        return {"sum": args.get("a", 0) + args.get("b", 0)}

    async def explode(args, context):
        raise RuntimeError("kaboom")

    registry.register_tool(ToolDefinition(name="add", description="Add two numbers"), add)
    registry.register_tool(ToolDefinition(name="explode", description="Always fails"), explode)
    return registry


class TestLoopTermination:
    """The loop ends when the model answers without tool calls"""

    @pytest.mark.asyncio
    async def test_plain_answer(self, provider):
        client = ScriptedCompletionClient([text_turn("The answer ", "is 5.")])
        streamed = []

        async def on_delta(text):
            streamed.append(text)

        result = await ToolCallOrchestrator(client, make_registry()).run(
            initial_history(), provider, on_delta=on_delta
        )

        assert result.status == LoopStatus.DONE
        assert result.iterations == 1
        assert result.visible_content == "The answer is 5."
        assert streamed == ["The answer ", "is 5."]
        assert len(client.requests) == 1
        assert client.tools_seen[0] == ["add", "explode"]

    @pytest.mark.asyncio
    async def test_reasoning_is_split_after_the_loop(self, provider):
        client = ScriptedCompletionClient([text_turn("<think>2+3 is 5</think>", "It is 5.")])
        result = await ToolCallOrchestrator(client, make_registry()).run(initial_history(), provider)

        assert result.visible_content == "It is 5."
        assert result.reasoning_content == "2+3 is 5"
        assert result.raw_content == "<think>2+3 is 5</think>It is 5."


class TestToolDispatch:
    """Tool results are appended right after the assistant turn that asked for them"""

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, provider):
        calls = []
        client = ScriptedCompletionClient([
            tool_turn(("call_1", "add", {"a": 2, "b": 3}), content="Let me add."),
            text_turn("It is 5."),
        ])
        context = ToolContext(agent_id="luna", session_id="s1")

        result = await ToolCallOrchestrator(client, make_registry(calls)).run(
            initial_history(), provider, context=context
        )

        assert result.status == LoopStatus.DONE
        assert result.iterations == 2
        assert result.visible_content == "It is 5."
        assert calls == [({"a": 2, "b": 3}, context)]

        second_request = client.requests[1]
        assert [m.role for m in second_request] == ["system", "user", "assistant", "tool"]
        assistant, tool_message = second_request[2], second_request[3]
        assert assistant.content == "Let me add."
        assert assistant.tool_calls[0].id == "call_1"
        assert assistant.tool_calls[0].function.arguments == '{"a": 2, "b": 3}'
        assert tool_message.tool_call_id == "call_1"
        assert tool_message.name == "add"
        assert json.loads(tool_message.content) == {"sum": 5}

    @pytest.mark.asyncio
    async def test_failures_inside_a_batch_are_contained(self, provider):
        client = ScriptedCompletionClient([
            tool_turn(
                ("call_a", "add", {"a": 1, "b": 1}),
                ("call_b", "missing_tool", {}),
                ("call_c", "explode", {}),
            ),
            text_turn("Done."),
        ])

        result = await ToolCallOrchestrator(client, make_registry()).run(initial_history(), provider)

        assert result.status == LoopStatus.DONE
        tool_messages = [m for m in client.requests[1] if m.role == "tool"]
        assert [m.tool_call_id for m in tool_messages] == ["call_a", "call_b", "call_c"]
        assert json.loads(tool_messages[0].content) == {"sum": 2}
        assert json.loads(tool_messages[1].content) == {"error": "Tool missing_tool not found"}
        assert json.loads(tool_messages[2].content) == {"error": "kaboom"}

    @pytest.mark.asyncio
    async def test_invalid_arguments_dispatch_with_empty_object(self, provider):
        calls = []
        client = ScriptedCompletionClient([
            tool_turn(("call_1", "add", "{not json")),
            text_turn("Sorry."),
        ])

        await ToolCallOrchestrator(client, make_registry(calls)).run(initial_history(), provider)

        assert calls[0][0] == {}
        tool_message = client.requests[1][-1]
        payload = json.loads(tool_message.content)
        assert "Invalid JSON arguments" in payload["error"]
        assert payload["result"] == {"sum": 0}

    @pytest.mark.asyncio
    async def test_history_is_not_mutated(self, provider):
        history = initial_history()
        client = ScriptedCompletionClient([tool_turn(("call_1", "add", {})), text_turn("ok")])

        result = await ToolCallOrchestrator(client, make_registry()).run(history, provider)

        assert len(history) == 2
        assert len(client.requests[0]) == 2
        assert len(result.history) == 4


class TestIterationCap:
    """Bounded runs stop after max_iterations completions"""

    @pytest.mark.asyncio
    async def test_aborts_at_cap(self, provider):
        client = ScriptedCompletionClient([
            tool_turn((f"call_{i}", "add", {"a": i}))
            for i in range(10)
        ])

        result = await ToolCallOrchestrator(client, make_registry()).run(
            initial_history(), provider, max_iterations=3
        )

        assert result.status == LoopStatus.ABORTED
        assert result.iterations == 3
        assert len(client.requests) == 3
        assert [m.role for m in result.history][-2:] == ["assistant", "tool"]


class TestCompletionFailures:
    """Transport and upstream errors abort the whole turn"""

    @pytest.mark.asyncio
    async def test_upstream_error_propagates(self, provider):
        client = ScriptedCompletionClient([UpstreamAPIError(503, "Service Unavailable")])
        with pytest.raises(UpstreamAPIError):
            await ToolCallOrchestrator(client, make_registry()).run(initial_history(), provider)
