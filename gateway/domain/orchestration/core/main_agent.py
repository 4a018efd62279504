from typing import TypedDict, List, Dict, Any, Optional, Literal, Callable, Awaitable, Protocol, AsyncIterator
from langgraph.graph import StateGraph, END
from langchain_core.runnables import RunnableConfig
import structlog
import time

from gateway.domain.models.conversation import (
    ConversationMessage, ToolCallRequest, LoopStatus, LoopResult
)
from gateway.domain.models.tool import ToolContext, ToolDefinition
from gateway.domain.orchestration.core.tool_call_accumulator import ToolCallAccumulator
from gateway.domain.streaming.completion_client import CompletionDelta
from gateway.domain.streaming.reasoning import extract_reasoning
from gateway.domain.tool.tool_executor import ToolExecutor
from gateway.domain.tool.tool_registry import ToolRegistry
from gateway.infrastructure.config.settings import ProviderConfig
from gateway.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)

DeltaCallback = Callable[[str], Awaitable[None]]

# Interactive conversations loop until the model stops calling tools
UNBOUNDED_RECURSION_LIMIT = 10_000


class CompletionStream(Protocol):
    def stream_chat_completion(
        self,
        provider: ProviderConfig,
        messages: List[ConversationMessage],
        tools: Optional[List[ToolDefinition]] = None
    ) -> AsyncIterator[CompletionDelta]:
        ...


class LoopState(TypedDict):
    """State for the tool-calling graph"""
    history: List[ConversationMessage]
    full_content: str
    tool_calls: List[ToolCallRequest]
    iterations: int
    max_iterations: Optional[int]
    status: LoopStatus
    usage: List[Dict[str, Any]]


class ToolCallOrchestrator:
    """Drives completion calls and tool dispatch until the model answers without tools"""

    def __init__(self, completion_client: CompletionStream, registry: ToolRegistry):
        self.completion_client = completion_client
        self.registry = registry
        self.executor = ToolExecutor(registry)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the streaming/dispatching loop graph"""

        workflow = StateGraph(LoopState)

        workflow.add_node("stream_completion", self.stream_completion_node)
        workflow.add_node("dispatch_tools", self.dispatch_tools_node)

        workflow.set_entry_point("stream_completion")

        workflow.add_conditional_edges(
            "stream_completion",
            self.route_after_stream,
            {
                "dispatch": "dispatch_tools",
                "done": END
            }
        )

        workflow.add_conditional_edges(
            "dispatch_tools",
            self.route_after_dispatch,
            {
                "continue": "stream_completion",
                "aborted": END
            }
        )

        return workflow.compile()

    async def stream_completion_node(self, state: LoopState, config: RunnableConfig) -> Dict[str, Any]:
        """Stream one completion and accumulate content and tool-call fragments"""

        options = config.get("configurable", {})
        provider: ProviderConfig = options["provider"]
        on_delta: Optional[DeltaCallback] = options.get("on_delta")
        context: ToolContext = options.get("tool_context") or ToolContext()

        iteration = state["iterations"] + 1
        agent_logger.log_loop_transition(context.session_id, LoopStatus.STREAMING.value,
                                         LoopStatus.STREAMING.value, iteration)

        full_content = ""
        accumulator = ToolCallAccumulator()
        usage: List[Dict[str, Any]] = []
        start = time.perf_counter()

        async for delta in self.completion_client.stream_chat_completion(
            provider,
            state["history"],
            self.registry.get_tool_definitions()
        ):
            if delta.content:
                full_content += delta.content
                if on_delta is not None:
                    await on_delta(delta.content)
            if delta.tool_calls:
                accumulator.feed(delta.tool_calls)
            if delta.usage:
                usage.append(delta.usage)
                agent_logger.log_usage(context.agent_id, context.session_id, delta.usage)

        metrics.record_latency("completion_stream", (time.perf_counter() - start) * 1000)

        tool_calls = accumulator.finalize()
        return {
            "full_content": full_content,
            "tool_calls": tool_calls,
            "iterations": iteration,
            "status": LoopStatus.DISPATCHING if tool_calls else LoopStatus.DONE,
            "usage": state["usage"] + usage
        }

    async def dispatch_tools_node(self, state: LoopState, config: RunnableConfig) -> Dict[str, Any]:
        """Append the assistant turn, then run its tool calls one at a time in order"""

        options = config.get("configurable", {})
        context: ToolContext = options.get("tool_context") or ToolContext()
        tool_calls = state["tool_calls"]

        history = state["history"] + [
            ConversationMessage(
                role="assistant",
                content=state["full_content"] or None,
                tool_calls=tool_calls
            )
        ]

        for call in tool_calls:
            tool_message = await self.executor.execute_call(call, context)
            history = history + [tool_message]

        max_iterations = state["max_iterations"]
        if max_iterations is not None and state["iterations"] >= max_iterations:
            logger.warning("Tool loop hit iteration cap", iterations=state["iterations"],
                           agent_id=context.agent_id, session_id=context.session_id)
            status = LoopStatus.ABORTED
        else:
            status = LoopStatus.STREAMING

        agent_logger.log_loop_transition(context.session_id, LoopStatus.DISPATCHING.value, status.value,
                                         state["iterations"], tool_calls=len(tool_calls))

        return {"history": history, "tool_calls": [], "status": status}

    def route_after_stream(self, state: LoopState) -> Literal["dispatch", "done"]:
        return "dispatch" if state["tool_calls"] else "done"

    def route_after_dispatch(self, state: LoopState) -> Literal["continue", "aborted"]:
        return "aborted" if state["status"] == LoopStatus.ABORTED else "continue"

    async def run(
        self,
        messages: List[ConversationMessage],
        provider: ProviderConfig,
        context: Optional[ToolContext] = None,
        on_delta: Optional[DeltaCallback] = None,
        max_iterations: Optional[int] = None
    ) -> LoopResult:
        """
        Run the loop over an initial history.

        Completion failures propagate to the caller; tool failures never do.
        """

        initial_state: LoopState = {
            "history": list(messages),
            "full_content": "",
            "tool_calls": [],
            "iterations": 0,
            "max_iterations": max_iterations,
            "status": LoopStatus.STREAMING,
            "usage": []
        }

        recursion_limit = UNBOUNDED_RECURSION_LIMIT if max_iterations is None else 2 * max_iterations + 2

        final_state = await self.workflow.ainvoke(
            initial_state,
            config={
                "recursion_limit": recursion_limit,
                "configurable": {
                    "provider": provider,
                    "tool_context": context or ToolContext(),
                    "on_delta": on_delta
                }
            }
        )

        raw_content = final_state["full_content"]
        extracted = extract_reasoning(raw_content)

        return LoopResult(
            status=final_state["status"],
            visible_content=extracted.visible_content,
            reasoning_content=extracted.reasoning_content,
            raw_content=raw_content,
            iterations=final_state["iterations"],
            history=final_state["history"],
            usage=final_state["usage"]
        )
