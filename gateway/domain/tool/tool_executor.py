from typing import Dict, Any, Optional
from dataclasses import dataclass
import json
import time

import structlog

from gateway.domain.models.conversation import ConversationMessage, ToolCallRequest
from gateway.domain.models.tool import ToolContext
from gateway.domain.tool.tool_registry import ToolRegistry
from gateway.domain.tool.tool_validator import ToolParameterValidator
from gateway.infrastructure.observability.logging import agent_logger, metrics

logger = structlog.get_logger(__name__)


@dataclass
class ToolResult:
    success: bool
    data: Any = None
    error: Optional[str] = None
    execution_time_ms: float = 0.0


# Execution with containment & monitoring
class ToolExecutor:
    """Runs one tool call and turns its outcome into a ``tool`` message"""

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute_tool(self, name: str, parameters: Dict[str, Any], context: ToolContext) -> ToolResult:
        start = time.perf_counter()
        try:
            data = await self.registry.call_tool(name, parameters, context)
            return ToolResult(
                success=True,
                data=data,
                execution_time_ms=(time.perf_counter() - start) * 1000
            )
        except Exception as e:
            return ToolResult(
                success=False,
                error=str(e) or type(e).__name__,
                execution_time_ms=(time.perf_counter() - start) * 1000
            )

    async def execute_call(self, call: ToolCallRequest, context: ToolContext) -> ConversationMessage:
        """Execute a requested tool call; never raises for tool-level failures"""

        name = call.function.name
        args, argument_error = ToolParameterValidator.parse_arguments(call.function.arguments)
        if argument_error:
            logger.warning("Dispatching tool call with empty arguments",
                           tool=name, tool_call_id=call.id, error=argument_error)

        result = await self.execute_tool(name, args, context)

        metrics.record_latency("tool_execution", result.execution_time_ms, {"tool": name})
        metrics.increment_counter("tool_calls" if result.success else "tool_errors")
        agent_logger.log_tool_execution(
            tool_name=name,
            agent_id=context.agent_id,
            session_id=context.session_id,
            input_data=args,
            output_data=result.data if result.success else None,
            duration_ms=result.execution_time_ms,
            success=result.success,
            error=result.error or argument_error
        )

        return ConversationMessage(
            role="tool",
            tool_call_id=call.id,
            name=name,
            content=self._serialize(result, argument_error)
        )

    @staticmethod
    def _serialize(result: ToolResult, argument_error: Optional[str]) -> str:
        if not result.success:
            error = result.error
            if argument_error:
                error = f"{argument_error}; tool was called without arguments: {error}"
            return json.dumps({"error": error})

        if argument_error:
            return json.dumps({
                "error": f"{argument_error}; tool was called without arguments",
                "result": result.data
            }, default=str)

        return json.dumps(result.data, default=str)
