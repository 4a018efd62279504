"""Built-in tools giving the model access to its agent's long-term memory"""

from typing import Any, Dict, List, Tuple

from gateway.domain.context.memory.manager_registry import MemoryManagerRegistry
from gateway.domain.models.tool import ToolContext, ToolDefinition, ToolParameters
from gateway.domain.tool.tool_registry import ToolHandler, ToolRegistry

NO_RESULTS_MESSAGE = (
    "No relevant memory found in the index. "
    "However, you may still know this information from your context."
)

MEMORY_SEARCH = ToolDefinition(
    name="memory_search",
    description=(
        "Search the agent's long-term memory (MEMORY.md) for relevant information. "
        "Use this to recall facts, preferences, or past decisions."
    ),
    parameters=ToolParameters(
        properties={
            "query": {
                "type": "string",
                "description": 'The search query. To list recent memories, use "recent".'
            },
            "max_results": {
                "type": "integer",
                "description": "Maximum number of results to return (default: 5)."
            }
        },
        required=["query"]
    )
)

MEMORY_GET = ToolDefinition(
    name="memory_get",
    description=(
        "Read a specific section of MEMORY.md. "
        "Use this when you need to read the full context around a search result."
    ),
    parameters=ToolParameters(
        properties={
            "path": {"type": "string", "description": "The file path (must be MEMORY.md)."},
            "start_line": {"type": "integer", "description": "Starting line number (1-indexed)."},
            "lines": {"type": "integer", "description": "Number of lines to read."}
        },
        required=["path"]
    )
)

SAVE_TO_MEMORY = ToolDefinition(
    name="save_to_memory",
    description=(
        "Save important information to the agent's long-term memory (MEMORY.md). "
        "Use this to remember user preferences, important facts, or context that should persist across sessions."
    ),
    parameters=ToolParameters(
        properties={
            "text": {"type": "string", "description": "The information to save. Be concise."},
            "category": {
                "type": "string",
                "description": 'Optional category tag (e.g., "preferences", "project_details"). Defaults to "general".'
            }
        },
        required=["text"]
    )
)


def create_memory_tools(memory: MemoryManagerRegistry) -> List[Tuple[ToolDefinition, ToolHandler]]:
    """Bind the memory tools to a manager registry"""

    async def memory_search(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        if not context.agent_id:
            return {"error": "Agent context required"}

        try:
            manager = await memory.get(context.agent_id)
            await manager.sync()
            results = await manager.search(str(args.get("query", "")), int(args.get("max_results") or 5))
        except Exception as e:
            return {"error": f"Memory search failed: {e}"}

        if not results:
            return {"results": [], "message": NO_RESULTS_MESSAGE}

        return {
            "results": [
                {"text": r.text, "score": r.score, "location": r.location}
                for r in results
            ]
        }

    async def memory_get(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        if not context.agent_id:
            return {"error": "Agent context required"}

        path = str(args.get("path", ""))
        try:
            manager = await memory.get(context.agent_id)
            content = await manager.read_file(path, args.get("start_line"), args.get("lines"))
        except Exception as e:
            return {"error": f"Memory read failed: {e}"}

        return {"path": path, "content": content}

    async def save_to_memory(args: Dict[str, Any], context: ToolContext) -> Dict[str, Any]:
        if not context.agent_id:
            return {"error": "Agent context required"}

        try:
            manager = await memory.get(context.agent_id)
            entry = manager.append_entry(str(args.get("text", "")), args.get("category") or "general")
        except Exception as e:
            return {"error": f"Memory save failed: {e}"}

        manager.schedule_sync(force=True)
        return {"success": True, "message": f"Saved to memory: {entry.strip()}"}

    return [
        (MEMORY_SEARCH, memory_search),
        (MEMORY_GET, memory_get),
        (SAVE_TO_MEMORY, save_to_memory),
    ]


def register_memory_tools(registry: ToolRegistry, memory: MemoryManagerRegistry) -> int:
    tools = create_memory_tools(memory)
    for definition, handler in tools:
        registry.register_tool(definition, handler, source="builtin")
    return len(tools)
