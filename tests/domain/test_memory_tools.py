import asyncio

import pytest
import pytest_asyncio

from gateway.domain.context.memory.manager_registry import MemoryManagerRegistry
from gateway.domain.models.tool import ToolContext
from gateway.domain.tool.builtin.memory_tools import NO_RESULTS_MESSAGE, register_memory_tools
from gateway.domain.tool.tool_registry import ToolRegistry

LUNA = ToolContext(agent_id="luna", session_id="s1")


@pytest_asyncio.fixture
async def memory(settings):
    registry = MemoryManagerRegistry(settings, embedding_factory=lambda: None, watch=False)
    yield registry
    await registry.close_all()


@pytest.fixture
def tools(memory):
    registry = ToolRegistry()
    register_memory_tools(registry, memory)
    return registry


async def wait_for_background_sync(memory, agent_id="luna"):
    manager = await memory.get(agent_id)
    if manager._background:
        await asyncio.gather(*manager._background)


class TestMemoryTools:
    """memory_search, memory_get and save_to_memory"""

    def test_registered_as_builtin(self, tools):
        assert sorted(tools.get_tools_by_source("builtin")) == ["memory_get", "memory_search", "save_to_memory"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["memory_search", "memory_get", "save_to_memory"])
    async def test_agent_context_required(self, tools, name):
        result = await tools.call_tool(name, {"query": "x", "path": "MEMORY.md", "text": "x"}, ToolContext())
        assert result == {"error": "Agent context required"}

    @pytest.mark.asyncio
    async def test_empty_index(self, tools):
        result = await tools.call_tool("memory_search", {"query": "anything"}, LUNA)
        assert result == {"results": [], "message": NO_RESULTS_MESSAGE}

    @pytest.mark.asyncio
    async def test_save_then_search(self, tools, memory, settings):
        saved = await tools.call_tool("save_to_memory", {"text": "User prefers green tea", "category": "preferences"}, LUNA)
        await wait_for_background_sync(memory)

        assert saved["success"] is True
        assert saved["message"].startswith("Saved to memory: - [")
        assert saved["message"].endswith("(preferences): User prefers green tea")

        memory_file = settings.agent_dir("luna") / "MEMORY.md"
        assert "(preferences): User prefers green tea" in memory_file.read_text()

        found = await tools.call_tool("memory_search", {"query": "green tea"}, LUNA)
        assert len(found["results"]) == 1
        hit = found["results"][0]
        assert "User prefers green tea" in hit["text"]
        assert hit["location"] == "MEMORY.md:1-2"
        assert hit["score"] in (0.5, 0.1)

    @pytest.mark.asyncio
    async def test_search_picks_up_external_edits(self, tools, memory, settings):
        await memory.get("luna")
        (settings.agent_dir("luna") / "MEMORY.md").write_text("Birthday is in March")

        found = await tools.call_tool("memory_search", {"query": "birthday", "max_results": 3}, LUNA)
        assert found["results"][0]["text"] == "Birthday is in March"

    @pytest.mark.asyncio
    async def test_memory_get(self, tools, memory, settings):
        await memory.get("luna")
        (settings.agent_dir("luna") / "MEMORY.md").write_text("a\nb\nc\nd")

        result = await tools.call_tool("memory_get", {"path": "MEMORY.md", "start_line": 2, "lines": 2}, LUNA)
        assert result == {"path": "MEMORY.md", "content": "b\nc"}

    @pytest.mark.asyncio
    async def test_memory_get_outside_agent_dir(self, tools):
        result = await tools.call_tool("memory_get", {"path": "../other/MEMORY.md"}, LUNA)
        assert result == {"error": "Memory read failed: Access denied: ../other/MEMORY.md"}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("agent_id", ["../outside", "OUTSIDE_ABSOLUTE"])
    async def test_agent_id_cannot_leave_agents_dir(self, tools, settings, tmp_path, agent_id):
        outside = tmp_path / "outside"
        outside.mkdir()
        (outside / "secret.txt").write_text("TOP SECRET")
        if agent_id == "OUTSIDE_ABSOLUTE":
            agent_id = str(outside)

        result = await tools.call_tool("memory_get", {"path": "secret.txt"}, ToolContext(agent_id=agent_id))

        assert result == {"error": f"Memory read failed: Access denied: {agent_id}"}
        assert not (outside / "memory_index.db").exists()
