from typing import List, Any, Tuple, Optional
from pathlib import Path
import importlib.util
import inspect

import structlog

from gateway.domain.models.tool import ToolDefinition
from gateway.domain.tool.tool_registry import ToolRegistry, ToolHandler
from gateway.domain.tool.tool_validator import ToolParameterValidator, ToolDeclarationError

logger = structlog.get_logger(__name__)

DiscoveredTool = Tuple[ToolDefinition, ToolHandler]


def _load_module(path: Path):
    spec = importlib.util.spec_from_file_location(f"gateway_plugin_{path.stem}", path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load {path}")
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _tools_from_module(module: Any) -> List[Any]:
    if hasattr(module, "TOOLS"):
        return list(module.TOOLS)
    if hasattr(module, "TOOL"):
        return [module.TOOL]
    return []


def discover_tools(tools_dir: Optional[Path]) -> List[DiscoveredTool]:
    """
    Load tool plugins from a directory.

    Each ``*.py`` file may expose ``TOOL`` (or a ``TOOLS`` list) of mappings
    with a ``definition`` and an async ``handler(args, context)``. Files that
    fail to import or expose nothing valid are logged and skipped.
    """

    if tools_dir is None or not tools_dir.is_dir():
        return []

    discovered: List[DiscoveredTool] = []
    for path in sorted(tools_dir.glob("*.py")):
        if path.name.startswith("_"):
            continue

        try:
            module = _load_module(path)
        except Exception as e:
            logger.error("Failed to load external tool", file=path.name, error=str(e))
            continue

        entries = _tools_from_module(module)
        if not entries:
            logger.warning("File is not a valid tool (missing TOOL or TOOLS)", file=path.name)
            continue

        for entry in entries:
            handler = entry.get("handler") if isinstance(entry, dict) else None
            if handler is None or not inspect.iscoroutinefunction(handler):
                logger.warning("Tool entry has no async handler", file=path.name)
                continue
            try:
                definition = ToolParameterValidator.validate_declaration(entry.get("definition") or {})
            except ToolDeclarationError as e:
                logger.warning("Invalid tool declaration", file=path.name, error=str(e))
                continue

            discovered.append((definition, handler))
            logger.info("Loaded external tool", tool=definition.name, file=path.name)

    return discovered


def register_discovered_tools(registry: ToolRegistry, tools: List[DiscoveredTool], source: str = "plugin") -> int:
    for definition, handler in tools:
        registry.register_tool(definition, handler, source=source)
    return len(tools)
