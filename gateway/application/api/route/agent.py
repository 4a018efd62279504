from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field
import structlog

from gateway.application.websocket.schema.events import ChatRequest
from gateway.domain.errors import AccessDeniedError, describe_completion_error
from gateway.infrastructure.observability.logging import metrics

logger = structlog.get_logger(__name__)

router = APIRouter()


class ChatResponse(BaseModel):
    content: str
    reasoning: Optional[str] = None
    status: str
    iterations: int
    summary: Optional[str] = None


class MemorySearchRequest(BaseModel):
    query: str
    max_results: int = Field(5, ge=1, le=50)


class MemorySearchResponse(BaseModel):
    results: List[Dict[str, Any]]


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint"""
    runtime = request.app.state.runtime
    return {
        "status": "healthy",
        "active_connections": len(runtime.connection_manager.active_connections),
        "metrics": metrics.get_metrics_summary(),
        "timestamp": datetime.now(timezone.utc).isoformat()
    }


@router.get("/api/v1/tools")
async def list_tools(request: Request):
    registry = request.app.state.runtime.registry
    return {
        "tools": [
            {**tool.definition.to_declaration(), "source": tool.source}
            for tool in registry.tools.values()
        ]
    }


@router.get("/api/v1/clients")
async def list_clients(request: Request):
    return {"clients": request.app.state.runtime.connection_manager.list_clients()}


# REST endpoint for simple interactions
@router.post("/api/v1/agent/chat", response_model=ChatResponse)
async def chat_endpoint(chat_request: ChatRequest, request: Request):
    runtime = request.app.state.runtime

    if not chat_request.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")

    try:
        result = await runtime.run_chat(chat_request)
    except Exception as e:
        logger.error("Chat request failed", agent_id=chat_request.agent_id, error=str(e))
        raise HTTPException(status_code=502, detail=describe_completion_error(e))

    summary = None
    if chat_request.should_summarize and runtime.settings.chat.generate_summaries and result.visible_content:
        summary = await runtime.summarize(chat_request, result)

    return ChatResponse(
        content=result.visible_content,
        reasoning=result.reasoning_content if runtime.settings.chat.show_reasoning else None,
        status=result.status.value,
        iterations=result.iterations,
        summary=summary
    )


@router.post("/api/v1/agents/{agent_id}/memory/search", response_model=MemorySearchResponse)
async def search_memory(agent_id: str, search: MemorySearchRequest, request: Request):
    try:
        manager = await request.app.state.runtime.memory.get(agent_id)
    except AccessDeniedError as e:
        raise HTTPException(status_code=403, detail=str(e))
    await manager.sync()
    results = await manager.search(search.query, search.max_results)
    return MemorySearchResponse(results=[
        {"text": r.text, "score": r.score, "location": r.location}
        for r in results
    ])
