from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional, Set
import asyncio
import json
import uuid
import structlog
from pydantic import ValidationError

from gateway.application.api.api_server import install_auth_middleware
from gateway.application.api.route.agent import router as api_router
from gateway.application.runtime import GatewayRuntime
from gateway.application.websocket.schema.events import ChatRequest
from gateway.domain.errors import RemoteToolError, describe_completion_error
from gateway.infrastructure.config.settings import GatewaySettings, load_settings
from gateway.infrastructure.observability.logging import setup_logging
from gateway.infrastructure.security.token_validator import verify_token

logger = structlog.get_logger(__name__)


def create_app(settings: Optional[GatewaySettings] = None, runtime: Optional[GatewayRuntime] = None) -> FastAPI:
    """Build the gateway application around a runtime"""

    if runtime is None:
        runtime = GatewayRuntime(settings or load_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await runtime.startup()
        logger.info("Gateway started", port=runtime.settings.port)
        yield
        await runtime.shutdown()
        logger.info("Gateway shutdown")

    app = FastAPI(title="Tool Gateway", lifespan=lifespan)
    app.state.runtime = runtime

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_auth_middleware(app)
    app.include_router(api_router)
    app.add_api_websocket_route("/ws", gateway_websocket)

    return app


async def gateway_websocket(websocket: WebSocket, token: Optional[str] = None, hostname: str = "Unknown Device"):
    """Chat clients and tool workers share this endpoint"""

    runtime: GatewayRuntime = websocket.app.state.runtime
    connections = runtime.connection_manager

    await websocket.accept()
    if not verify_token(token, runtime.settings.secret_token):
        logger.info("WS connection rejected: invalid token", hostname=hostname)
        await websocket.close(code=1008, reason="Invalid Secret Token")
        return

    connection_id = uuid.uuid4().hex
    client_ip = websocket.client.host if websocket.client else None
    await connections.connect(websocket, connection_id, hostname, client_ip)

    async def send_to_peer(frame: Dict[str, Any]):
        if not await connections.send_json(connection_id, frame):
            raise RemoteToolError(f"Remote peer {hostname} is not connected")

    runtime.bridge.open_peer(connection_id, hostname, send_to_peer)
    chat_tasks: Set[asyncio.Task] = set()

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                data = json.loads(raw)
            except ValueError:
                await connections.send_error(connection_id, "Invalid JSON message")
                continue
            if not isinstance(data, dict):
                continue

            if await runtime.bridge.handle_message(connection_id, data):
                continue

            if not data.get("messages"):
                continue

            try:
                request = ChatRequest.model_validate(data)
            except ValidationError as e:
                await connections.send_error(connection_id, f"Invalid chat message: {e.errors()[0]['msg']}")
                continue

            # Run in the background so tool results on this socket keep flowing
            task = asyncio.create_task(process_chat(runtime, connection_id, request))
            chat_tasks.add(task)
            task.add_done_callback(chat_tasks.discard)

    except WebSocketDisconnect:
        logger.info("Client disconnected", connection_id=connection_id, hostname=hostname)
    finally:
        runtime.bridge.close_peer(connection_id)
        for task in list(chat_tasks):
            task.cancel()
        await connections.disconnect(connection_id)


async def process_chat(runtime: GatewayRuntime, connection_id: str, request: ChatRequest):
    """Run one chat turn and stream its events to the client"""

    streaming = runtime.streaming
    session_id = request.session_id

    async def on_delta(token: str):
        await streaming.stream_token(connection_id, token, session_id)

    try:
        result = await runtime.run_chat(request, on_delta=on_delta)
    except asyncio.CancelledError:
        raise
    except Exception as e:
        logger.error("Chat turn failed", connection_id=connection_id, session_id=session_id, error=str(e))
        await streaming.send_error(connection_id, describe_completion_error(e), session_id)
        return

    await streaming.send_done(connection_id, result, session_id, show_reasoning=runtime.settings.chat.show_reasoning)

    if request.should_summarize and runtime.settings.chat.generate_summaries and result.visible_content:
        summary = await runtime.summarize(request, result)
        if summary:
            await streaming.send_summary(connection_id, summary, session_id)


def main():
    import uvicorn

    settings = load_settings()
    setup_logging(settings.log_level, settings.log_format)
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.port)


if __name__ == "__main__":
    main()
