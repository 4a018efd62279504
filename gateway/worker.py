"""
Host worker.

Runs on a machine outside the gateway, connects to ``/ws`` and offers host
tools to the agents. Start it with ``python -m gateway.worker``.
"""

from typing import Any, Dict, Optional
from urllib.parse import urlencode
import argparse
import asyncio
import json
import webbrowser

import structlog
import websockets

from gateway.infrastructure.config.settings import load_settings
from gateway.infrastructure.observability.logging import setup_logging

logger = structlog.get_logger(__name__)

HOST_TOOLS = [
    {
        "name": "run_host_command",
        "description": "Execute a terminal command directly on the host machine. Use this for npx, git, brew, etc.",
        "parameters": {
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "The full shell command to run."},
                "cwd": {"type": "string", "description": "The directory to run the command in (optional)."}
            },
            "required": ["command"]
        }
    },
    {
        "name": "open_browser",
        "description": "Open a URL in the default host browser.",
        "parameters": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "The URL to open."}
            },
            "required": ["url"]
        }
    }
]


async def run_host_command(command: str, cwd: Optional[str] = None) -> Dict[str, Any]:
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd or None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE
    )
    stdout, stderr = await process.communicate()
    return {
        "stdout": stdout.decode("utf-8", errors="replace").strip(),
        "stderr": stderr.decode("utf-8", errors="replace").strip(),
        "exitCode": process.returncode
    }


async def open_browser(url: str) -> Dict[str, Any]:
    opened = await asyncio.to_thread(webbrowser.open, url)
    if not opened:
        return {"error": f"No browser available to open {url}"}
    return {"success": True, "message": f"Opened {url}"}


async def execute_tool(name: str, args: Dict[str, Any]) -> Dict[str, Any]:
    """Run a host tool and build the ``tool_result`` frame fields"""

    try:
        if name == "run_host_command":
            return {"result": await run_host_command(args["command"], args.get("cwd"))}
        if name == "open_browser":
            return {"result": await open_browser(args["url"])}
    except (KeyError, OSError) as e:
        return {"error": f"{type(e).__name__}: {e}"}
    return {"error": f"Unknown tool: {name}"}


async def handle_frame(ws, raw: str):
    try:
        message = json.loads(raw)
    except ValueError:
        logger.warning("Ignoring malformed frame")
        return

    if message.get("type") != "call_tool":
        return

    call_id, name = message.get("id"), message.get("name")
    logger.info("Executing remote tool", tool=name, args=message.get("args"))
    outcome = await execute_tool(name, message.get("args") or {})
    await ws.send(json.dumps({"type": "tool_result", "id": call_id, **outcome}))


async def serve_connection(ws):
    """Register host tools and answer calls until the socket closes"""

    await ws.send(json.dumps({"type": "register_tools", "tools": HOST_TOOLS}))
    pending = set()
    try:
        async for raw in ws:
            # Calls run concurrently; a long command must not block others
            task = asyncio.create_task(handle_frame(ws, str(raw)))
            pending.add(task)
            task.add_done_callback(pending.discard)
    finally:
        # Results for a dropped connection can no longer be delivered
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def run_worker(url: str, retry_delay: float = 5.0):
    while True:
        try:
            async with websockets.connect(url) as ws:
                logger.info("Connected to gateway as host worker")
                await serve_connection(ws)
        except (OSError, websockets.exceptions.WebSocketException) as e:
            logger.warning("Connection to gateway lost", error=str(e))

        logger.info("Reconnecting", delay=retry_delay)
        await asyncio.sleep(retry_delay)


def build_url(host: str, port: int, token: str, hostname: str) -> str:
    return f"ws://{host}:{port}/ws?" + urlencode({"token": token, "hostname": hostname})


def main():
    settings = load_settings()
    parser = argparse.ArgumentParser(description="Offer host tools to a tool gateway")
    parser.add_argument("--host", default="localhost")
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--hostname", default="Host-Worker")
    args = parser.parse_args()

    setup_logging(settings.log_level, settings.log_format, service_name="tool-gateway-worker")
    try:
        asyncio.run(run_worker(build_url(args.host, args.port, settings.secret_token, args.hostname)))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
