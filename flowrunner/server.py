"""Event server and process bridge for delegated runs.

The external automation backend reports progress by POSTing JSON events
to a local HTTP server. `ProcessBridge` starts that server, launches the
backend as a subprocess and forwards its stdout lines as log events.
"""

import asyncio
import json
import os
import shlex
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from aiohttp import web

from .errors import BridgeError
from .events import Log, ProgressEvent, parse_event
from .types import CancelSignal

EventCallback = Callable[[ProgressEvent], None]

DEFAULT_PORT = 7433
MAX_PORT_ATTEMPTS = 100  # Try ports 7433-7532

# Unsaved buffers are handed to the backend as a sibling temp file
TEMP_RUN_SUFFIX = ".flowrunner_tmp_run"

EVENT_URL_ENV = "FLOWRUNNER_EVENT_URL"


def find_available_port(start_port: int = DEFAULT_PORT) -> int:
    """Find first available port starting from start_port.

    Raises:
        BridgeError: If no port available within MAX_PORT_ATTEMPTS
    """
    for port in range(start_port, start_port + MAX_PORT_ATTEMPTS):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("127.0.0.1", port))
                return port
            except OSError:
                continue
    raise BridgeError(
        f"No available port found in range {start_port}-{start_port + MAX_PORT_ATTEMPTS}"
    )


class EventServer:
    """Async HTTP server receiving progress events from the backend."""

    def __init__(self, port: int = DEFAULT_PORT, on_event: Optional[EventCallback] = None) -> None:
        self.port = port
        self.on_event = on_event
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None
        self.received = 0

        self._setup_routes()

    def _setup_routes(self) -> None:
        """Configure HTTP routes."""
        self.app.router.add_post("/events", self.handle_events)
        self.app.router.add_get("/health", self.handle_health)

    @property
    def url(self) -> str:
        """URL the backend posts events to."""
        return f"http://127.0.0.1:{self.port}/events"

    async def start(self) -> None:
        """Start the HTTP server."""
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        self.site = web.TCPSite(self.runner, "127.0.0.1", self.port)
        await self.site.start()

    async def stop(self) -> None:
        """Stop the HTTP server."""
        if self.runner:
            await self.runner.cleanup()
            self.runner = None
            self.site = None

    async def handle_events(self, request: web.Request) -> web.Response:
        """Handle POST /events - one event object or a list of them.

        Unknown event types are accepted and ignored; malformed payloads
        are rejected with 400.
        """
        try:
            payload = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            return web.json_response({"error": "Invalid JSON"}, status=400)

        items = payload if isinstance(payload, list) else [payload]
        events: List[ProgressEvent] = []
        for item in items:
            if not isinstance(item, dict):
                return web.json_response({"error": "Event must be an object"}, status=400)
            try:
                event = parse_event(item)
            except ValueError as e:
                return web.json_response({"error": str(e)}, status=400)
            if event is not None:
                events.append(event)

        for event in events:
            self.received += 1
            if self.on_event:
                self.on_event(event)
        return web.json_response({"accepted": len(events)})

    async def handle_health(self, request: web.Request) -> web.Response:
        """Handle GET /health - health check endpoint."""
        return web.Response(text="ok")


@dataclass
class RunRequest:
    """What a bridge needs to run one flow on the backend."""

    file_id: str
    file_name: str
    source_text: str
    env: Dict[str, Any] = field(default_factory=dict)


class Bridge(ABC):
    """Transport to an external automation backend."""

    @abstractmethod
    async def invoke(
        self,
        request: RunRequest,
        on_event: EventCallback,
        cancel: CancelSignal,
    ) -> int:
        """Run a flow on the backend, streaming its events to on_event.

        Returns:
            The backend's exit code

        Raises:
            BridgeError: If the backend cannot be started
        """
        pass


class ProcessBridge(Bridge):
    """Runs the backend as a subprocess.

    The command may contain `{event_url}` and `{file}` placeholders; the
    event URL is also exported as FLOWRUNNER_EVENT_URL.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        port: int = DEFAULT_PORT,
        cwd: Optional[Path] = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        if not self.command:
            raise BridgeError("Backend command is empty")
        self.port = port
        self.cwd = cwd
        self.terminate_timeout = terminate_timeout

    def _write_source(self, request: RunRequest) -> Optional[Path]:
        """Write the run's source text next to the flow file when they differ."""
        path = Path(request.file_id)
        if not path.parent.is_dir():
            return None
        try:
            if path.is_file() and path.read_text(encoding="utf-8") == request.source_text:
                return None
            temp_path = path.with_name(path.name + TEMP_RUN_SUFFIX)
            temp_path.write_text(request.source_text, encoding="utf-8")
        except OSError as e:
            raise BridgeError(f"Cannot write temporary flow file: {e}")
        return temp_path

    def _build_args(self, event_url: str, file_path: str) -> List[str]:
        return [
            part.replace("{event_url}", event_url).replace("{file}", file_path)
            for part in self.command
        ]

    async def invoke(
        self,
        request: RunRequest,
        on_event: EventCallback,
        cancel: CancelSignal,
    ) -> int:
        server = EventServer(find_available_port(self.port), on_event)
        await server.start()
        temp_path = None
        try:
            temp_path = self._write_source(request)
            file_path = str(temp_path or request.file_id)
            env = {
                **os.environ,
                **{key: str(value) for key, value in request.env.items()},
                EVENT_URL_ENV: server.url,
            }
            try:
                process = await asyncio.create_subprocess_exec(
                    *self._build_args(server.url, file_path),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.STDOUT,
                    env=env,
                    cwd=str(self.cwd) if self.cwd else None,
                )
            except OSError as e:
                raise BridgeError(f"Failed to start backend '{self.command[0]}': {e}")

            reader = asyncio.create_task(self._forward_output(process, on_event))
            waiter = asyncio.create_task(process.wait())
            cancelled = asyncio.create_task(cancel.wait())
            try:
                await asyncio.wait({waiter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
                if not waiter.done():
                    await self._terminate(process)
                await waiter
                await reader
            finally:
                cancelled.cancel()
            return process.returncode
        finally:
            await server.stop()
            if temp_path is not None:
                temp_path.unlink(missing_ok=True)

    async def _forward_output(
        self, process: asyncio.subprocess.Process, on_event: EventCallback
    ) -> None:
        """Forward each stdout line as a Log event."""
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip()
            if line:
                on_event(Log(message=line))

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        """Stop the backend, killing it if it ignores termination."""
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            process.kill()
