"""Gateway server — HTTP static serving + WebSocket commands and events.

Commands in (JSON, by "type"):  generate-audio {prompt}, stop-audio, ping
Events out (broadcast to every socket): model-status, generation-progress,
generation-complete, plus error/pong replies to the sender.

Audio plays on the server's own output device; the socket only carries
control messages.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional, Set

from aiohttp import web
from pydantic import BaseModel, ValidationError

from engine.model_loader import ModelLoader
from gateway.config import Settings, settings as default_settings
from gateway.session import Session, create_backend

log = logging.getLogger("gateway")

WEB_DIR = Path(__file__).resolve().parent.parent / "web"

SETTINGS_KEY = web.AppKey("settings", Settings)
SESSION_KEY = web.AppKey("session", Session)
CLIENTS_KEY = web.AppKey("clients", set)
TASKS_KEY = web.AppKey("tasks", set)


class GenerateAudioCommand(BaseModel):
    prompt: Optional[str] = None


def make_broadcast(clients: Set[asyncio.Queue]):
    """Event sink that fans each event out to every connected socket's queue."""
    def emit(event: str, payload: dict):
        message = {"type": event, **payload}
        for queue in list(clients):
            queue.put_nowait(message)
    return emit


# ── HTTP routes ───────────────────────────────────────────────

async def handle_index(request: web.Request) -> web.Response:
    """Serve the control page."""
    return web.FileResponse(WEB_DIR / "index.html")


async def handle_health(request: web.Request) -> web.Response:
    session = request.app[SESSION_KEY]
    handle = session.loader.handle
    return web.json_response({
        "model_state": session.loader.state.value,
        "model": handle.name if handle else None,
        "sample_rate": handle.sample_rate if handle else None,
        "playback_state": session.playback_state.value,
        "clients": len(request.app[CLIENTS_KEY]),
    })


# ── WebSocket handler ─────────────────────────────────────────

async def _pump_events(ws: web.WebSocketResponse, queue: asyncio.Queue):
    """Forward queued events to one socket, in emission order."""
    while True:
        message = await queue.get()
        if ws.closed:
            break
        try:
            await ws.send_json(message)
        except ConnectionResetError:
            log.debug("Socket went away mid-send, dropping %s", message.get("type"))
            break


def _spawn_generate(app: web.Application, prompt: str):
    task = asyncio.ensure_future(app[SESSION_KEY].generate(prompt))
    app[TASKS_KEY].add(task)
    task.add_done_callback(app[TASKS_KEY].discard)


async def handle_ws(request: web.Request) -> web.WebSocketResponse:
    app = request.app
    ws = web.WebSocketResponse()
    await ws.prepare(request)
    log.info("WebSocket connected from %s", request.remote)

    queue: asyncio.Queue = asyncio.Queue()
    app[CLIENTS_KEY].add(queue)
    pump = asyncio.ensure_future(_pump_events(ws, queue))

    try:
        async for raw in ws:
            if raw.type != web.WSMsgType.TEXT:
                continue
            try:
                msg = json.loads(raw.data)
            except json.JSONDecodeError:
                queue.put_nowait({"type": "error", "message": "Invalid JSON"})
                continue
            if not isinstance(msg, dict):
                queue.put_nowait({"type": "error", "message": "Expected a JSON object"})
                continue

            msg_type = msg.get("type")
            log.debug("WS recv: %s", msg_type)

            if msg_type == "generate-audio":
                try:
                    command = GenerateAudioCommand(**{k: v for k, v in msg.items() if k != "type"})
                except ValidationError as e:
                    queue.put_nowait({"type": "error", "message": f"Invalid generate-audio: {e}"})
                    continue
                prompt = (command.prompt or "").strip() or app[SETTINGS_KEY].default_prompt
                if prompt:
                    log.info("Generate requested: %r", prompt[:80])
                    _spawn_generate(app, prompt)

            elif msg_type == "stop-audio":
                app[SESSION_KEY].stop_audio()
                log.info("Audio stopped by client")

            elif msg_type == "ping":
                queue.put_nowait({"type": "pong"})

            else:
                queue.put_nowait({"type": "error", "message": f"Unknown type: {msg_type}"})
    finally:
        app[CLIENTS_KEY].discard(queue)
        pump.cancel()
        log.info("WebSocket disconnected")
    return ws


# ── App setup ─────────────────────────────────────────────────

async def _on_cleanup(app: web.Application):
    tasks = list(app[TASKS_KEY])
    for task in tasks:
        task.cancel()
    if tasks:
        await asyncio.gather(*tasks, return_exceptions=True)
    await app[SESSION_KEY].close()


def create_app(settings: Optional[Settings] = None, backend=None) -> web.Application:
    """Build the gateway app. backend defaults to MusicGen from settings."""
    settings = settings or default_settings
    clients: Set[asyncio.Queue] = set()
    emit = make_broadcast(clients)

    loader = ModelLoader(backend or create_backend(settings), emit=emit)

    app = web.Application()
    app[SETTINGS_KEY] = settings
    app[CLIENTS_KEY] = clients
    app[TASKS_KEY] = set()
    app[SESSION_KEY] = Session(loader, settings, emit=emit)
    app.on_cleanup.append(_on_cleanup)

    app.router.add_get("/", handle_index)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/ws", handle_ws)
    app.router.add_static("/static", WEB_DIR, show_index=False)
    return app


def setup_logging(log_dir: Path, name: str, level: int = logging.INFO):
    """Console + file logging, shared by the gateway and the terminal session."""
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / f"{name}.log"

    fmt = logging.Formatter("%(asctime)s %(name)-12s %(levelname)-8s %(message)s")

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(fmt)

    filelog = logging.FileHandler(log_file)
    filelog.setLevel(level)
    filelog.setFormatter(fmt)

    logging.basicConfig(level=level, handlers=[console, filelog])

    # Silence noisy download internals
    logging.getLogger("huggingface_hub").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    return log_file


if __name__ == "__main__":
    log_file = setup_logging(default_settings.log_dir, "server")
    log.info("Logging to %s", log_file)
    app = create_app()
    log.info("Serving on http://%s:%d", default_settings.host, default_settings.port)
    web.run_app(app, host=default_settings.host, port=default_settings.port)
