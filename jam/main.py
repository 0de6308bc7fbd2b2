"""Terminal jam session — type prompts, hear them loop.

Run with: python -m jam.main [--debug] [--null-audio]

Features:
  - Rich colored output (yellow=model, cyan=progress, green=playing, red=errors)
  - Prompts are generated in the background, so a new one can be typed
    while the last is still generating; results crossfade in as they land
  - Commands: stop, quit/exit/q
"""

import argparse
import asyncio
import logging
from typing import Set

from rich.console import Console

from engine.model_loader import ModelLoader
from engine.types import GENERATION_COMPLETE, GENERATION_PROGRESS, MODEL_STATUS
from gateway.config import settings
from gateway.server import setup_logging
from gateway.session import Session, create_backend

console = Console()


def _print_event(event: str, payload: dict) -> None:
    """Display engine events as they happen."""
    if event == MODEL_STATUS:
        console.print(f"  [yellow dim]model:[/] [yellow]{payload['status']}[/] [dim]{payload['detail']}[/]")
    elif event == GENERATION_PROGRESS:
        label = payload["label"]
        if payload["progress"] == 0 and label.startswith("Error"):
            console.print(f"  [red]{label}[/]")
        else:
            console.print(f"  [cyan dim]{payload['progress']:3d}%[/] [dim]{label}[/]")
    elif event == GENERATION_COMPLETE:
        console.print("  [bold green]Now playing.[/]")


async def _run_session(null_audio: bool) -> None:
    config = settings.model_copy(update={"audio_backend": "null"}) if null_audio else settings
    loader = ModelLoader(create_backend(config), emit=_print_event)
    session = Session(loader, config, emit=_print_event)
    pending: Set[asyncio.Task] = set()
    loop = asyncio.get_running_loop()

    console.print(f"[bold]loopgen[/] [dim]({config.model_id})[/]")
    console.print("[dim]Type a prompt to generate a loop, 'stop' to silence, 'quit' to exit.[/]\n")

    try:
        while True:
            try:
                # Read in a thread so crossfade teardowns keep running meanwhile
                user_input = (await loop.run_in_executor(None, console.input, "[bold green]Prompt:[/] ")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/]")
                break

            if not user_input:
                continue
            if user_input.lower() in ("quit", "exit", "q"):
                console.print("[dim]Goodbye![/]")
                break
            if user_input.lower() == "stop":
                session.stop_audio()
                console.print("[dim]Stopped.[/]\n")
                continue

            task = asyncio.ensure_future(session.generate(user_input))
            pending.add(task)
            task.add_done_callback(pending.discard)

    finally:
        for task in list(pending):
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        await session.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Prompt-to-loop jam session")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    parser.add_argument("--null-audio", action="store_true", help="Run without a sound device")
    args = parser.parse_args()

    setup_logging(settings.log_dir, "jam", logging.DEBUG if args.debug else logging.WARNING)
    asyncio.run(_run_session(args.null_audio))


if __name__ == "__main__":
    main()
