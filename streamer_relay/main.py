"""
main.py: streamer-relay application entrypoint.

Bootstraps:
  1. Config loading (config.yaml / config.json + env)
  2. Document store, OBS session and command bus (Runtime)
  3. FastAPI server (uvicorn); its lifespan starts and stops the Runtime

CLI:
  python run.py start              start the server
  python run.py init-config        create a default config.yaml
  python run.py check              test OBS connectivity
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import Optional

import typer
import uvicorn
from rich.console import Console
from rich.logging import RichHandler

from streamer_relay import __version__
from streamer_relay.api import create_app
from streamer_relay.config import ConfigParseFailure, Settings
from streamer_relay.core import OBSSession
from streamer_relay.runtime import Runtime

console = Console()
app = typer.Typer(name="streamer-relay", help="Control panel server with an OBS command bus")


def setup_logging(level: str = "info") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def local_ipv4_addresses() -> list[str]:
    ips = {"127.0.0.1"}
    try:
        for info in socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET):
            ips.add(info[4][0])
    except OSError:
        pass
    return sorted(ips)


def load_settings_or_exit(config_path: Optional[Path]) -> Settings:
    try:
        return Settings.load(config_path)
    except ConfigParseFailure as e:
        console.print(f"[red]✗ {e}[/red]")
        sys.exit(1)


async def build_and_run(settings: Settings) -> None:
    setup_logging(settings.server.effective_log_level)
    log = logging.getLogger("streamer_relay")

    console.rule(f"[bold blue]streamer-relay v{__version__}[/bold blue]")

    runtime = Runtime(settings)
    fast_app = create_app(runtime)

    port = settings.server.port
    console.print(f"\n[green]✓ Server[/green]    listening on port {port}")
    for ip in local_ipv4_addresses():
        console.print(f"            http://{ip}:{port}")
    if runtime.control_enabled:
        console.print(f"[green]✓ Control[/green]   OBS at {settings.obs.host}:{settings.obs.port}")
        for ip in local_ipv4_addresses():
            console.print(f"            http://{ip}:{port}/control/")
    else:
        console.print("[yellow]⚠ Control[/yellow]   no control/ folder, panel and scripts disabled")
    if settings.server.api_key:
        console.print("[green]✓ Auth[/green]      API key set, Bearer token required")
    console.print()

    config = uvicorn.Config(
        fast_app,
        host=settings.server.host,
        port=port,
        log_level=settings.server.effective_log_level,
        loop="asyncio",
    )
    server = uvicorn.Server(config)

    loop = asyncio.get_running_loop()

    def shutdown():
        log.info("Shutdown signal received.")
        server.should_exit = True

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, shutdown)
        except NotImplementedError:
            pass  # Windows

    await server.serve()


# ──────────────────────────────────────────────────────────────────────────────
# CLI commands
# ──────────────────────────────────────────────────────────────────────────────

@app.command()
def start(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml / config.json"),
    host: Optional[str] = typer.Option(None, "--host", help="HTTP bind host"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="HTTP port"),
    obs_host: Optional[str] = typer.Option(None, "--obs-host", help="OBS WebSocket host"),
    obs_port: Optional[int] = typer.Option(None, "--obs-port", help="OBS WebSocket port"),
    obs_password: Optional[str] = typer.Option(None, "--obs-password", help="OBS WebSocket password"),
    debug: bool = typer.Option(False, "--debug", help="Verbose logging, including script output"),
):
    """Start the streamer-relay server."""
    if host:
        os.environ["STREAMER_HOST"] = host
    if port:
        os.environ["STREAMER_PORT"] = str(port)
    if debug:
        os.environ["STREAMER_DEBUG"] = "true"
    if obs_host:
        os.environ["OBS_HOST"] = obs_host
    if obs_port:
        os.environ["OBS_PORT"] = str(obs_port)
    if obs_password:
        os.environ["OBS_PASSWORD"] = obs_password
    settings = load_settings_or_exit(config)
    asyncio.run(build_and_run(settings))


@app.command("init-config")
def init_config(
    output: Path = typer.Option(Path("config.yaml"), "--output", "-o"),
):
    """Generate a default config.yaml."""
    Settings().to_yaml(output)
    console.print(f"[green]✓[/green] Config written to [bold]{output}[/bold]")


@app.command("check")
def check_obs(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Path to config.yaml / config.json"),
):
    """Test OBS WebSocket connectivity with the configured host, port and password."""
    settings = load_settings_or_exit(config)
    setup_logging("warning")

    async def _check():
        session = OBSSession(settings.obs.host, settings.obs.port, settings.obs.password)
        if not await session.connect():
            console.print(f"[red]✗ Could not connect to OBS at {settings.obs.host}:{settings.obs.port}[/red]")
            sys.exit(1)
        version = await session.get_version()
        console.print("[green]✓ Connected to OBS[/green]")
        console.print(f"  OBS version:       {version.get('obs_version')}")
        console.print(f"  WebSocket version: {version.get('obs_web_socket_version')}")
        console.print(f"  Platform:          {version.get('platform')}")
        scenes = await session.get_scene_names()
        console.print(f"  Scenes ({len(scenes)}): {', '.join(scenes)}")
        await session.disconnect()

    asyncio.run(_check())


if __name__ == "__main__":
    app()
