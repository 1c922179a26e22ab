#!/usr/bin/env python3
"""
ProxyProbe - Main Launcher
Starts the FastAPI tool API, which in turn starts the mitmproxy listener.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

from proxyprobe.config import CONFIG_FILE, LOGS_DIR, ensure_dirs, get_config

# Rich for pretty terminal output
from rich.console import Console
from rich.logging import RichHandler

console = Console()


BANNER = r"""
   ___                       ___           _
  / _ \_ __ _____  ___   _  / _ \_ __ ___ | |__   ___
 / /_)/ '__/ _ \ \/ / | | |/ /_)/ '__/ _ \| '_ \ / _ \
/ ___/| | | (_) >  <| |_| / ___/| | | (_) | |_) |  __/
\/    |_|  \___/_/\_\\__, \/    |_|  \___/|_.__/ \___|
                     |___/
            ProxyProbe v0.1.0
            Security testing tools behind an intercepting proxy
"""


def setup_logging(verbose: bool = False):
    """Route stdlib logging through the rich console."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
    )
    # mitmproxy is chatty at INFO
    logging.getLogger("mitmproxy").setLevel(logging.WARNING)


async def start_backend(config):
    """Build the uvicorn server for the tool API."""
    import uvicorn

    uv_config = uvicorn.Config(
        "proxyprobe.api:app",
        host=config.api.host,
        port=config.api.port,
        log_level="warning",
        reload=False,
    )
    return uvicorn.Server(uv_config)


async def main(verbose: bool = False):
    """Main entry point."""
    console.print(BANNER, style="bold cyan")

    setup_logging(verbose)
    config = get_config()
    ensure_dirs()

    # Show configuration
    console.print("\n[bold]Configuration[/bold]")
    console.print("─" * 40)
    console.print(f"  API Server:  http://{config.api.host}:{config.api.port}")
    console.print(f"  Proxy:       http://{config.proxy.host}:{config.proxy.port}")
    console.print(f"  Targets:     {', '.join(config.allowed_targets) or '(all - set allowed targets!)'}")
    console.print(f"  Config:      {CONFIG_FILE}")
    console.print(f"  Logs:        {LOGS_DIR}")
    if config.api.api_key == "mcp-dev-key":
        console.print("[yellow]  ! Using the default API key, set PROXYPROBE_API_KEY[/yellow]")

    console.print("\n[bold]Starting Services[/bold]")
    console.print("─" * 40)

    server = await start_backend(config)
    backend_task = asyncio.create_task(server.serve())

    # Wait a moment for backend to start
    await asyncio.sleep(1)
    if backend_task.done():
        console.print("[red]✗ API server failed to start[/red]")
        return

    console.print("\n[bold green]═══ ProxyProbe is ready ═══[/bold green]")
    console.print("[dim]Press Ctrl+C to shut down[/dim]\n")

    try:
        await backend_task
    except asyncio.CancelledError:
        pass
    finally:
        server.should_exit = True


def run():
    """Entry point with signal handling."""
    parser = argparse.ArgumentParser(description="ProxyProbe launcher")
    parser.add_argument("-v", "--verbose", action="store_true", help="enable debug logging")
    args = parser.parse_args()

    loop = asyncio.new_event_loop()

    def signal_handler(sig, frame):
        console.print("\n[yellow]Received shutdown signal...[/yellow]")
        for task in asyncio.all_tasks(loop):
            task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main(args.verbose))
    except (KeyboardInterrupt, SystemExit):
        pass
    finally:
        console.print("\n[yellow]Goodbye![/yellow]")
        loop.close()


if __name__ == "__main__":
    run()
