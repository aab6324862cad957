"""CLI entry point for opencode-webui."""

import asyncio
import logging
import os
import sys

import click
import uvicorn

from . import __version__
from .config import DEFAULT_HOST, AppConfig, get_debug_from_env, get_default_port
from .runtime import find_executable, run_command
from .server import create_app

logger = logging.getLogger(__name__)


def pick_candidate(candidates: list[str], cwd: str | None = None) -> str:
    """Prefer an installed opencode over node_modules shims and project-local copies."""
    def normalize(value: str) -> str:
        return value.replace("\\", "/").lower()

    cwd_prefix = normalize(cwd or os.getcwd()) + "/"
    preferred = [
        c for c in candidates
        if "/node_modules/" not in normalize(c) and not normalize(c).startswith(cwd_prefix)
    ]
    return (preferred or candidates)[0]


async def validate_opencode_cli(opencode_path: str | None = None) -> str:
    """Locate the opencode executable and check that it runs.

    Exits the process when it cannot be found or ``--version`` fails.
    """
    candidates = [opencode_path] if opencode_path else await find_executable("opencode")
    if not candidates:
        logger.error("opencode CLI not found in PATH")
        logger.error("Please install opencode and ensure it is in PATH.")
        sys.exit(1)

    opencode = pick_candidate(candidates)
    result = await run_command(opencode, ["--version"])
    if not result.success:
        logger.error("opencode CLI check failed")
        logger.error(result.stderr.strip() or "Unknown error")
        sys.exit(1)

    logger.info("opencode CLI found: %s (%s)", opencode, result.stdout.strip())
    return opencode


@click.group()
@click.version_option(__version__, "-v", "--version")
def main():
    """Browser front-end for the opencode coding assistant."""
    pass


@main.command()
@click.option("--port", "-p", default=get_default_port, type=int, help="Port to listen on.")
@click.option("--host", default=DEFAULT_HOST, help="Host to bind to (0.0.0.0 for all interfaces).")
@click.option("--opencode-path", default=None, help="Path to the opencode executable (skips detection).")
@click.option("--opencode-model", default=None, help="Default model, e.g. opencode/glm-4.7-free.")
@click.option("--debug", "-d", is_flag=True, default=False, help="Enable debug logging.")
def serve(port: int, host: str, opencode_path: str | None, opencode_model: str | None, debug: bool):
    """Start the web interface."""
    debug = debug or get_debug_from_env()
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if debug:
        logger.info("Debug mode enabled")

    config = AppConfig.from_env(
        opencode_model=opencode_model,
        debug=debug,
    )
    config.opencode_path = asyncio.run(validate_opencode_cli(opencode_path or os.environ.get("OPENCODE_PATH")))

    click.echo(f"Starting opencode-webui on http://{host}:{port}")
    uvicorn.run(create_app(config), host=host, port=port, log_level="debug" if debug else "info")
